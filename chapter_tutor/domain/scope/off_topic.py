from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

FUTURE_CHAPTER_HINTS = ("next chapter", "after this", "later", "future")
PAST_CHAPTER_HINTS = ("previous", "before", "earlier", "last chapter", "remember")
SUBJECT_HINTS = (
    "history",
    "science",
    "english",
    "geography",
    "biology",
    "chemistry",
    "physics",
    "mathematics",
)

DEFAULT_REPEAT_THRESHOLD = 2
DEFAULT_ESCALATION_THRESHOLD = 3


class OffTopicCategory(str, Enum):
    FUTURE_CHAPTER = "future_chapter"
    PAST_CHAPTER = "past_chapter"
    DIFFERENT_SUBJECT = "different_subject"
    REPEATED_OFF_TOPIC = "encourage_return"
    GENERIC = "way_off_topic"


@dataclass(frozen=True)
class OffTopicDetection:
    category: OffTopicCategory
    asked_subject: str | None = None
    escalate: bool = False


@dataclass(frozen=True)
class OffTopicResponse:
    text: str
    category: OffTopicCategory
    estimated_characters: int


def detect_off_topic_category(
    question: str,
    recent_off_topic_count: int,
    current_subject: str | None = None,
    repeat_threshold: int = DEFAULT_REPEAT_THRESHOLD,
    escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD,
) -> OffTopicDetection:
    text = str(question or "").lower()

    if any(hint in text for hint in FUTURE_CHAPTER_HINTS):
        return OffTopicDetection(category=OffTopicCategory.FUTURE_CHAPTER)

    if any(hint in text for hint in PAST_CHAPTER_HINTS):
        return OffTopicDetection(category=OffTopicCategory.PAST_CHAPTER)

    own_subject = str(current_subject or "").strip().lower()
    for subject in SUBJECT_HINTS:
        if subject != own_subject and subject in text:
            return OffTopicDetection(category=OffTopicCategory.DIFFERENT_SUBJECT, asked_subject=subject)

    if recent_off_topic_count >= repeat_threshold:
        return OffTopicDetection(
            category=OffTopicCategory.REPEATED_OFF_TOPIC,
            escalate=recent_off_topic_count > escalation_threshold,
        )

    return OffTopicDetection(category=OffTopicCategory.GENERIC)


def render_off_topic_response(
    detection: OffTopicDetection,
    chapter_title: str,
    current_subject: str | None = None,
) -> str:
    chapter = f'"{chapter_title}"'
    category = detection.category

    if category is OffTopicCategory.FUTURE_CHAPTER:
        return (
            "That's a great question! That topic is actually covered in a future chapter. "
            f"For now, let's focus on mastering {chapter} first. Once you complete this chapter, "
            "we'll move on to more advanced topics. Sound good?"
        )
    if category is OffTopicCategory.PAST_CHAPTER:
        return (
            "Good memory! We covered that topic in a previous chapter. Would you like a quick "
            f"30-second review, or should we continue with {chapter}? I'm here to help either way!"
        )
    if category is OffTopicCategory.DIFFERENT_SUBJECT:
        asked = (detection.asked_subject or "another subject").title()
        focus = (current_subject or "this subject").strip() or "this subject"
        return (
            f"That's from {asked}! Right now we're focused on {focus}, specifically {chapter}. "
            "Let's stick with that for now so you can really master the material. "
            f"We can explore {asked} in a different session!"
        )
    if category is OffTopicCategory.REPEATED_OFF_TOPIC:
        prefix = "I notice we're getting sidetracked. " if detection.escalate else ""
        return (
            f"{prefix}Let's bring our focus back to {chapter}. This is important material that "
            "will help you succeed. What would you like help with in this chapter?"
        )
    return (
        "Interesting question! But to help you learn effectively, let's stay focused on "
        f"{chapter} for now. We'll make better progress if we master one topic at a time. "
        "What specific part of this chapter would you like to explore?"
    )


class OffTopicResponseGenerator:
    """
    Deterministic redirect replies for questions rejected by the scope check.
    Produces no backend calls and no cost.
    """

    def __init__(
        self,
        repeat_threshold: int = DEFAULT_REPEAT_THRESHOLD,
        escalation_threshold: int = DEFAULT_ESCALATION_THRESHOLD,
    ):
        self.repeat_threshold = repeat_threshold
        self.escalation_threshold = escalation_threshold

    def select(
        self,
        question: str,
        chapter_title: str,
        recent_off_topic_count: int,
        subject: str | None = None,
    ) -> OffTopicResponse:
        detection = detect_off_topic_category(
            question,
            recent_off_topic_count,
            current_subject=subject,
            repeat_threshold=self.repeat_threshold,
            escalation_threshold=self.escalation_threshold,
        )
        text = render_off_topic_response(detection, chapter_title, current_subject=subject)
        return OffTopicResponse(text=text, category=detection.category, estimated_characters=len(text))
