from chapter_tutor.domain.scope.off_topic import (
    OffTopicCategory,
    OffTopicResponseGenerator,
    detect_off_topic_category,
)
from tests.fakes import GRAMMAR_CHAPTER_TITLE


def test_unrelated_question_gets_generic_redirect_naming_the_chapter() -> None:
    response = OffTopicResponseGenerator().select(
        "What's the capital of France?", GRAMMAR_CHAPTER_TITLE, 1, subject="English"
    )

    assert response.category is OffTopicCategory.GENERIC
    assert GRAMMAR_CHAPTER_TITLE in response.text
    assert response.estimated_characters == len(response.text)


def test_future_chapter_hint_wins_over_other_categories() -> None:
    detection = detect_off_topic_category("Will we do chemistry in the next chapter?", 5, "English")

    assert detection.category is OffTopicCategory.FUTURE_CHAPTER


def test_past_chapter_hint() -> None:
    detection = detect_off_topic_category("Can you remember what we did?", 0, "English")

    assert detection.category is OffTopicCategory.PAST_CHAPTER


def test_different_subject_names_both_subjects() -> None:
    response = OffTopicResponseGenerator().select(
        "Can you help with my chemistry homework", GRAMMAR_CHAPTER_TITLE, 0, subject="English"
    )

    assert response.category is OffTopicCategory.DIFFERENT_SUBJECT
    assert "Chemistry" in response.text
    assert "English" in response.text
    assert GRAMMAR_CHAPTER_TITLE in response.text


def test_chapter_own_subject_is_not_a_different_subject() -> None:
    detection = detect_off_topic_category("Is english hard to learn", 0, "English")

    assert detection.category is OffTopicCategory.GENERIC


def test_repeated_off_topic_escalates_after_threshold() -> None:
    generator = OffTopicResponseGenerator(repeat_threshold=2, escalation_threshold=3)

    second = generator.select("Tell me a joke", GRAMMAR_CHAPTER_TITLE, 2, subject="English")
    fourth = generator.select("Tell me a joke", GRAMMAR_CHAPTER_TITLE, 4, subject="English")

    assert second.category is OffTopicCategory.REPEATED_OFF_TOPIC
    assert not second.text.startswith("I notice we're getting sidetracked.")
    assert fourth.category is OffTopicCategory.REPEATED_OFF_TOPIC
    assert fourth.text.startswith("I notice we're getting sidetracked.")
    assert GRAMMAR_CHAPTER_TITLE in fourth.text


def test_selection_is_deterministic() -> None:
    generator = OffTopicResponseGenerator()

    first = generator.select("Tell me a joke", GRAMMAR_CHAPTER_TITLE, 0, subject="English")
    second = generator.select("Tell me a joke", GRAMMAR_CHAPTER_TITLE, 0, subject="English")

    assert first == second
