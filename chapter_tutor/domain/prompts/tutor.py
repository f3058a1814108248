from __future__ import annotations

from chapter_tutor.domain.models import Chapter


def _bullets(items: list[str]) -> str:
    return "\n".join(f"- {item}" for item in items) or "- (none)"


def format_chapter_content(chapter: Chapter) -> str:
    concepts = "\n\n".join(
        f"### {concept.title}\n{concept.explanation}\n\nKey Points:\n{_bullets(concept.key_points)}"
        for concept in chapter.content.concepts
    )
    examples = "\n\n".join(
        f"**Example {idx}:**\n{example.problem}\n\nSolution:\n" + "\n".join(example.steps or [example.solution])
        for idx, example in enumerate(chapter.content.examples, start=1)
    )
    return (
        f"# CHAPTER: {chapter.title}\n\n"
        f"## Learning Objectives:\n{_bullets(chapter.metadata.learning_objectives)}\n\n"
        f"## Content:\n\n{concepts}\n\n"
        f"## Examples:\n\n{examples}\n\n"
        f"## Keywords:\n{', '.join(chapter.keywords)}"
    )


def build_tutor_instruction(chapter: Chapter) -> str:
    """
    System instruction grounding the tutor in one chapter. Identical for every turn of a
    chapter so the provider can serve it from its prompt cache.
    """
    return f"""You are an expert tutor specializing in {chapter.subject} for grade {chapter.grade} students.

CURRENT ACTIVE CHAPTER: "{chapter.title}"

{format_chapter_content(chapter)}

=== SCOPE RULES ===
You MUST only answer questions related to the current chapter: "{chapter.title}".

If the student asks about:
1. Topics from future chapters: politely say it is covered later and return to this chapter.
2. Topics from past chapters: offer a very brief review, then return to this chapter.
3. Topics from a different subject: gently redirect to {chapter.subject}.
4. Completely unrelated topics: kindly redirect to the current chapter.

For in-scope questions:
- Give clear explanations using the chapter's concepts and examples
- Break complex ideas into small steps
- Encourage practice and application

Your replies are converted to speech. Keep them concise (a few short sentences), use plain
spoken language, and avoid markdown, tables and lists of symbols.
"""
