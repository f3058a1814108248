from __future__ import annotations

import re

# Terminal punctuation, optional closing quotes/brackets, then whitespace or end of text.
_SENTENCE_END = re.compile(r"[.!?]+[\"'\)\]]*(?=\s|$)")
# While streaming, the end of the buffer is not the end of the text.
_STREAMING_SENTENCE_END = re.compile(r"[.!?]+[\"'\)\]]*(?=\s)")


def normalize_text(text: str) -> str:
    """Trims and collapses internal whitespace."""
    return " ".join(str(text or "").split())


def split_into_sentences(text: str) -> list[str]:
    """
    Splits on `.`, `!` or `?` followed by whitespace or end of text.
    The trailing fragment without terminal punctuation is kept as the last sentence.
    """
    sentences: list[str] = []
    cursor = 0
    for match in _SENTENCE_END.finditer(text or ""):
        piece = text[cursor : match.end()].strip()
        if piece:
            sentences.append(piece)
        cursor = match.end()
    tail = (text or "")[cursor:].strip()
    if tail:
        sentences.append(tail)
    return sentences


class SentenceBuffer:
    """Accumulates streamed text fragments and releases completed sentences in order."""

    def __init__(self) -> None:
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, fragment: str) -> list[str]:
        if not fragment:
            return []
        self._pending += fragment
        completed: list[str] = []
        cursor = 0
        for match in _STREAMING_SENTENCE_END.finditer(self._pending):
            piece = self._pending[cursor : match.end()].strip()
            if piece:
                completed.append(piece)
            cursor = match.end()
        self._pending = self._pending[cursor:]
        return completed

    def flush(self) -> list[str]:
        remainder, self._pending = self._pending, ""
        return split_into_sentences(remainder)
