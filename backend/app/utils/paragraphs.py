"""
Paragraph boundaries for chapter text.

Anchors are placed "after paragraph N", so every component that turns text
offsets into anchor positions must agree on what a paragraph is:

- If the text separates blocks with blank lines, each non-blank block is a
  paragraph (hard-wrapped lines inside a block stay together).
- Otherwise each non-empty line is a paragraph.
"""

import re
from dataclasses import dataclass
from typing import List

_BLANK_LINE = re.compile(r"\n[ \t\r]*\n")
_BLOCK = re.compile(r"\S(?:.*?\S)?(?=[ \t\r]*\n[ \t\r]*\n|\s*\Z)", re.DOTALL)
_LINE = re.compile(r"[^\n]*\S[^\n]*")


@dataclass(frozen=True)
class ParagraphSpan:
    index: int
    start: int
    end: int
    text: str

    @property
    def word_count(self) -> int:
        return len(self.text.split())


def split_paragraphs(text: str) -> List[ParagraphSpan]:
    """Return the paragraphs of ``text`` with their character offsets."""
    if not text or not text.strip():
        return []

    pattern = _BLOCK if _BLANK_LINE.search(text) else _LINE
    spans = []
    for match in pattern.finditer(text):
        raw = match.group(0)
        # Trim surrounding whitespace but keep offsets pointing into the original text
        leading = len(raw) - len(raw.lstrip())
        stripped = raw.strip()
        if not stripped:
            continue
        start = match.start() + leading
        spans.append(ParagraphSpan(index=len(spans), start=start, end=start + len(stripped), text=stripped))
    return spans


def paragraph_count(text: str) -> int:
    return len(split_paragraphs(text))


def paragraph_index_at(paragraphs: List[ParagraphSpan], offset: int) -> int:
    """Index of the paragraph containing ``offset``.

    Offsets that fall between paragraphs belong to the preceding paragraph.
    """
    if not paragraphs:
        raise ValueError("Text has no paragraphs")
    result = 0
    for paragraph in paragraphs:
        if paragraph.start <= offset:
            result = paragraph.index
        else:
            break
    return result
