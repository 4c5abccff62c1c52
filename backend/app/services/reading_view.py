"""
Reader-facing chapter view.

Assembles what a reader needs to display a chapter: the story it belongs
to, the chapter's paragraphs with each anchor's active enhancement placed
after its paragraph, and links to the neighbouring chapters.
"""

from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session, joinedload
import logging

from ..models import Anchor, Chapter, Enhancement, EnhancementCharacter, Story
from .exceptions import ChapterNotFoundError, StoryNotFoundError

logger = logging.getLogger(__name__)


def _chapter_link(chapter: Optional[Chapter]) -> Optional[Dict[str, Any]]:
    if chapter is None:
        return None
    return {"id": chapter.id, "title": chapter.title, "order_index": chapter.order_index}


class ReadingViewService:

    def __init__(self, db: Session):
        self.db = db

    def _active_by_position(self, chapter_id: int) -> Dict[int, List[Anchor]]:
        anchors = self.db.query(Anchor).options(
            joinedload(Anchor.active_enhancement).joinedload(Enhancement.media),
            joinedload(Anchor.active_enhancement)
            .joinedload(Enhancement.character_links)
            .joinedload(EnhancementCharacter.character),
        ).filter(
            Anchor.chapter_id == chapter_id,
            Anchor.active_enhancement_id.isnot(None),
        ).order_by(Anchor.after_paragraph_index, Anchor.id).all()

        by_position: Dict[int, List[Anchor]] = {}
        for anchor in anchors:
            by_position.setdefault(anchor.after_paragraph_index, []).append(anchor)
        return by_position

    @staticmethod
    def _enhancement_item(anchor: Anchor) -> Dict[str, Any]:
        enhancement = anchor.active_enhancement
        characters = [
            {"id": link.character.id, "name": link.character.name}
            for link in enhancement.character_links if link.character is not None
        ]
        return {
            "type": "enhancement",
            "anchor_id": anchor.id,
            "after_paragraph_index": anchor.after_paragraph_index,
            "enhancement": enhancement.to_dict(),
            "characters": sorted(characters, key=lambda c: c["name"].lower()),
        }

    def _navigation(self, chapter: Chapter) -> Dict[str, Any]:
        siblings = self.db.query(Chapter).filter(Chapter.story_id == chapter.story_id)\
            .order_by(Chapter.order_index, Chapter.id).all()
        position = next(i for i, c in enumerate(siblings) if c.id == chapter.id)
        return {
            "previous_chapter": _chapter_link(siblings[position - 1] if position > 0 else None),
            "next_chapter": _chapter_link(siblings[position + 1] if position + 1 < len(siblings) else None),
            "chapter_number": position + 1,
            "chapter_count": len(siblings),
        }

    def build(self, chapter_id: int) -> Dict[str, Any]:
        """
        Reading view for a chapter.

        ``items`` lists the paragraphs in order; after paragraph N come the
        active enhancements of the anchors at N. Anchors without an active
        enhancement are left out. Anchors pointing past the last paragraph
        (text shortened after they were placed) are shown at the end.

        Raises:
            ChapterNotFoundError: unknown chapter
        """
        chapter = self.db.query(Chapter).filter(Chapter.id == chapter_id).first()
        if not chapter:
            raise ChapterNotFoundError(chapter_id)
        story = self.db.query(Story).filter(Story.id == chapter.story_id).first()
        if not story:
            raise StoryNotFoundError(chapter.story_id)

        paragraphs = chapter.paragraphs
        by_position = self._active_by_position(chapter.id)

        items = []
        for paragraph in paragraphs:
            items.append({"type": "paragraph", "index": paragraph.index, "text": paragraph.text})
            for anchor in by_position.pop(paragraph.index, []):
                items.append(self._enhancement_item(anchor))
        for position in sorted(by_position):
            logger.warning(
                f"[READING] Anchor position {position} is past the end of chapter {chapter.id} "
                f"({len(paragraphs)} paragraphs)"
            )
            items.extend(self._enhancement_item(anchor) for anchor in by_position[position])

        return {
            "story": story.to_dict(),
            "chapter": chapter.to_dict(),
            "items": items,
            "enhancement_count": sum(1 for item in items if item["type"] == "enhancement"),
            "navigation": self._navigation(chapter),
        }
