"""
Anchor management.

An anchor marks the paragraph after which an illustration is shown. Within
a chapter the (chapter, paragraph index) pair is treated as an idempotency
key: asking for an anchor at an occupied position returns the existing one,
so repeated enhancement runs converge on the same anchors.
"""

from typing import List, Optional
from sqlalchemy.orm import Session
import logging

from ..models import Anchor, Chapter, Enhancement, EnhancementStatus
from ..utils.paragraphs import paragraph_count
from .exceptions import (
    AnchorNotFoundError,
    ChapterNotFoundError,
    ConsistencyError,
    InvalidAnchorPositionError,
)

logger = logging.getLogger(__name__)


class AnchorService:
    """Create, read and delete anchors; owns the one-anchor-per-position rule"""

    def __init__(self, db: Session):
        self.db = db

    def _get_chapter(self, chapter_id: int) -> Chapter:
        chapter = self.db.query(Chapter).filter(Chapter.id == chapter_id).first()
        if not chapter:
            raise ChapterNotFoundError(chapter_id)
        return chapter

    def validate_position(self, chapter: Chapter, position: int) -> None:
        count = paragraph_count(chapter.text_content or "")
        if not isinstance(position, int) or position < 0 or position >= count:
            raise InvalidAnchorPositionError(chapter.id, position, count)

    def find_at_position(self, chapter_id: int, position: int) -> Optional[Anchor]:
        return self.db.query(Anchor).filter(
            Anchor.chapter_id == chapter_id,
            Anchor.after_paragraph_index == position,
        ).order_by(Anchor.id).first()

    def create_anchor(self, chapter_id: int, position: int) -> Anchor:
        """Anchor at ``position`` in the chapter, reusing an existing one there"""
        chapter = self._get_chapter(chapter_id)
        self.validate_position(chapter, position)

        existing = self.find_at_position(chapter_id, position)
        if existing:
            logger.debug(f"[ANCHORS] Reusing anchor {existing.id} at chapter {chapter_id} paragraph {position}")
            return existing

        anchor = Anchor(chapter_id=chapter_id, after_paragraph_index=position)
        self.db.add(anchor)
        self.db.commit()
        self.db.refresh(anchor)
        logger.info(f"[ANCHORS] Created anchor {anchor.id} at chapter {chapter_id} paragraph {position}")
        return anchor

    def get(self, anchor_id: int) -> Anchor:
        anchor = self.db.query(Anchor).filter(Anchor.id == anchor_id).first()
        if not anchor:
            raise AnchorNotFoundError(anchor_id)
        return anchor

    def get_by_chapter(self, chapter_id: int) -> List[Anchor]:
        """Anchors of a chapter in reading order"""
        return self.db.query(Anchor).filter(
            Anchor.chapter_id == chapter_id
        ).order_by(Anchor.after_paragraph_index, Anchor.id).all()

    def delete(self, anchor_id: int) -> None:
        """Delete an anchor; its enhancements, junction rows and owned media go with it"""
        deleted = self.db.query(Anchor).filter(Anchor.id == anchor_id).delete(synchronize_session=False)
        if not deleted:
            self.db.rollback()
            raise AnchorNotFoundError(anchor_id)
        self.db.commit()
        self.db.expire_all()
        logger.info(f"[ANCHORS] Deleted anchor {anchor_id}")

    def delete_by_chapter(self, chapter_id: int) -> int:
        """Delete every anchor of a chapter. Returns the number removed."""
        deleted = self.db.query(Anchor).filter(Anchor.chapter_id == chapter_id).delete(synchronize_session=False)
        self.db.commit()
        self.db.expire_all()
        logger.info(f"[ANCHORS] Deleted {deleted} anchors from chapter {chapter_id}")
        return deleted

    def set_active_enhancement(self, anchor_id: int, enhancement_id: Optional[int], commit: bool = True) -> Anchor:
        """
        Point the anchor at one of its completed enhancements, or clear it.

        Raises:
            ConsistencyError: the enhancement belongs to another anchor or is
                not completed
        """
        anchor = self.get(anchor_id)
        if enhancement_id is not None:
            enhancement = self.db.query(Enhancement).filter(Enhancement.id == enhancement_id).first()
            if not enhancement or enhancement.anchor_id != anchor.id:
                raise ConsistencyError(
                    f"Enhancement {enhancement_id} does not belong to anchor {anchor_id}"
                )
            if enhancement.status != EnhancementStatus.COMPLETED:
                raise ConsistencyError(
                    f"Enhancement {enhancement_id} is {enhancement.status.value}, only completed versions can be active"
                )

        anchor.active_enhancement_id = enhancement_id
        if commit:
            self.db.commit()
            self.db.refresh(anchor)
        logger.info(f"[ANCHORS] Anchor {anchor_id} active enhancement -> {enhancement_id}")
        return anchor
