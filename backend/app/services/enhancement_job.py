"""
Enhancement job state machine.

An Enhancement row is created in ``generating`` and moves exactly once, to
``completed`` or ``failed``. A retry never reopens a row: it inserts a new
one for the same anchor with the next version number, so the rows of an
anchor form its version history. Completion links the media, tags the
media as owned by the enhancement and makes the enhancement the anchor's
active version in a single transaction.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..models import Anchor, Enhancement, EnhancementStatus, EnhancementType, Media
from .exceptions import (
    AnchorNotFoundError,
    ConsistencyError,
    EnhancementNotFoundError,
    EnhancementTimeoutError,
    InvalidTransitionError,
)
from .notifications import EnhancementEvent, EnhancementEventBus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (EnhancementStatus.COMPLETED, EnhancementStatus.FAILED)


class EnhancementJobService:
    """Create and transition Enhancement rows"""

    def __init__(self, db: Session, event_bus: Optional[EnhancementEventBus] = None):
        self.db = db
        self.event_bus = event_bus

    def get(self, enhancement_id: int) -> Enhancement:
        enhancement = self.db.query(Enhancement).filter(Enhancement.id == enhancement_id).first()
        if not enhancement:
            raise EnhancementNotFoundError(enhancement_id)
        return enhancement

    def _next_version_number(self, anchor_id: int) -> int:
        current = self.db.query(func.max(Enhancement.version_number)).filter(
            Enhancement.anchor_id == anchor_id
        ).scalar()
        return (current or 0) + 1

    def create(
        self,
        anchor_id: int,
        prompt: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
        seed: Optional[int] = None,
        enhancement_type: EnhancementType = EnhancementType.AI_IMAGE,
    ) -> Enhancement:
        """New enhancement for an anchor, in ``generating``"""
        anchor = self.db.query(Anchor).filter(Anchor.id == anchor_id).first()
        if not anchor:
            raise AnchorNotFoundError(anchor_id)

        enhancement = Enhancement(
            anchor_id=anchor.id,
            chapter_id=anchor.chapter_id,
            enhancement_type=enhancement_type,
            status=EnhancementStatus.GENERATING,
            version_number=self._next_version_number(anchor.id),
            prompt=prompt,
            seed=seed,
            config=dict(config or {}),
            generation_metadata={},
        )
        self.db.add(enhancement)
        self.db.commit()
        self.db.refresh(enhancement)
        logger.info(
            f"[ENHANCEMENT] Created enhancement {enhancement.id} "
            f"(anchor {anchor.id}, v{enhancement.version_number})"
        )
        return enhancement

    def _require_generating(self, enhancement: Enhancement, requested: EnhancementStatus) -> None:
        if enhancement.status != EnhancementStatus.GENERATING:
            raise InvalidTransitionError(enhancement.id, enhancement.status.value, requested.value)

    def _publish(self, enhancement: Enhancement) -> None:
        if self.event_bus is not None:
            self.event_bus.publish(EnhancementEvent(
                enhancement_id=enhancement.id,
                status=enhancement.status.value,
                anchor_id=enhancement.anchor_id,
            ))

    def complete(
        self,
        enhancement_id: int,
        media_id: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Enhancement:
        """
        Mark an enhancement completed with its media.

        Raises:
            InvalidTransitionError: the enhancement is not generating
            ConsistencyError: the media is missing or owned by something else
        """
        enhancement = self.get(enhancement_id)
        self._require_generating(enhancement, EnhancementStatus.COMPLETED)

        media = self.db.query(Media).filter(Media.id == media_id).first()
        if not media:
            raise ConsistencyError(f"Media {media_id} not found")
        if media.owner_type is not None and not (
            media.owner_type == "enhancement" and media.owner_id == enhancement.id
        ):
            raise ConsistencyError(
                f"Media {media_id} is already owned by {media.owner_type}:{media.owner_id}"
            )

        anchor = self.db.query(Anchor).filter(Anchor.id == enhancement.anchor_id).first()
        if anchor is None or anchor.chapter_id != enhancement.chapter_id:
            raise ConsistencyError(
                f"Enhancement {enhancement.id} chapter does not match its anchor"
            )

        media.owner_type = "enhancement"
        media.owner_id = enhancement.id

        enhancement.media_id = media.id
        enhancement.status = EnhancementStatus.COMPLETED
        enhancement.error_message = None
        enhancement.completed_at = datetime.now(timezone.utc)
        if metadata:
            enhancement.generation_metadata = {**(enhancement.generation_metadata or {}), **metadata}

        anchor.active_enhancement_id = enhancement.id

        self.db.commit()
        self.db.refresh(enhancement)
        logger.info(f"[ENHANCEMENT] Enhancement {enhancement.id} completed with media {media.id}")
        self._publish(enhancement)
        return enhancement

    def fail(self, enhancement_id: int, reason: str) -> Enhancement:
        """Mark an enhancement failed. The anchor's active version is left alone."""
        enhancement = self.get(enhancement_id)
        self._require_generating(enhancement, EnhancementStatus.FAILED)

        enhancement.status = EnhancementStatus.FAILED
        enhancement.error_message = reason
        enhancement.completed_at = datetime.now(timezone.utc)

        self.db.commit()
        self.db.refresh(enhancement)
        logger.warning(f"[ENHANCEMENT] Enhancement {enhancement.id} failed: {reason}")
        self._publish(enhancement)
        return enhancement

    def retry(self, enhancement_id: int) -> Enhancement:
        """
        New version for the same anchor with the same prompt and config.

        The source row is not modified.
        """
        source = self.get(enhancement_id)
        if source.status not in TERMINAL_STATUSES:
            raise InvalidTransitionError(source.id, source.status.value, "retry")

        config = dict(source.config or {})
        config["retry_of"] = source.id
        retried = self.create(
            source.anchor_id,
            prompt=source.prompt,
            config=config,
            enhancement_type=source.enhancement_type,
        )
        logger.info(f"[ENHANCEMENT] Retrying enhancement {source.id} as {retried.id} (v{retried.version_number})")
        return retried

    def list_versions(self, anchor_id: int) -> List[Enhancement]:
        """All enhancements of an anchor, oldest first"""
        return self.db.query(Enhancement).filter(
            Enhancement.anchor_id == anchor_id
        ).order_by(Enhancement.version_number, Enhancement.id).all()

    def delete(self, enhancement_id: int) -> None:
        """Delete one version; the database removes its junction rows and owned media"""
        deleted = self.db.query(Enhancement).filter(
            Enhancement.id == enhancement_id
        ).delete(synchronize_session=False)
        if not deleted:
            self.db.rollback()
            raise EnhancementNotFoundError(enhancement_id)
        self.db.commit()
        self.db.expire_all()
        logger.info(f"[ENHANCEMENT] Deleted enhancement {enhancement_id}")


class EnhancementStatusWatcher:
    """
    Waits for an enhancement to reach a terminal status.

    Reads the row with a fresh session on every check. With an event bus the
    wait between checks ends early when a status event arrives; without one
    it is a plain sleep. Exceeding ``max_polls`` checks raises
    EnhancementTimeoutError; the row itself is untouched and may still
    complete later.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        event_bus: Optional[EnhancementEventBus] = None,
        poll_interval: float = 2.0,
        max_polls: int = 150,
    ):
        self.session_factory = session_factory
        self.event_bus = event_bus
        self.poll_interval = poll_interval
        self.max_polls = max(1, max_polls)

    def _read_status(self, enhancement_id: int) -> EnhancementStatus:
        db = self.session_factory()
        try:
            status = db.query(Enhancement.status).filter(Enhancement.id == enhancement_id).scalar()
        finally:
            db.close()
        if status is None:
            raise EnhancementNotFoundError(enhancement_id)
        return status

    async def wait(self, enhancement_id: int) -> EnhancementStatus:
        queue = self.event_bus.subscribe(enhancement_id) if self.event_bus else None
        try:
            for attempt in range(self.max_polls):
                status = self._read_status(enhancement_id)
                if status in TERMINAL_STATUSES:
                    return status
                if attempt == self.max_polls - 1:
                    break
                if queue is not None:
                    try:
                        await asyncio.wait_for(queue.get(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
                else:
                    await asyncio.sleep(self.poll_interval)
        finally:
            if queue is not None:
                self.event_bus.unsubscribe(enhancement_id, queue)

        logger.warning(f"[ENHANCEMENT] Enhancement {enhancement_id} still generating after {self.max_polls} checks")
        raise EnhancementTimeoutError(enhancement_id, self.max_polls, self.poll_interval)
