from sqlalchemy import Column, Integer, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base

class Anchor(Base):
    """Position in a chapter after which an enhancement is displayed.

    ``active_enhancement_id`` is a weak reference: it selects one of the
    anchor's enhancement versions for display but does not own it. The
    database nulls it if that enhancement row disappears.
    """
    __tablename__ = "anchors"
    __table_args__ = (
        CheckConstraint("after_paragraph_index >= 0", name="ck_anchors_after_paragraph_index"),
        Index("idx_anchors_chapter_id_paragraph", "chapter_id", "after_paragraph_index"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, index=True)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False)
    after_paragraph_index = Column(Integer, nullable=False, default=0)

    active_enhancement_id = Column(
        Integer,
        ForeignKey(
            "enhancements.id",
            ondelete="SET NULL",
            use_alter=True,
            name="fk_anchors_active_enhancement",
        ),
        nullable=True,
        index=True,
    )

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    chapter = relationship("Chapter", back_populates="anchors")
    enhancements = relationship(
        "Enhancement",
        back_populates="anchor",
        foreign_keys="Enhancement.anchor_id",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Enhancement.version_number",
    )
    active_enhancement = relationship(
        "Enhancement",
        foreign_keys=[active_enhancement_id],
        viewonly=True,
    )

    def __repr__(self):
        return f"<Anchor(id={self.id}, chapter_id={self.chapter_id}, after_paragraph={self.after_paragraph_index})>"

    def to_dict(self, include_active: bool = False):
        data = {
            "id": self.id,
            "chapter_id": self.chapter_id,
            "after_paragraph_index": self.after_paragraph_index,
            "active_enhancement_id": self.active_enhancement_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_active:
            data["active_enhancement"] = self.active_enhancement.to_dict() if self.active_enhancement else None
        return data
