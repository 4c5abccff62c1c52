from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base
from ..utils.paragraphs import split_paragraphs

class Chapter(Base):
    """Uploaded chapter text. The text is the immutable input to segmentation."""
    __tablename__ = "chapters"
    __table_args__ = (
        CheckConstraint("order_index >= 0", name="ck_chapters_order_index"),
        Index("idx_chapters_story_id_order", "story_id", "order_index"),
    )

    id = Column(Integer, primary_key=True, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    order_index = Column(Integer, nullable=False, default=0)

    title = Column(String(200), nullable=True)
    text_content = Column(Text, nullable=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    story = relationship("Story", back_populates="chapters")
    anchors = relationship(
        "Anchor", back_populates="chapter", cascade="all, delete-orphan",
        passive_deletes=True, order_by="Anchor.after_paragraph_index",
    )
    enhancements = relationship(
        "Enhancement", back_populates="chapter", cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def paragraphs(self):
        return split_paragraphs(self.text_content or "")

    def __repr__(self):
        return f"<Chapter(id={self.id}, story_id={self.story_id}, order={self.order_index}, title='{self.title}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "order_index": self.order_index,
            "title": self.title,
            "paragraph_count": len(self.paragraphs),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
