from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, JSON, Enum, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base
import enum


class EnhancementType(str, enum.Enum):
    AI_IMAGE = "ai_image"
    USER_IMAGE = "user_image"
    AUDIO = "audio"
    ANIMATION = "animation"


class EnhancementStatus(str, enum.Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class Enhancement(Base):
    """One generation attempt for an anchor.

    Rows are append-only: a retry inserts a new row with the next
    ``version_number`` and leaves earlier attempts untouched. ``chapter_id``
    duplicates ``anchor.chapter_id`` for per-chapter queries and is copied
    from the anchor when the row is created.
    """
    __tablename__ = "enhancements"
    __table_args__ = (
        CheckConstraint(
            "status != 'completed' OR enhancement_type = 'animation' OR media_id IS NOT NULL",
            name="ck_enhancements_completed_has_media",
        ),
        CheckConstraint("version_number >= 1", name="ck_enhancements_version_number"),
        Index("idx_enhancements_anchor_id_version", "anchor_id", "version_number"),
        # Late worker results address rows by id; ids must never be handed out twice
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, index=True)
    anchor_id = Column(Integer, ForeignKey("anchors.id", ondelete="CASCADE"), nullable=False)
    chapter_id = Column(Integer, ForeignKey("chapters.id", ondelete="CASCADE"), nullable=False, index=True)

    enhancement_type = Column(
        Enum(EnhancementType, values_callable=_enum_values, native_enum=False,
             create_constraint=True, name="enhancement_type"),
        nullable=False,
        default=EnhancementType.AI_IMAGE,
    )
    status = Column(
        Enum(EnhancementStatus, values_callable=_enum_values, native_enum=False,
             create_constraint=True, name="enhancement_status"),
        nullable=False,
        default=EnhancementStatus.GENERATING,
        index=True,
    )

    # Media must be deleted through its owning enhancement, never directly
    media_id = Column(Integer, ForeignKey("media.id", ondelete="RESTRICT"), nullable=True)

    version_number = Column(Integer, nullable=False, default=1)

    # Generation details for reproducibility
    prompt = Column(Text, nullable=True)
    seed = Column(Integer, nullable=True)
    config = Column(JSON, default=dict)  # style, negative_prompt, width, height, scene_text
    generation_metadata = Column("metadata", JSON, default=dict)  # provider, job id, timings

    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    anchor = relationship("Anchor", back_populates="enhancements", foreign_keys=[anchor_id])
    chapter = relationship("Chapter", back_populates="enhancements")
    media = relationship("Media", foreign_keys=[media_id])
    character_links = relationship(
        "EnhancementCharacter", back_populates="enhancement",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in (EnhancementStatus.COMPLETED, EnhancementStatus.FAILED)

    def __repr__(self):
        return f"<Enhancement(id={self.id}, anchor_id={self.anchor_id}, v{self.version_number}, status='{self.status}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "anchor_id": self.anchor_id,
            "chapter_id": self.chapter_id,
            "enhancement_type": self.enhancement_type.value if self.enhancement_type else None,
            "status": self.status.value if self.status else None,
            "media_id": self.media_id,
            "image_url": self.media.url if self.media else None,
            "version_number": self.version_number,
            "prompt": self.prompt,
            "seed": self.seed,
            "config": self.config or {},
            "metadata": self.generation_metadata or {},
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
