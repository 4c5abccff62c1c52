from sqlalchemy import Column, Integer, Float, String, Text, DateTime, ForeignKey, JSON, Enum, CheckConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base
import enum


class CharacterStatus(str, enum.Enum):
    CANDIDATE = "candidate"  # Auto-discovered, not reviewed
    CONFIRMED = "confirmed"
    IGNORED = "ignored"  # Never linked to enhancements
    MERGED = "merged"  # Duplicate of merged_into


class Character(Base):
    __tablename__ = "characters"
    __table_args__ = (
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_characters_confidence"),
        Index("idx_characters_story_id_name", "story_id", "name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    short_desc = Column(Text)  # Visual description used in image prompts
    aliases = Column(JSON, default=list)

    status = Column(
        Enum(CharacterStatus, values_callable=lambda e: [m.value for m in e],
             native_enum=False, create_constraint=True, name="character_status"),
        nullable=False,
        default=CharacterStatus.CANDIDATE,
    )
    confidence = Column(Float, nullable=False, default=1.0)

    # Canonical character after deduplication, weak reference
    merged_into_id = Column(Integer, ForeignKey("characters.id", ondelete="SET NULL"), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    story = relationship("Story", back_populates="characters", foreign_keys=[story_id])
    merged_into = relationship("Character", remote_side=[id])
    enhancement_links = relationship(
        "EnhancementCharacter", back_populates="character",
        cascade="all, delete-orphan", passive_deletes=True,
    )

    def matches(self, name: str) -> bool:
        """Case-insensitive match against the name and every alias"""
        wanted = name.strip().lower()
        if not wanted:
            return False
        candidates = [self.name] + list(self.aliases or [])
        return any(wanted == c.strip().lower() for c in candidates if c)

    def __repr__(self):
        return f"<Character(id={self.id}, name='{self.name}', status='{self.status}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "story_id": self.story_id,
            "name": self.name,
            "short_desc": self.short_desc,
            "aliases": self.aliases or [],
            "status": self.status.value if self.status else None,
            "confidence": self.confidence,
            "merged_into_id": self.merged_into_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EnhancementCharacter(Base):
    """Characters depicted in an enhancement. Owned by the enhancement side."""
    __tablename__ = "enhancement_characters"

    enhancement_id = Column(Integer, ForeignKey("enhancements.id", ondelete="CASCADE"), primary_key=True)
    character_id = Column(Integer, ForeignKey("characters.id", ondelete="CASCADE"), primary_key=True, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    enhancement = relationship("Enhancement", back_populates="character_links")
    character = relationship("Character", back_populates="enhancement_links")

    def __repr__(self):
        return f"<EnhancementCharacter(enhancement_id={self.enhancement_id}, character_id={self.character_id})>"
