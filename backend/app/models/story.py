from sqlalchemy import Column, Integer, String, Text, DateTime, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from ..database import Base

class Story(Base):
    """Top-level container for an uploaded book"""
    __tablename__ = "stories"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(100), nullable=False, index=True)  # External auth subject
    title = Column(String(200), nullable=False)
    description = Column(Text)

    # Default image style for every chapter: art_style, mood, color_palette, style
    style_preferences = Column(JSON, default=dict)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships - deletes are carried out by ON DELETE CASCADE in the database
    chapters = relationship(
        "Chapter", back_populates="story", cascade="all, delete-orphan",
        passive_deletes=True, order_by="Chapter.order_index",
    )
    characters = relationship(
        "Character", back_populates="story", cascade="all, delete-orphan",
        passive_deletes=True, foreign_keys="Character.story_id",
    )

    def __repr__(self):
        return f"<Story(id={self.id}, title='{self.title}', owner_id='{self.owner_id}')>"

    def to_dict(self):
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "title": self.title,
            "description": self.description,
            "style_preferences": self.style_preferences or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
