from sqlalchemy import Column, Integer, BigInteger, Float, String, DateTime, JSON, CheckConstraint, Index
from sqlalchemy.sql import func
from ..database import Base

MEDIA_TYPES = ("image", "audio", "video")
MEDIA_OWNER_TYPES = ("enhancement", "story_cover", "avatar", "user_upload")


class Media(Base):
    """A stored file.

    ``owner_type``/``owner_id`` is a back-reference, not a foreign key. The
    row lives independently of its owner; only the enhancement cleanup
    trigger reads the tag. Media without a tag is never removed automatically.
    """
    __tablename__ = "media"
    __table_args__ = (
        CheckConstraint(
            "media_type IN ('image', 'audio', 'video')", name="ck_media_media_type"
        ),
        CheckConstraint(
            "owner_type IS NULL OR owner_type IN ('enhancement', 'story_cover', 'avatar', 'user_upload')",
            name="ck_media_owner_type",
        ),
        Index("idx_media_owner", "owner_type", "owner_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    uploader_id = Column(String(100), nullable=True, index=True)

    # File storage
    url = Column(String(1000), nullable=False)
    storage_path = Column(String(500), nullable=True)  # Relative to settings.storage_root

    media_type = Column(String(20), nullable=False, default="image")
    mime_type = Column(String(100), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    duration = Column(Float, nullable=True)  # Seconds, audio/video only
    media_metadata = Column("metadata", JSON, default=dict)

    # Ownership tag read by the cleanup trigger
    owner_type = Column(String(30), nullable=True)
    owner_id = Column(Integer, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Media(id={self.id}, type='{self.media_type}', owner={self.owner_type}:{self.owner_id})>"

    def to_dict(self):
        return {
            "id": self.id,
            "url": self.url,
            "storage_path": self.storage_path,
            "media_type": self.media_type,
            "mime_type": self.mime_type,
            "file_size": self.file_size,
            "width": self.width,
            "height": self.height,
            "owner_type": self.owner_type,
            "owner_id": self.owner_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
