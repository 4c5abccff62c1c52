# Import Base from database first
from ..database import Base

# Import all models to ensure they're registered with SQLAlchemy
from .story import Story
from .chapter import Chapter
from .anchor import Anchor
from .enhancement import Enhancement, EnhancementStatus, EnhancementType
from .media import Media, MEDIA_TYPES, MEDIA_OWNER_TYPES
from .character import Character, CharacterStatus, EnhancementCharacter
from . import triggers  # noqa: F401  registers schema triggers on Base.metadata

__all__ = [
    "Base",
    "Story", "Chapter", "Anchor",
    "Enhancement", "EnhancementStatus", "EnhancementType",
    "Media", "MEDIA_TYPES", "MEDIA_OWNER_TYPES",
    "Character", "CharacterStatus", "EnhancementCharacter",
]
