"""
Exceptions raised by the enhancement pipeline services.

The API layer maps these onto HTTP status codes; background workers record
them on the affected Enhancement row.
"""

from typing import Optional


class EnhancementPipelineError(Exception):
    """Base class for all enhancement pipeline errors"""
    pass


class NotFoundError(EnhancementPipelineError):
    entity = "Entity"

    def __init__(self, entity_id, message: Optional[str] = None):
        self.entity_id = entity_id
        super().__init__(message or f"{self.entity} not found: {entity_id}")


class StoryNotFoundError(NotFoundError):
    entity = "Story"


class ChapterNotFoundError(NotFoundError):
    entity = "Chapter"


class AnchorNotFoundError(NotFoundError):
    entity = "Anchor"


class EnhancementNotFoundError(NotFoundError):
    entity = "Enhancement"


class CharacterNotFoundError(NotFoundError):
    entity = "Character"


class InvalidAnchorPositionError(EnhancementPipelineError):
    """Paragraph index outside the chapter"""

    def __init__(self, chapter_id: int, position: int, paragraph_count: int):
        self.chapter_id = chapter_id
        self.position = position
        self.paragraph_count = paragraph_count
        super().__init__(
            f"Invalid paragraph index {position} for chapter {chapter_id}: "
            f"must be between 0 and {paragraph_count - 1}"
            if paragraph_count > 0
            else f"Invalid paragraph index {position} for chapter {chapter_id}: chapter has no paragraphs"
        )


class SceneExtractionError(EnhancementPipelineError):
    """Text generation returned output that does not match the scene schema.

    Retryable: the same request may succeed on a second attempt.
    """
    retryable = True


class InvalidTransitionError(EnhancementPipelineError):
    """A status change the enhancement state machine does not allow"""

    def __init__(self, enhancement_id: int, current: str, requested: str):
        self.enhancement_id = enhancement_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Enhancement {enhancement_id} cannot move from '{current}' to '{requested}'"
        )


class ConsistencyError(EnhancementPipelineError):
    """The entity graph is in a state the schema rules should have prevented"""
    pass


class EnhancementTimeoutError(EnhancementPipelineError):
    """Status polling hit its retry ceiling.

    Not a failure: the enhancement may still complete afterwards.
    """

    def __init__(self, enhancement_id: int, polls: int, interval: float):
        self.enhancement_id = enhancement_id
        self.polls = polls
        self.interval = interval
        super().__init__(
            f"Enhancement {enhancement_id} did not finish after {polls} checks "
            f"({polls * interval:.0f}s)"
        )


class ImageGenerationError(EnhancementPipelineError):
    """The image provider failed or returned no usable image"""
    pass
