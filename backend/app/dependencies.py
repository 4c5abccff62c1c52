from fastapi import HTTPException, status
from typing import Optional
import logging

from .database import SessionLocal
from .services.exceptions import (
    ConsistencyError,
    EnhancementPipelineError,
    EnhancementTimeoutError,
    InvalidAnchorPositionError,
    InvalidTransitionError,
    NotFoundError,
    SceneExtractionError,
)
from .services.notifications import event_bus
from .services.orchestrator import EnhancementOrchestrator

logger = logging.getLogger(__name__)

_orchestrator: Optional[EnhancementOrchestrator] = None


def get_orchestrator() -> EnhancementOrchestrator:
    """Process-wide orchestrator built from settings on first use"""
    global _orchestrator
    if _orchestrator is None:
        from .services.image_generation import create_provider
        from .services.llm import ExtractionLLMService

        provider = create_provider()
        llm_service = ExtractionLLMService.from_settings()
        _orchestrator = EnhancementOrchestrator(
            SessionLocal,
            provider,
            llm_service=llm_service,
            event_bus=event_bus,
        )
        logger.info(
            f"Enhancement orchestrator ready: provider={provider.provider_name}, "
            f"text_generation={'on' if llm_service else 'off'}"
        )
    return _orchestrator


async def shutdown_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.provider.close()
        _orchestrator = None


def to_http_exception(error: EnhancementPipelineError) -> HTTPException:
    """Map a pipeline error onto an HTTP error"""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, InvalidAnchorPositionError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, (InvalidTransitionError, ConsistencyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, EnhancementTimeoutError):
        return HTTPException(status_code=status.HTTP_504_GATEWAY_TIMEOUT, detail=str(error))
    if isinstance(error, SceneExtractionError):
        return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    logger.error(f"Unhandled pipeline error: {error}")
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))
