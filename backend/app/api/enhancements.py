"""
Enhancement API Endpoints

Chapter enhancement runs, anchors and their enhancement versions.
"""

from fastapi import APIRouter, Depends, HTTPException, status, Response
from sqlalchemy.orm import Session
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from ..database import get_db
from ..config import settings
from ..dependencies import get_orchestrator, to_http_exception
from ..services import run_tracker
from ..services.anchor_service import AnchorService
from ..services.enhancement_job import EnhancementJobService
from ..services.exceptions import EnhancementPipelineError
from ..services.orchestrator import EnhancementOrchestrator, EnhancementOptions
from ..services.reading_view import ReadingViewService
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================
# Request Models
# ============================================================

class EnhanceChapterRequest(BaseModel):
    style: Optional[str] = None
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    width: Optional[int] = Field(None, ge=64, le=4096)
    height: Optional[int] = Field(None, ge=64, le=4096)
    re_enhance: bool = False
    identify_characters: bool = True
    uploader_id: Optional[str] = None

    def to_options(self) -> EnhancementOptions:
        return EnhancementOptions(**self.model_dump())


class InsertEnhancementRequest(EnhanceChapterRequest):
    after_paragraph_index: int = Field(..., ge=0)


class SelectionRequest(EnhanceChapterRequest):
    selection: str = Field(..., min_length=1)


class SetActiveRequest(BaseModel):
    enhancement_id: Optional[int] = None


class RetryRequest(BaseModel):
    uploader_id: Optional[str] = None


# ============================================================
# Runs
# ============================================================

@router.post("/chapters/{chapter_id}/enhance", status_code=status.HTTP_202_ACCEPTED)
async def enhance_chapter(
    chapter_id: int,
    request: EnhanceChapterRequest = EnhanceChapterRequest(),
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Start enhancing a chapter; poll the returned run for progress"""
    run_tracker.cleanup_stale_runs(settings.enhancement_run_max_age)
    try:
        run = await orchestrator.run_enhancement(chapter_id, request.to_options())
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return run.to_dict()


@router.get("/runs")
async def list_runs(chapter_id: Optional[int] = None) -> List[Dict[str, Any]]:
    return [run.to_dict() for run in run_tracker.list_runs(chapter_id)]


@router.get("/runs/{run_id}")
async def get_run(run_id: str) -> Dict[str, Any]:
    run = run_tracker.get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return run.to_dict()


@router.post("/runs/{run_id}/cancel")
async def cancel_run(run_id: str) -> Dict[str, Any]:
    run = run_tracker.get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    if not run.cancel():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Run already {run.status.value}")
    return run.to_dict()


# ============================================================
# Anchors
# ============================================================

@router.get("/chapters/{chapter_id}/anchors")
async def list_anchors(chapter_id: int, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    """Anchors in reading order, each with its active enhancement"""
    try:
        anchors = AnchorService(db).get_by_chapter(chapter_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return [anchor.to_dict(include_active=True) for anchor in anchors]


@router.get("/chapters/{chapter_id}/reading-view")
async def get_reading_view(chapter_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Chapter paragraphs with active illustrations in place, plus story and navigation"""
    try:
        return ReadingViewService(db).build(chapter_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)


@router.post("/chapters/{chapter_id}/anchors", status_code=status.HTTP_202_ACCEPTED)
async def insert_enhancement(
    chapter_id: int,
    request: InsertEnhancementRequest,
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Illustrate the passage around a paragraph"""
    options = EnhancementOptions(**request.model_dump(exclude={"after_paragraph_index"}))
    try:
        enhancement = await orchestrator.insert_enhancement(chapter_id, request.after_paragraph_index, options)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return enhancement.to_dict()


@router.post("/anchors/{anchor_id}/selection", status_code=status.HTTP_202_ACCEPTED)
async def enhance_selection(
    anchor_id: int,
    request: SelectionRequest,
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    options = EnhancementOptions(**request.model_dump(exclude={"selection"}))
    try:
        enhancement = await orchestrator.enhance_from_selection(request.selection, anchor_id, options)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return enhancement.to_dict()


@router.get("/anchors/{anchor_id}/versions")
async def list_versions(anchor_id: int, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    try:
        AnchorService(db).get(anchor_id)
        versions = EnhancementJobService(db).list_versions(anchor_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return [v.to_dict() for v in versions]


@router.put("/anchors/{anchor_id}/active")
async def set_active_enhancement(anchor_id: int, request: SetActiveRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Choose which completed version an anchor displays, or clear it"""
    try:
        anchor = AnchorService(db).set_active_enhancement(anchor_id, request.enhancement_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return anchor.to_dict(include_active=True)


@router.delete("/anchors/{anchor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_anchor(anchor_id: int, db: Session = Depends(get_db)):
    try:
        AnchorService(db).delete(anchor_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================
# Enhancements
# ============================================================

@router.get("/enhancements/{enhancement_id}")
async def get_enhancement(enhancement_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        return EnhancementJobService(db).get(enhancement_id).to_dict()
    except EnhancementPipelineError as e:
        raise to_http_exception(e)


@router.post("/enhancements/{enhancement_id}/retry", status_code=status.HTTP_202_ACCEPTED)
async def retry_enhancement(
    enhancement_id: int,
    request: RetryRequest = RetryRequest(),
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    try:
        enhancement = await orchestrator.retry_enhancement(enhancement_id, request.uploader_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return enhancement.to_dict()


@router.delete("/enhancements/{enhancement_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_enhancement(enhancement_id: int, db: Session = Depends(get_db)):
    try:
        EnhancementJobService(db).delete(enhancement_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============================================================
# Media
# ============================================================

@router.post("/media/purge")
async def purge_media(
    db: Session = Depends(get_db),
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Remove stored files whose media rows are gone"""
    removed = orchestrator.storage.purge_orphaned_files(db)
    logger.info(f"[STORAGE] Purged {len(removed)} orphaned files")
    return {"removed": removed}
