from fastapi import APIRouter, Depends, HTTPException, status, Response
from sqlalchemy.orm import Session
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field
from ..database import get_db
from ..models import Story, Chapter
from ..dependencies import get_orchestrator, to_http_exception
from ..services.exceptions import EnhancementPipelineError
from ..services.orchestrator import EnhancementOrchestrator, EnhancementOptions
import asyncio
import logging

logger = logging.getLogger(__name__)

router = APIRouter()

# Story-wide runs started from this router; kept referenced until done
_story_tasks = set()


class StyleIn(BaseModel):
    art_style: Optional[str] = None
    mood: Optional[str] = None
    color_palette: Optional[str] = None
    style: Optional[str] = None


class StoryCreate(BaseModel):
    owner_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    style_preferences: StyleIn = Field(default_factory=StyleIn)


class ChapterCreate(BaseModel):
    title: Optional[str] = Field(None, max_length=200)
    text_content: str
    order_index: Optional[int] = Field(None, ge=0)


class StoryEnhanceRequest(BaseModel):
    style: Optional[str] = None
    seed: Optional[int] = None
    re_enhance: bool = False


def _get_story(db: Session, story_id: int) -> Story:
    story = db.query(Story).filter(Story.id == story_id).first()
    if not story:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Story not found")
    return story


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_story(request: StoryCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    story = Story(
        owner_id=request.owner_id,
        title=request.title,
        description=request.description,
        style_preferences=request.style_preferences.model_dump(exclude_none=True),
    )
    db.add(story)
    db.commit()
    db.refresh(story)
    logger.info(f"Created story {story.id} for owner {story.owner_id}")
    return story.to_dict()


@router.get("/{story_id}")
async def get_story(story_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    story = _get_story(db, story_id)
    chapters = db.query(Chapter).filter(Chapter.story_id == story_id)\
        .order_by(Chapter.order_index, Chapter.id).all()
    return {**story.to_dict(), "chapters": [c.to_dict() for c in chapters]}


@router.delete("/{story_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_story(story_id: int, db: Session = Depends(get_db)):
    """Delete a story; the database cascades to its whole subtree"""
    deleted = db.query(Story).filter(Story.id == story_id).delete(synchronize_session=False)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Story not found")
    db.commit()
    logger.info(f"Deleted story {story_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{story_id}/chapters", status_code=status.HTTP_201_CREATED)
async def upload_chapter(story_id: int, request: ChapterCreate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    _get_story(db, story_id)
    if not request.text_content.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Chapter text is empty")

    order_index = request.order_index
    if order_index is None:
        last = db.query(Chapter.order_index).filter(Chapter.story_id == story_id)\
            .order_by(Chapter.order_index.desc()).first()
        order_index = (last[0] + 1) if last else 0

    chapter = Chapter(
        story_id=story_id,
        title=request.title,
        text_content=request.text_content,
        order_index=order_index,
    )
    db.add(chapter)
    db.commit()
    db.refresh(chapter)
    logger.info(f"Uploaded chapter {chapter.id} to story {story_id} ({len(chapter.paragraphs)} paragraphs)")
    return chapter.to_dict()


@router.delete("/{story_id}/chapters/{chapter_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_chapter(story_id: int, chapter_id: int, db: Session = Depends(get_db)):
    deleted = db.query(Chapter).filter(
        Chapter.id == chapter_id, Chapter.story_id == story_id
    ).delete(synchronize_session=False)
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chapter not found")
    db.commit()
    logger.info(f"Deleted chapter {chapter_id} from story {story_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{story_id}/enhance", status_code=status.HTTP_202_ACCEPTED)
async def enhance_story(
    story_id: int,
    request: StoryEnhanceRequest = StoryEnhanceRequest(),
    db: Session = Depends(get_db),
    orchestrator: EnhancementOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Enhance every chapter in order, in the background"""
    _get_story(db, story_id)
    chapter_count = db.query(Chapter).filter(Chapter.story_id == story_id).count()
    options = EnhancementOptions(style=request.style, seed=request.seed, re_enhance=request.re_enhance)

    async def _run():
        try:
            await orchestrator.enhance_story(story_id, options)
        except EnhancementPipelineError as e:
            logger.error(f"[ORCHESTRATOR] Story {story_id} enhancement failed: {e}")

    task = asyncio.create_task(_run())
    _story_tasks.add(task)
    task.add_done_callback(_story_tasks.discard)
    return {"story_id": story_id, "chapters": chapter_count, "status": "queued"}


@router.get("/{story_id}/characters")
async def list_characters(story_id: int, include_hidden: bool = False, db: Session = Depends(get_db)) -> List[Dict[str, Any]]:
    from ..services.character_registry import CharacterRegistry

    _get_story(db, story_id)
    return [c.to_dict() for c in CharacterRegistry(db).get_by_story(story_id, include_hidden=include_hidden)]
