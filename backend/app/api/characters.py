from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional, Dict, Any
from pydantic import BaseModel
from ..database import get_db
from ..models import CharacterStatus
from ..dependencies import to_http_exception
from ..services.character_registry import CharacterRegistry
from ..services.exceptions import EnhancementPipelineError
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


class CharacterUpdate(BaseModel):
    name: Optional[str] = None
    short_desc: Optional[str] = None
    aliases: Optional[List[str]] = None
    status: Optional[CharacterStatus] = None


class MergeRequest(BaseModel):
    target_id: int


@router.patch("/{character_id}")
async def update_character(character_id: int, request: CharacterUpdate, db: Session = Depends(get_db)) -> Dict[str, Any]:
    registry = CharacterRegistry(db)
    try:
        character = registry.update(
            character_id, name=request.name, short_desc=request.short_desc, aliases=request.aliases
        )
        if request.status is not None:
            character = registry.set_status(character_id, request.status)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return character.to_dict()


@router.post("/{character_id}/merge")
async def merge_character(character_id: int, request: MergeRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    try:
        target = CharacterRegistry(db).merge(character_id, request.target_id)
    except EnhancementPipelineError as e:
        raise to_http_exception(e)
    return target.to_dict()
