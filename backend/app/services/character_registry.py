"""
Character registry for visual consistency across illustrations.

For every scene the registry works out which of the story's characters
appear, registers newly introduced ones as candidates and links them to the
enhancement through the enhancement_characters junction. Their visual
descriptions feed the image prompt.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..models import Character, CharacterStatus, EnhancementCharacter, Enhancement
from .exceptions import CharacterNotFoundError, ConsistencyError, EnhancementNotFoundError
from .image_generation.prompt_builder import CharacterDescription
from .llm.extraction_service import extract_json_robust
from .llm.prompts import PromptManager, prompt_manager as default_prompt_manager

logger = logging.getLogger(__name__)

DEFAULT_NEW_CHARACTER_CONFIDENCE = 0.7


@dataclass
class NewCharacter:
    name: str
    visual_description: str = ""
    confidence: float = DEFAULT_NEW_CHARACTER_CONFIDENCE


@dataclass
class SceneCharacterAnalysis:
    known_character_ids: List[int] = field(default_factory=list)
    new_characters: List[NewCharacter] = field(default_factory=list)


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return DEFAULT_NEW_CHARACTER_CONFIDENCE
    return max(0.0, min(1.0, confidence))


class CharacterRegistry:
    """Per-story character lookup, discovery and linking"""

    def __init__(
        self,
        db: Session,
        llm_service: Optional[Any] = None,
        prompt_manager: Optional[PromptManager] = None,
    ):
        self.db = db
        self.llm_service = llm_service
        self.prompt_manager = prompt_manager or default_prompt_manager

    def get(self, character_id: int) -> Character:
        character = self.db.query(Character).filter(Character.id == character_id).first()
        if not character:
            raise CharacterNotFoundError(character_id)
        return character

    def get_by_story(self, story_id: int, include_hidden: bool = False) -> List[Character]:
        """Characters of a story; ignored and merged ones only when include_hidden"""
        query = self.db.query(Character).filter(Character.story_id == story_id)
        if not include_hidden:
            query = query.filter(Character.status.in_([CharacterStatus.CANDIDATE, CharacterStatus.CONFIRMED]))
        return query.order_by(Character.name, Character.id).all()

    def resolve(self, character: Character) -> Character:
        """Follow merge links to the canonical character"""
        seen = {character.id}
        while character.status == CharacterStatus.MERGED and character.merged_into_id:
            target = self.db.query(Character).filter(Character.id == character.merged_into_id).first()
            if target is None or target.id in seen:
                break
            seen.add(target.id)
            character = target
        return character

    def find_by_name(self, story_id: int, name: str) -> Optional[Character]:
        """Case-insensitive lookup by name or alias, resolved through merges"""
        for character in self.get_by_story(story_id, include_hidden=True):
            if character.matches(name):
                return self.resolve(character)
        return None

    async def identify_characters_in_scene(self, scene_text: str, story_id: int) -> SceneCharacterAnalysis:
        """
        Which known characters appear in the scene, and which are new.

        Without a text generation service only known names and aliases that
        occur literally in the scene are reported.
        """
        known = self.get_by_story(story_id)
        if self.llm_service is None:
            return self._match_by_name(scene_text, known)

        known_list = "\n".join(f"- {c.name}: {c.short_desc or 'No description'}" for c in known) or "None yet"
        system_prompt, user_prompt = self.prompt_manager.get_prompt_pair(
            "character_identification",
            known_characters=known_list,
            scene_text=scene_text,
        )
        response = await self.llm_service.generate_text(
            user_prompt,
            system_prompt=system_prompt,
            max_tokens=self.prompt_manager.get_max_tokens("character_identification", 1024),
        )
        return self.parse_character_analysis(response, story_id)

    def _match_by_name(self, scene_text: str, known: List[Character]) -> SceneCharacterAnalysis:
        found: List[int] = []
        for character in known:
            names = [character.name] + list(character.aliases or [])
            for name in names:
                if name and re.search(rf"\b{re.escape(name)}\b", scene_text, re.IGNORECASE):
                    resolved = self.resolve(character)
                    if resolved.status != CharacterStatus.IGNORED and resolved.id not in found:
                        found.append(resolved.id)
                    break
        return SceneCharacterAnalysis(known_character_ids=found)

    def parse_character_analysis(self, response: str, story_id: int) -> SceneCharacterAnalysis:
        """
        Map a character identification response onto the registry.

        Raises ValueError when the response is not the expected JSON object.
        """
        try:
            parsed = extract_json_robust(response)
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to parse character analysis: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("Character analysis is not a JSON object")

        analysis = SceneCharacterAnalysis()
        for name in parsed.get("knownCharacters") or []:
            if not isinstance(name, str):
                continue
            character = self.find_by_name(story_id, name)
            if character is None or character.status == CharacterStatus.IGNORED:
                continue
            if character.id not in analysis.known_character_ids:
                analysis.known_character_ids.append(character.id)

        for item in parsed.get("newCharacters") or []:
            if not isinstance(item, dict) or not str(item.get("name") or "").strip():
                continue
            name = str(item["name"]).strip()
            existing = self.find_by_name(story_id, name)
            if existing is not None:
                # Already registered under this name or an alias
                if existing.status != CharacterStatus.IGNORED and existing.id not in analysis.known_character_ids:
                    analysis.known_character_ids.append(existing.id)
                continue
            if any(n.name.lower() == name.lower() for n in analysis.new_characters):
                continue
            analysis.new_characters.append(NewCharacter(
                name=name,
                visual_description=str(item.get("visualDescription") or "").strip(),
                confidence=_clamp_confidence(item.get("confidence", DEFAULT_NEW_CHARACTER_CONFIDENCE)),
            ))
        return analysis

    def get_visual_descriptions(self, character_ids: List[int]) -> List[CharacterDescription]:
        """Name and visual description of each character, in the given order"""
        descriptions = []
        for character_id in character_ids:
            character = self.db.query(Character).filter(Character.id == character_id).first()
            if character is None or character.status == CharacterStatus.IGNORED:
                continue
            descriptions.append(CharacterDescription(name=character.name, description=character.short_desc or ""))
        return descriptions

    def register_new_characters(self, new_characters: List[NewCharacter], story_id: int) -> List[Character]:
        """Insert discovered characters as candidates"""
        created = []
        for item in new_characters:
            character = Character(
                story_id=story_id,
                name=item.name,
                short_desc=item.visual_description,
                aliases=[],
                status=CharacterStatus.CANDIDATE,
                confidence=_clamp_confidence(item.confidence),
            )
            self.db.add(character)
            created.append(character)
        if created:
            self.db.commit()
            for character in created:
                self.db.refresh(character)
            logger.info(f"[CHARACTERS] Registered {len(created)} candidate characters for story {story_id}")
        return created

    def link_characters(self, enhancement_id: int, character_ids: List[int]) -> List[EnhancementCharacter]:
        """Write junction rows; ignored characters are skipped and merged ones resolved"""
        enhancement = self.db.query(Enhancement).filter(Enhancement.id == enhancement_id).first()
        if not enhancement:
            raise EnhancementNotFoundError(enhancement_id)

        existing = {
            link.character_id for link in
            self.db.query(EnhancementCharacter).filter(EnhancementCharacter.enhancement_id == enhancement_id).all()
        }
        links = []
        for character_id in character_ids:
            character = self.resolve(self.get(character_id))
            if character.status == CharacterStatus.IGNORED or character.id in existing:
                continue
            link = EnhancementCharacter(enhancement_id=enhancement_id, character_id=character.id)
            self.db.add(link)
            existing.add(character.id)
            links.append(link)
        if links:
            self.db.commit()
            logger.debug(f"[CHARACTERS] Linked {len(links)} characters to enhancement {enhancement_id}")
        return links

    def set_status(self, character_id: int, status: CharacterStatus) -> Character:
        """Confirm, ignore or reset a character. Merging goes through merge()."""
        status = CharacterStatus(status)
        if status == CharacterStatus.MERGED:
            raise ValueError("Use merge() to mark a character as merged")
        character = self.get(character_id)
        character.status = status
        character.merged_into_id = None
        if status == CharacterStatus.CONFIRMED:
            character.confidence = 1.0
        self.db.commit()
        self.db.refresh(character)
        logger.info(f"[CHARACTERS] Character {character_id} -> {status.value}")
        return character

    def update(self, character_id: int, **fields) -> Character:
        character = self.get(character_id)
        for key in ("name", "short_desc", "aliases"):
            if key in fields and fields[key] is not None:
                setattr(character, key, fields[key])
        self.db.commit()
        self.db.refresh(character)
        return character

    def merge(self, source_id: int, target_id: int) -> Character:
        """
        Fold a duplicate character into another one of the same story.

        The source keeps its row (status merged, pointing at the target); its
        name and aliases become aliases of the target and its enhancement
        links move over.
        """
        if source_id == target_id:
            raise ConsistencyError("Cannot merge a character into itself")
        source = self.get(source_id)
        target = self.resolve(self.get(target_id))
        if source.story_id != target.story_id:
            raise ConsistencyError("Characters belong to different stories")
        if target.id == source.id:
            raise ConsistencyError("Merge would create a cycle")

        aliases = list(target.aliases or [])
        for alias in [source.name] + list(source.aliases or []):
            if alias and alias.lower() != target.name.lower() and alias.lower() not in {a.lower() for a in aliases}:
                aliases.append(alias)
        target.aliases = aliases
        if not target.short_desc and source.short_desc:
            target.short_desc = source.short_desc

        target_links = {
            link.enhancement_id for link in
            self.db.query(EnhancementCharacter).filter(EnhancementCharacter.character_id == target.id).all()
        }
        for link in self.db.query(EnhancementCharacter).filter(EnhancementCharacter.character_id == source.id).all():
            if link.enhancement_id not in target_links:
                self.db.add(EnhancementCharacter(enhancement_id=link.enhancement_id, character_id=target.id))
                target_links.add(link.enhancement_id)
            self.db.delete(link)

        source.status = CharacterStatus.MERGED
        source.merged_into_id = target.id
        self.db.commit()
        self.db.refresh(target)
        logger.info(f"[CHARACTERS] Merged character {source.id} into {target.id}")
        return target
