"""
Scene segmentation for chapter text.

Picks the passages of a chapter that are worth illustrating, one scene per
500-1000 words with a floor and a ceiling on the count. When a text
generation service is configured it chooses the passages; otherwise a
paragraph heuristic does. Every returned scene is a verbatim span of the
chapter with its character offsets and the paragraph it ends in.
"""

import json
import logging
from dataclasses import dataclass
from typing import List, Optional, Any

from ..config import settings
from ..utils.paragraphs import ParagraphSpan, split_paragraphs, paragraph_index_at
from .exceptions import SceneExtractionError
from .llm.extraction_service import extract_json_robust
from .llm.prompts import PromptManager, prompt_manager as default_prompt_manager

logger = logging.getLogger(__name__)


@dataclass
class SelectedScene:
    text: str
    start_position: int
    end_position: int
    after_paragraph_index: int  # Paragraph the scene ends in
    rationale: Optional[str] = None

    def to_dict(self):
        return {
            "text": self.text,
            "start_position": self.start_position,
            "end_position": self.end_position,
            "after_paragraph_index": self.after_paragraph_index,
            "rationale": self.rationale,
        }


def target_scene_count(
    word_count: int,
    min_scenes: int = 2,
    max_scenes: int = 8,
    words_per_scene: int = 750,
) -> int:
    """One scene per ``words_per_scene`` words, clamped to [min_scenes, max_scenes]"""
    if words_per_scene <= 0:
        raise ValueError("words_per_scene must be positive")
    wanted = int(round(word_count / words_per_scene))
    return max(min_scenes, min(max_scenes, wanted))


class SceneSegmenter:
    """Splits chapter text into illustratable scenes"""

    def __init__(
        self,
        llm_service: Optional[Any] = None,
        prompt_manager: Optional[PromptManager] = None,
        min_chars: Optional[int] = None,
        min_scenes: Optional[int] = None,
        max_scenes: Optional[int] = None,
        words_per_scene: Optional[int] = None,
    ):
        """
        Args:
            llm_service: object with ``async generate_text(prompt, system_prompt=, max_tokens=)``;
                the paragraph heuristic is used when None
            prompt_manager: source of the scene_extraction prompt
        """
        self.llm_service = llm_service
        self.prompt_manager = prompt_manager or default_prompt_manager
        self.min_chars = min_chars if min_chars is not None else settings.enhancement_min_chapter_chars
        self.min_scenes = min_scenes if min_scenes is not None else settings.enhancement_min_scenes
        self.max_scenes = max_scenes if max_scenes is not None else settings.enhancement_max_scenes
        self.words_per_scene = words_per_scene or settings.enhancement_words_per_scene

    def is_too_short(self, chapter_text: Optional[str]) -> bool:
        return len((chapter_text or "").strip()) < self.min_chars

    async def segment(self, chapter_text: str, word_count_hint: Optional[int] = None) -> List[SelectedScene]:
        """
        Select scenes from a chapter.

        Returns an empty list for chapters below the minimum length.

        Raises:
            SceneExtractionError: the text generation response did not match
                the expected schema
        """
        if self.is_too_short(chapter_text):
            logger.info(f"[SEGMENTER] Chapter text under {self.min_chars} characters, no scenes")
            return []

        paragraphs = split_paragraphs(chapter_text)
        if not paragraphs:
            return []

        word_count = word_count_hint or len(chapter_text.split())
        target = target_scene_count(word_count, self.min_scenes, self.max_scenes, self.words_per_scene)

        if self.llm_service is None:
            scenes = self._segment_by_paragraphs(paragraphs, target)
            logger.info(f"[SEGMENTER] Heuristic selected {len(scenes)} scenes ({word_count} words)")
            return scenes

        scenes = await self._segment_with_llm(chapter_text, paragraphs, word_count, target)
        logger.info(f"[SEGMENTER] Text generation selected {len(scenes)} scenes ({word_count} words, target {target})")
        return scenes

    async def _segment_with_llm(
        self,
        chapter_text: str,
        paragraphs: List[ParagraphSpan],
        word_count: int,
        target: int,
    ) -> List[SelectedScene]:
        system_prompt, user_prompt = self.prompt_manager.get_prompt_pair(
            "scene_extraction",
            word_count=word_count,
            target_scenes=target,
            min_scenes=self.min_scenes,
            max_scenes=self.max_scenes,
            chapter_text=chapter_text,
        )
        response = await self.llm_service.generate_text(
            user_prompt,
            system_prompt=system_prompt,
            max_tokens=self.prompt_manager.get_max_tokens("scene_extraction"),
        )
        raw_scenes = self.parse_scene_response(response)

        located: List[SelectedScene] = []
        for item in raw_scenes:
            snippet = item["text"]
            start = chapter_text.find(snippet)
            if start == -1:
                # Surrounding whitespace is not part of the passage
                snippet = snippet.strip()
                start = chapter_text.find(snippet) if snippet else -1
            if start == -1:
                logger.warning(f"[SEGMENTER] Dropping scene not found verbatim in chapter: '{item['text'][:60]}'")
                continue
            end = start + len(snippet)
            located.append(SelectedScene(
                text=snippet,
                start_position=start,
                end_position=end,
                after_paragraph_index=paragraph_index_at(paragraphs, end - 1),
                rationale=item.get("reason"),
            ))

        return self._collapse(located)

    @staticmethod
    def parse_scene_response(response: str) -> List[dict]:
        """
        Validate a scene extraction response.

        Expected shape: ``{"scenes": [{"text": str, "reason": str?}, ...]}``.
        Items with empty text are skipped; anything else off-schema raises.
        """
        try:
            parsed = extract_json_robust(response)
        except json.JSONDecodeError as e:
            raise SceneExtractionError(f"Failed to parse scene extraction response: {e}") from e

        if not isinstance(parsed, dict) or not isinstance(parsed.get("scenes"), list):
            raise SceneExtractionError("Scene extraction response has no 'scenes' list")

        scenes = []
        for i, item in enumerate(parsed["scenes"]):
            if not isinstance(item, dict) or not isinstance(item.get("text"), str):
                raise SceneExtractionError(f"Scene {i} in extraction response has no text")
            reason = item.get("reason")
            if reason is not None and not isinstance(reason, str):
                reason = str(reason)
            if item["text"].strip():
                scenes.append({"text": item["text"], "reason": reason})
        return scenes

    def _collapse(self, scenes: List[SelectedScene]) -> List[SelectedScene]:
        """Sort by position, drop duplicates and overlapping spans, cap the count"""
        result: List[SelectedScene] = []
        for scene in sorted(scenes, key=lambda s: (s.start_position, -s.end_position)):
            if result and scene.start_position < result[-1].end_position:
                continue
            result.append(scene)
        if len(result) > self.max_scenes:
            logger.info(f"[SEGMENTER] Capping {len(result)} scenes at {self.max_scenes}")
            result = result[:self.max_scenes]
        return result

    def _segment_by_paragraphs(self, paragraphs: List[ParagraphSpan], target: int) -> List[SelectedScene]:
        """Longest paragraph of each of ``target`` contiguous, word-balanced groups"""
        group_count = min(target, len(paragraphs))
        total_words = sum(p.word_count for p in paragraphs) or len(paragraphs)

        groups: List[List[ParagraphSpan]] = []
        current: List[ParagraphSpan] = []
        accumulated = 0
        for i, paragraph in enumerate(paragraphs):
            current.append(paragraph)
            accumulated += paragraph.word_count
            groups_after = group_count - len(groups) - 1
            paragraphs_after = len(paragraphs) - i - 1
            if groups_after > 0 and (
                accumulated >= total_words * (len(groups) + 1) / group_count
                or paragraphs_after == groups_after
            ):
                groups.append(current)
                current = []
        if current:
            groups.append(current)

        scenes = []
        for n, group in enumerate(groups, start=1):
            best = max(group, key=lambda p: (p.word_count, -p.index))
            scenes.append(SelectedScene(
                text=best.text,
                start_position=best.start,
                end_position=best.end,
                after_paragraph_index=best.index,
                rationale=f"Most descriptive paragraph of section {n}/{len(groups)}",
            ))
        return scenes
