"""
Enhancement orchestration.

A run takes a chapter through segmentation, anchoring, enhancement job
creation and status watching, and reports progress on an EnhancementRun
handle:

    0-20    segmentation
    20-80   scenes accounted for (completed, failed or timed out)
    100     finalized

Image generation for each scene runs as its own background task with its
own database session. Watching is separate from generating: when a caller
cancels a run or a watch times out, generation keeps going and its result
is still written to the enhancement row.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session, joinedload

from ..config import settings
from ..models import Chapter, Story, Enhancement, EnhancementCharacter, EnhancementStatus
from ..utils.paragraphs import split_paragraphs
from . import run_tracker
from .anchor_service import AnchorService
from .character_registry import CharacterRegistry
from .enhancement_job import EnhancementJobService, EnhancementStatusWatcher
from .exceptions import (
    ChapterNotFoundError,
    EnhancementNotFoundError,
    EnhancementPipelineError,
    EnhancementTimeoutError,
    ImageGenerationError,
    StoryNotFoundError,
)
from .image_generation.base import GenerationRequest, ImageGenerationProvider
from .image_generation.prompt_builder import (
    BuiltPrompt,
    CharacterDescription,
    StylePreferences,
    build_scene_prompt,
)
from .media_storage import MediaStorage
from .notifications import EnhancementEventBus
from .text_segmenter import SceneSegmenter

logger = logging.getLogger(__name__)

SEGMENTED_PROGRESS = 20.0
GENERATION_SPAN = 60.0


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SceneStatus(str, Enum):
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class EnhancementOptions:
    style: Optional[str] = None  # Overrides the story's style preference
    seed: Optional[int] = None
    negative_prompt: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    re_enhance: bool = False  # Drop existing anchors of the chapter first
    identify_characters: bool = True
    uploader_id: Optional[str] = None


@dataclass
class SceneOutcome:
    index: int
    text: str
    start_position: int
    end_position: int
    after_paragraph_index: int
    anchor_id: Optional[int] = None
    enhancement_id: Optional[int] = None
    status: SceneStatus = SceneStatus.GENERATING
    error: Optional[str] = None
    rationale: Optional[str] = None

    def to_dict(self):
        return {
            "index": self.index,
            "text": self.text,
            "start_position": self.start_position,
            "end_position": self.end_position,
            "after_paragraph_index": self.after_paragraph_index,
            "anchor_id": self.anchor_id,
            "enhancement_id": self.enhancement_id,
            "status": self.status.value,
            "error": self.error,
            "rationale": self.rationale,
        }


class EnhancementRun:
    """Handle for one chapter enhancement run"""

    def __init__(self, chapter_id: Optional[int] = None, story_id: Optional[int] = None):
        self.run_id = uuid.uuid4().hex
        self.chapter_id = chapter_id
        self.story_id = story_id
        self.status = RunStatus.QUEUED
        self.progress = 0.0
        self.scenes: List[SceneOutcome] = []
        self.error: Optional[str] = None
        self.skipped = False
        self.created_at = time.time()
        self.finished_at: Optional[float] = None
        self._accounted = 0
        self._listeners: List[Callable[["EnhancementRun"], None]] = []
        self._done = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def is_finished(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)

    def add_listener(self, listener: Callable[["EnhancementRun"], None]) -> None:
        """Called with the run after every progress change"""
        self._listeners.append(listener)

    def _advance(self, value: float) -> None:
        value = max(0.0, min(100.0, value))
        if value <= self.progress:
            return
        self.progress = value
        for listener in list(self._listeners):
            listener(self)

    def _scene_accounted(self) -> None:
        self._accounted += 1
        total = len(self.scenes) or 1
        self._advance(SEGMENTED_PROGRESS + GENERATION_SPAN * min(self._accounted, total) / total)

    def _finish(self, status: RunStatus, error: Optional[str] = None) -> None:
        if self.is_finished:
            return
        self.status = status
        self.error = error
        self.finished_at = time.time()
        if status == RunStatus.COMPLETED:
            self._advance(100.0)
        self._done.set()
        for listener in list(self._listeners):
            listener(self)

    def cancel(self) -> bool:
        """
        Stop watching this run.

        Advisory only: image generation already dispatched keeps running and
        its results are still persisted. Returns False if the run had
        already finished.
        """
        if self.is_finished:
            return False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._finish(RunStatus.CANCELLED, "Cancelled by caller")
        logger.info(f"[ORCHESTRATOR] Run {self.run_id} cancelled by caller")
        return True

    async def wait(self) -> "EnhancementRun":
        await self._done.wait()
        return self

    def to_dict(self):
        return {
            "run_id": self.run_id,
            "chapter_id": self.chapter_id,
            "status": self.status.value,
            "progress": round(self.progress, 1),
            "skipped": self.skipped,
            "error": self.error,
            "scenes": [s.to_dict() for s in self.scenes],
        }


class EnhancementOrchestrator:
    """Runs the enhancement pipeline for chapters and stories"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        provider: ImageGenerationProvider,
        segmenter: Optional[SceneSegmenter] = None,
        storage: Optional[MediaStorage] = None,
        llm_service: Optional[Any] = None,
        event_bus: Optional[EnhancementEventBus] = None,
        poll_interval: Optional[float] = None,
        max_polls: Optional[int] = None,
        image_poll_interval: Optional[float] = None,
        image_max_wait: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.llm_service = llm_service
        self.segmenter = segmenter or SceneSegmenter(llm_service=llm_service)
        self.storage = storage or MediaStorage()
        self.event_bus = event_bus
        self.watcher = EnhancementStatusWatcher(
            session_factory,
            event_bus=event_bus,
            poll_interval=poll_interval if poll_interval is not None else settings.enhancement_poll_interval,
            max_polls=max_polls if max_polls is not None else settings.enhancement_max_polls,
        )
        self.image_poll_interval = image_poll_interval if image_poll_interval is not None else settings.image_poll_interval
        self.image_max_wait = image_max_wait if image_max_wait is not None else settings.image_max_wait
        self._workers: Set[asyncio.Task] = set()

    # Runs

    async def run_enhancement(
        self,
        chapter_id: Optional[int] = None,
        options: Optional[EnhancementOptions] = None,
        text: Optional[str] = None,
        story_id: Optional[int] = None,
        title: Optional[str] = None,
    ) -> EnhancementRun:
        """
        Start enhancing a chapter and return its run handle immediately.

        Pass ``text`` and ``story_id`` instead of ``chapter_id`` to upload raw
        text as a new chapter first.
        """
        options = options or EnhancementOptions()
        if chapter_id is None:
            if text is None or story_id is None:
                raise ValueError("Either chapter_id or text and story_id are required")
            chapter_id = self._create_chapter(story_id, text, title)
        else:
            db = self.session_factory()
            try:
                if not db.query(Chapter.id).filter(Chapter.id == chapter_id).first():
                    raise ChapterNotFoundError(chapter_id)
            finally:
                db.close()

        run = EnhancementRun(chapter_id=chapter_id)
        run_tracker.register_run(run)
        run._task = asyncio.create_task(self._execute(run, options))
        logger.info(f"[ORCHESTRATOR] Started run {run.run_id} for chapter {chapter_id}")
        return run

    async def re_enhance_chapter(self, chapter_id: int, options: Optional[EnhancementOptions] = None) -> EnhancementRun:
        """Drop the chapter's anchors (and with them every enhancement) and run again"""
        options = options or EnhancementOptions()
        options.re_enhance = True
        return await self.run_enhancement(chapter_id, options)

    async def enhance_story(self, story_id: int, options: Optional[EnhancementOptions] = None) -> List[EnhancementRun]:
        """Enhance every chapter of a story in chapter order, one after another"""
        db = self.session_factory()
        try:
            story = db.query(Story).filter(Story.id == story_id).first()
            if not story:
                raise StoryNotFoundError(story_id)
            chapter_ids = [
                cid for (cid,) in db.query(Chapter.id).filter(Chapter.story_id == story_id)
                .order_by(Chapter.order_index, Chapter.id).all()
            ]
        finally:
            db.close()

        if not chapter_ids:
            logger.warning(f"[ORCHESTRATOR] Story {story_id} has no chapters to enhance")

        runs = []
        for chapter_id in chapter_ids:
            run = await self.run_enhancement(chapter_id, options)
            await run.wait()
            runs.append(run)
        return runs

    def _create_chapter(self, story_id: int, text: str, title: Optional[str]) -> int:
        db = self.session_factory()
        try:
            if not db.query(Story.id).filter(Story.id == story_id).first():
                raise StoryNotFoundError(story_id)
            last = db.query(Chapter.order_index).filter(Chapter.story_id == story_id)\
                .order_by(Chapter.order_index.desc()).first()
            chapter = Chapter(
                story_id=story_id,
                title=title,
                text_content=text,
                order_index=(last[0] + 1) if last else 0,
            )
            db.add(chapter)
            db.commit()
            return chapter.id
        finally:
            db.close()

    async def _execute(self, run: EnhancementRun, options: EnhancementOptions) -> None:
        db = self.session_factory()
        watchers: List[asyncio.Task] = []
        try:
            run.status = RunStatus.RUNNING
            chapter = db.query(Chapter).filter(Chapter.id == run.chapter_id).first()
            if not chapter:
                raise ChapterNotFoundError(run.chapter_id)
            run.story_id = chapter.story_id

            anchors = AnchorService(db)
            if options.re_enhance:
                anchors.delete_by_chapter(chapter.id)

            if self.segmenter.is_too_short(chapter.text_content):
                logger.info(f"[ORCHESTRATOR] Chapter {chapter.id} too short, skipping enhancement")
                run.skipped = True
                run._finish(RunStatus.COMPLETED)
                return

            scenes = await self.segmenter.segment(chapter.text_content)
            run._advance(SEGMENTED_PROGRESS)
            if not scenes:
                logger.info(f"[ORCHESTRATOR] No scenes selected in chapter {chapter.id}")
                run.skipped = True
                run._finish(RunStatus.COMPLETED)
                return

            story = db.query(Story).filter(Story.id == chapter.story_id).first()
            preferences = self._preferences(story, options)

            seen_positions = set()
            for scene in scenes:
                if scene.after_paragraph_index in seen_positions:
                    logger.debug(f"[ORCHESTRATOR] Skipping second scene at paragraph {scene.after_paragraph_index}")
                    continue
                seen_positions.add(scene.after_paragraph_index)
                outcome = SceneOutcome(
                    index=len(run.scenes),
                    text=scene.text,
                    start_position=scene.start_position,
                    end_position=scene.end_position,
                    after_paragraph_index=scene.after_paragraph_index,
                    rationale=scene.rationale,
                )
                run.scenes.append(outcome)
                anchor_id, enhancement_id, request = await self._prepare_scene(
                    db, chapter, scene.text, scene.after_paragraph_index, preferences, options,
                    {"scene_text": scene.text, "run_id": run.run_id},
                )
                outcome.anchor_id = anchor_id
                outcome.enhancement_id = enhancement_id
                self._spawn_worker(enhancement_id, request, chapter.id, anchor_id, options.uploader_id)

            watchers = [asyncio.create_task(self._watch(run, outcome)) for outcome in run.scenes]
            await asyncio.gather(*watchers)

            succeeded = sum(1 for s in run.scenes if s.status == SceneStatus.COMPLETED)
            if succeeded == 0:
                timed_out = sum(1 for s in run.scenes if s.status == SceneStatus.TIMED_OUT)
                failed = len(run.scenes) - timed_out
                run._finish(
                    RunStatus.FAILED,
                    f"No scene illustrated: {failed} failed, {timed_out} timed out",
                )
                logger.warning(f"[ORCHESTRATOR] Run {run.run_id} failed: no scene succeeded")
            else:
                run._finish(RunStatus.COMPLETED)
                logger.info(
                    f"[ORCHESTRATOR] Run {run.run_id} completed: {succeeded}/{len(run.scenes)} scenes illustrated"
                )
        except asyncio.CancelledError:
            for task in watchers:
                task.cancel()
            run._finish(RunStatus.CANCELLED, "Cancelled by caller")
            raise
        except EnhancementPipelineError as e:
            logger.error(f"[ORCHESTRATOR] Run {run.run_id} failed: {e}")
            run._finish(RunStatus.FAILED, str(e))
        except Exception as e:
            logger.exception(f"[ORCHESTRATOR] Run {run.run_id} crashed: {e}")
            run._finish(RunStatus.FAILED, str(e))
        finally:
            db.close()

    async def _watch(self, run: EnhancementRun, outcome: SceneOutcome) -> None:
        try:
            status = await self.watcher.wait(outcome.enhancement_id)
            if status == EnhancementStatus.COMPLETED:
                outcome.status = SceneStatus.COMPLETED
            else:
                outcome.status = SceneStatus.FAILED
                outcome.error = self._error_message(outcome.enhancement_id)
        except EnhancementTimeoutError as e:
            outcome.status = SceneStatus.TIMED_OUT
            outcome.error = str(e)
        except EnhancementNotFoundError as e:
            outcome.status = SceneStatus.FAILED
            outcome.error = str(e)
        run._scene_accounted()

    def _error_message(self, enhancement_id: int) -> Optional[str]:
        db = self.session_factory()
        try:
            return db.query(Enhancement.error_message).filter(Enhancement.id == enhancement_id).scalar()
        finally:
            db.close()

    # Single enhancements

    async def insert_enhancement(
        self,
        chapter_id: int,
        after_paragraph_index: int,
        options: Optional[EnhancementOptions] = None,
    ) -> Enhancement:
        """
        Illustrate the passage around a paragraph.

        The prompt uses the previous, current and next paragraph. The anchor
        at that paragraph is created or reused; generation runs in the
        background and the new enhancement is returned in ``generating``.
        """
        options = options or EnhancementOptions()
        db = self.session_factory()
        try:
            chapter = db.query(Chapter).filter(Chapter.id == chapter_id).first()
            if not chapter:
                raise ChapterNotFoundError(chapter_id)
            AnchorService(db).validate_position(chapter, after_paragraph_index)

            paragraphs = split_paragraphs(chapter.text_content)
            context = paragraphs[max(0, after_paragraph_index - 1):after_paragraph_index + 2]
            context_text = "\n\n".join(p.text for p in context)

            story = db.query(Story).filter(Story.id == chapter.story_id).first()
            anchor_id, enhancement_id, request = await self._prepare_scene(
                db, chapter, context_text, after_paragraph_index, self._preferences(story, options), options,
                {"scene_text": context_text, "source": "insert"},
            )
            self._spawn_worker(enhancement_id, request, chapter.id, anchor_id, options.uploader_id)
            return self._load_enhancement(db, enhancement_id)
        finally:
            db.close()

    async def enhance_from_selection(
        self,
        selection: str,
        anchor_id: int,
        options: Optional[EnhancementOptions] = None,
    ) -> Enhancement:
        """New version for an existing anchor, illustrating text the reader selected"""
        options = options or EnhancementOptions()
        if not selection or not selection.strip():
            raise ValueError("Selection is empty")
        db = self.session_factory()
        try:
            anchor = AnchorService(db).get(anchor_id)
            chapter = db.query(Chapter).filter(Chapter.id == anchor.chapter_id).first()
            if not chapter:
                raise ChapterNotFoundError(anchor.chapter_id)
            story = db.query(Story).filter(Story.id == chapter.story_id).first()
            anchor_id, enhancement_id, request = await self._prepare_scene(
                db, chapter, selection.strip(), anchor.after_paragraph_index,
                self._preferences(story, options), options,
                {"scene_text": selection.strip(), "source": "selection"},
            )
            self._spawn_worker(enhancement_id, request, chapter.id, anchor_id, options.uploader_id)
            return self._load_enhancement(db, enhancement_id)
        finally:
            db.close()

    async def retry_enhancement(self, enhancement_id: int, uploader_id: Optional[str] = None) -> Enhancement:
        """Start a new version of an enhancement with the same prompt, config and characters"""
        db = self.session_factory()
        try:
            jobs = EnhancementJobService(db, self.event_bus)
            retried = jobs.retry(enhancement_id)
            character_ids = [
                link.character_id for link in
                db.query(EnhancementCharacter).filter(EnhancementCharacter.enhancement_id == enhancement_id).all()
            ]
            if character_ids:
                CharacterRegistry(db, self.llm_service).link_characters(retried.id, character_ids)
            config = retried.config or {}
            request = GenerationRequest(
                prompt=retried.prompt or config.get("scene_text", ""),
                negative_prompt=config.get("negative_prompt", ""),
                width=config.get("width", settings.image_width),
                height=config.get("height", settings.image_height),
                style_preset=config.get("style"),
            )
            self._spawn_worker(retried.id, request, retried.chapter_id, retried.anchor_id, uploader_id)
            return self._load_enhancement(db, retried.id)
        finally:
            db.close()

    # Shared steps

    @staticmethod
    def _load_enhancement(db: Session, enhancement_id: int) -> Enhancement:
        """Enhancement with its media loaded, usable after the session closes"""
        enhancement = db.query(Enhancement).options(joinedload(Enhancement.media))\
            .filter(Enhancement.id == enhancement_id).first()
        if not enhancement:
            raise EnhancementNotFoundError(enhancement_id)
        return enhancement

    def _preferences(self, story: Optional[Story], options: EnhancementOptions) -> StylePreferences:
        preferences = StylePreferences.from_dict(
            story.style_preferences if story else None,
            default_style=settings.image_default_style,
        )
        if options.style:
            preferences.style = options.style
        return preferences

    async def _prepare_scene(
        self,
        db: Session,
        chapter: Chapter,
        scene_text: str,
        position: int,
        preferences: StylePreferences,
        options: EnhancementOptions,
        extra_config: Dict[str, Any],
    ):
        """Anchor, prompt, enhancement row and character links for one scene"""
        anchor = AnchorService(db).create_anchor(chapter.id, position)

        registry = CharacterRegistry(db, self.llm_service)
        character_ids: List[int] = []
        known: List[CharacterDescription] = []
        new: List[CharacterDescription] = []
        if options.identify_characters:
            try:
                analysis = await registry.identify_characters_in_scene(scene_text, chapter.story_id)
                created = registry.register_new_characters(analysis.new_characters, chapter.story_id)
                known = registry.get_visual_descriptions(analysis.known_character_ids)
                new = [CharacterDescription(name=c.name, description=c.short_desc or "") for c in created]
                character_ids = analysis.known_character_ids + [c.id for c in created]
            except Exception as e:
                db.rollback()
                logger.warning(f"[CHARACTERS] Character identification failed, continuing without: {e}")

        built: BuiltPrompt = build_scene_prompt(
            scene_text, known, new, preferences, negative_prompt=options.negative_prompt
        )
        width = options.width or settings.image_width
        height = options.height or settings.image_height
        config = {
            "style": built.style,
            "negative_prompt": built.negative_prompt,
            "width": width,
            "height": height,
            "characters": built.characters,
            "provider": self.provider.provider_name,
        }
        config.update(extra_config)

        enhancement = EnhancementJobService(db, self.event_bus).create(
            anchor.id, prompt=built.prompt, config=config, seed=options.seed,
        )
        if character_ids:
            registry.link_characters(enhancement.id, character_ids)

        request = GenerationRequest(
            prompt=built.prompt,
            negative_prompt=built.negative_prompt,
            width=width,
            height=height,
            seed=options.seed,
            style_preset=built.style,
        )
        return anchor.id, enhancement.id, request

    def _spawn_worker(
        self,
        enhancement_id: int,
        request: GenerationRequest,
        chapter_id: int,
        anchor_id: int,
        uploader_id: Optional[str],
    ) -> asyncio.Task:
        task = asyncio.create_task(self._generate(enhancement_id, request, chapter_id, anchor_id, uploader_id))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)
        return task

    async def _generate(
        self,
        enhancement_id: int,
        request: GenerationRequest,
        chapter_id: int,
        anchor_id: int,
        uploader_id: Optional[str],
    ) -> None:
        """Generate, store and record the image for one enhancement"""
        db = self.session_factory()
        jobs = EnhancementJobService(db, self.event_bus)
        media_id: Optional[int] = None
        try:
            logger.info(f"[IMAGE_GEN] Generating image for enhancement {enhancement_id} via {self.provider.provider_name}")
            result = await self.provider.generate_and_wait(
                request, poll_interval=self.image_poll_interval, max_wait=self.image_max_wait
            )
            if not result.success:
                raise ImageGenerationError(result.error_message or "Image generation failed")

            media = await self.storage.store_result(db, result, chapter_id, anchor_id, uploader_id)
            media_id = media.id
            jobs.complete(enhancement_id, media.id, metadata={
                "provider": self.provider.provider_name,
                "job_id": result.job_id,
                "seed": result.seed,
                **{k: v for k, v in result.metadata.items() if v is not None},
            })
        except Exception as e:
            db.rollback()
            if media_id is not None:
                self.storage.delete_media(db, media_id)
            logger.error(f"[IMAGE_GEN] Enhancement {enhancement_id} generation failed: {e}")
            try:
                jobs.fail(enhancement_id, str(e) or e.__class__.__name__)
            except EnhancementPipelineError as fail_error:
                # Row deleted or already terminal while generating
                logger.warning(f"[ENHANCEMENT] Could not record failure for {enhancement_id}: {fail_error}")
        finally:
            db.close()

    async def drain(self) -> None:
        """Wait for every background generation task to finish"""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
