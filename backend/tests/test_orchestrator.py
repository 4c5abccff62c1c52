"""
Tests for the enhancement orchestrator.

Runs go through real services against a temporary SQLite database; only the
image backend is replaced by scripted providers.
"""

import pytest
import asyncio
from typing import Optional, Set
from unittest.mock import Mock, AsyncMock
import sys
import os

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models import Anchor, Chapter, CharacterStatus, Enhancement, EnhancementStatus, EnhancementCharacter, Media
from app.services import run_tracker
from app.services.exceptions import (
    ChapterNotFoundError,
    InvalidAnchorPositionError,
    StoryNotFoundError,
)
from app.services.image_generation.base import GenerationRequest, GenerationResult, GenerationStatus
from app.services.image_generation.stub import StubProvider
from app.services.notifications import EnhancementEventBus
from app.services.orchestrator import (
    EnhancementOrchestrator,
    EnhancementOptions,
    RunStatus,
    SceneStatus,
)
from app.services.text_segmenter import SceneSegmenter
from conftest import CHAPTER_TEXT, make_story, make_chapter, make_character


class ScriptedProvider(StubProvider):
    """Stub that fails chosen calls (1-based) and can hold every job until released"""

    def __init__(self, fail_calls: Optional[Set[int]] = None, gate: Optional[asyncio.Event] = None):
        super().__init__()
        self.fail_calls = fail_calls or set()
        self.gate = gate
        self.calls = 0
        self.prompts = []

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        self.calls += 1
        call = self.calls
        self.prompts.append(request.prompt)
        if self.gate is not None:
            await self.gate.wait()
        if call in self.fail_calls:
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                job_id=f"job-{call}",
                error_message="Scripted failure",
            )
        return await super().generate(request)


def _orchestrator(session_factory, storage, provider=None, segmenter=None, max_polls=500):
    return EnhancementOrchestrator(
        session_factory,
        provider or ScriptedProvider(),
        segmenter=segmenter or SceneSegmenter(min_chars=50, min_scenes=2, max_scenes=8, words_per_scene=750),
        storage=storage,
        event_bus=EnhancementEventBus(),
        poll_interval=0.01,
        max_polls=max_polls,
        image_poll_interval=0.001,
        image_max_wait=1,
    )


async def _finish(run, timeout=5):
    return await asyncio.wait_for(run.wait(), timeout=timeout)


async def _until(predicate, timeout=5):
    for _ in range(int(timeout / 0.01)):
        if predicate():
            return
        await asyncio.sleep(0.01)
    raise AssertionError("condition not reached")


class TestRunEnhancement:

    @pytest.mark.asyncio
    async def test_illustrates_every_scene(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage)

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.COMPLETED
        assert run.progress == 100.0
        assert not run.skipped
        assert [s.status for s in run.scenes] == [SceneStatus.COMPLETED, SceneStatus.COMPLETED]
        assert [s.after_paragraph_index for s in run.scenes] == [2, 4]

        db.expire_all()
        anchors = db.query(Anchor).filter(Anchor.chapter_id == chapter.id).order_by(Anchor.after_paragraph_index).all()
        assert [a.after_paragraph_index for a in anchors] == [2, 4]
        for anchor, scene in zip(anchors, run.scenes):
            assert anchor.id == scene.anchor_id
            assert anchor.active_enhancement_id == scene.enhancement_id
            enhancement = db.get(Enhancement, scene.enhancement_id)
            assert enhancement.status == EnhancementStatus.COMPLETED
            assert enhancement.chapter_id == chapter.id
            media = db.get(Media, enhancement.media_id)
            assert (media.owner_type, media.owner_id) == ("enhancement", enhancement.id)
            assert (storage.root / media.storage_path).exists()

    @pytest.mark.asyncio
    async def test_progress_never_regresses(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(fail_calls={1}))
        seen = []

        run = await orchestrator.run_enhancement(chapter.id)
        run.add_listener(lambda r: seen.append(r.progress))
        await _finish(run)

        assert seen == sorted(seen)
        assert seen[-1] == 100.0
        assert all(0 <= p <= 100 for p in seen)

    @pytest.mark.asyncio
    async def test_rerun_reuses_anchors_and_adds_versions(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage)

        first = await _finish(await orchestrator.run_enhancement(chapter.id))
        second = await _finish(await orchestrator.run_enhancement(chapter.id))

        db.expire_all()
        assert db.query(Anchor).filter(Anchor.chapter_id == chapter.id).count() == 2
        assert [s.anchor_id for s in first.scenes] == [s.anchor_id for s in second.scenes]
        for scene in second.scenes:
            versions = db.query(Enhancement.version_number).filter(
                Enhancement.anchor_id == scene.anchor_id
            ).order_by(Enhancement.version_number).all()
            assert [v for (v,) in versions] == [1, 2]
            assert db.get(Anchor, scene.anchor_id).active_enhancement_id == scene.enhancement_id

    @pytest.mark.asyncio
    async def test_re_enhance_replaces_previous_results(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage)
        first = await _finish(await orchestrator.run_enhancement(chapter.id))

        rerun = await _finish(await orchestrator.re_enhance_chapter(chapter.id))

        assert rerun.status == RunStatus.COMPLETED
        db.expire_all()
        anchors = db.query(Anchor).filter(Anchor.chapter_id == chapter.id).all()
        enhancements = db.query(Enhancement).filter(Enhancement.chapter_id == chapter.id).all()
        assert {a.id for a in anchors} == {s.anchor_id for s in rerun.scenes}
        assert {e.id for e in enhancements} == {s.enhancement_id for s in rerun.scenes}
        assert not {a.id for a in anchors} & {s.anchor_id for s in first.scenes}
        assert not {e.id for e in enhancements} & {s.enhancement_id for s in first.scenes}
        assert {e.config["run_id"] for e in enhancements} == {rerun.run_id}
        assert [e.version_number for e in enhancements] == [1, 1]

    @pytest.mark.asyncio
    async def test_short_chapter_is_skipped(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db), text="Too short.")
        provider = ScriptedProvider()
        orchestrator = _orchestrator(session_factory, storage, provider)

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.COMPLETED
        assert run.skipped
        assert run.scenes == []
        assert run.progress == 100.0
        assert provider.calls == 0
        assert db.query(Anchor).count() == 0

    @pytest.mark.asyncio
    async def test_unknown_chapter(self, session_factory, storage):
        with pytest.raises(ChapterNotFoundError):
            await _orchestrator(session_factory, storage).run_enhancement(4040)

    @pytest.mark.asyncio
    async def test_raw_text_becomes_new_chapter(self, db, session_factory, storage):
        story = make_story(db)
        make_chapter(db, story, order_index=0)
        orchestrator = _orchestrator(session_factory, storage)

        run = await _finish(await orchestrator.run_enhancement(text=CHAPTER_TEXT, story_id=story.id, title="Again"))

        chapter = db.get(Chapter, run.chapter_id)
        assert chapter.title == "Again"
        assert chapter.order_index == 1
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_run_is_tracked(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        run = await _orchestrator(session_factory, storage).run_enhancement(chapter.id)

        assert run_tracker.get_run(run.run_id) is run
        assert run_tracker.list_runs(chapter.id) == [run]
        await _finish(run)
        assert run.to_dict()["status"] == "completed"


class TestFailures:

    @pytest.mark.asyncio
    async def test_partial_failure_still_completes(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(fail_calls={1}))

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.COMPLETED
        failed = [s for s in run.scenes if s.status == SceneStatus.FAILED]
        completed = [s for s in run.scenes if s.status == SceneStatus.COMPLETED]
        assert len(failed) == 1 and len(completed) == 1
        assert failed[0].error == "Scripted failure"
        db.expire_all()
        assert db.get(Anchor, failed[0].anchor_id).active_enhancement_id is None

    @pytest.mark.asyncio
    async def test_all_scenes_failing_fails_the_run(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(fail_calls={1, 2}))

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.FAILED
        assert run.progress == 80.0
        assert run.error == "No scene illustrated: 2 failed, 0 timed out"
        db.expire_all()
        statuses = {e.status for e in db.query(Enhancement).all()}
        assert statuses == {EnhancementStatus.FAILED}
        assert db.query(Media).count() == 0

    @pytest.mark.asyncio
    async def test_segmentation_error_fails_the_run(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        llm = Mock()
        llm.generate_text = AsyncMock(return_value="not json at all")
        segmenter = SceneSegmenter(llm_service=llm, min_chars=50, min_scenes=2, max_scenes=8, words_per_scene=750)
        orchestrator = _orchestrator(session_factory, storage, segmenter=segmenter)

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.FAILED
        assert "scene extraction" in run.error.lower()
        assert db.query(Anchor).count() == 0

    @pytest.mark.asyncio
    async def test_timeout_is_reported_and_late_results_persist(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        gate = asyncio.Event()
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(gate=gate), max_polls=3)

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert [s.status for s in run.scenes] == [SceneStatus.TIMED_OUT, SceneStatus.TIMED_OUT]
        assert run.status == RunStatus.FAILED
        assert run.error == "No scene illustrated: 0 failed, 2 timed out"
        db.expire_all()
        assert {e.status for e in db.query(Enhancement).all()} == {EnhancementStatus.GENERATING}

        gate.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        db.expire_all()
        for scene in run.scenes:
            assert db.get(Enhancement, scene.enhancement_id).status == EnhancementStatus.COMPLETED
            assert db.get(Anchor, scene.anchor_id).active_enhancement_id == scene.enhancement_id

    @pytest.mark.asyncio
    async def test_cancel_is_advisory(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        gate = asyncio.Event()
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(gate=gate))

        run = await orchestrator.run_enhancement(chapter.id)
        await _until(lambda: len(run.scenes) == 2 and all(s.enhancement_id for s in run.scenes))

        assert run.cancel() is True
        assert run.status == RunStatus.CANCELLED
        assert run.cancel() is False

        gate.set()
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        db.expire_all()
        for scene in run.scenes:
            assert db.get(Enhancement, scene.enhancement_id).status == EnhancementStatus.COMPLETED


class TestPromptsAndCharacters:

    @pytest.mark.asyncio
    async def test_known_characters_are_linked_and_described(self, db, session_factory, storage):
        story = make_story(db, style_preferences={"art_style": "gothic", "style": "watercolor"})
        chapter = make_chapter(db, story)
        mira = make_character(db, story, "Mira", short_desc="young woman in a salt-stained blue coat")
        provider = ScriptedProvider()
        orchestrator = _orchestrator(session_factory, storage, provider)

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.COMPLETED
        links = db.query(EnhancementCharacter).all()
        assert sorted(link.enhancement_id for link in links) == sorted(s.enhancement_id for s in run.scenes)
        assert {link.character_id for link in links} == {mira.id}
        for prompt in provider.prompts:
            assert "Maintain visual consistency for these characters: Mira: young woman" in prompt
            assert "gothic art style" in prompt
        enhancement = db.get(Enhancement, run.scenes[0].enhancement_id)
        assert enhancement.config["style"] == "watercolor"
        assert enhancement.config["scene_text"] == run.scenes[0].text
        assert enhancement.config["run_id"] == run.run_id

    @pytest.mark.asyncio
    async def test_style_option_overrides_story(self, db, session_factory, storage):
        story = make_story(db, style_preferences={"style": "watercolor"})
        chapter = make_chapter(db, story)
        orchestrator = _orchestrator(session_factory, storage)

        run = await _finish(await orchestrator.run_enhancement(chapter.id, EnhancementOptions(style="sketch", seed=3)))

        enhancement = db.get(Enhancement, run.scenes[0].enhancement_id)
        assert enhancement.config["style"] == "sketch"
        assert enhancement.seed == 3

    @pytest.mark.asyncio
    async def test_character_identification_failure_is_not_fatal(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        llm = Mock()
        llm.generate_text = AsyncMock(return_value="garbage")
        orchestrator = _orchestrator(session_factory, storage)
        orchestrator.llm_service = llm

        run = await _finish(await orchestrator.run_enhancement(chapter.id))

        assert run.status == RunStatus.COMPLETED
        assert db.query(EnhancementCharacter).count() == 0


class TestSingleEnhancements:

    @pytest.mark.asyncio
    async def test_insert_uses_surrounding_paragraphs(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        provider = ScriptedProvider()
        orchestrator = _orchestrator(session_factory, storage, provider)

        enhancement = await orchestrator.insert_enhancement(chapter.id, 3)

        assert enhancement.status == EnhancementStatus.GENERATING
        assert enhancement.config["source"] == "insert"
        assert "Ivy had swallowed" in enhancement.prompt
        assert "keeper's table" in enhancement.prompt
        assert "spiral stair" in enhancement.prompt
        assert "ferry" not in enhancement.prompt

        await asyncio.wait_for(orchestrator.drain(), timeout=5)
        again = await orchestrator.insert_enhancement(chapter.id, 3)
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        db.expire_all()
        assert again.anchor_id == enhancement.anchor_id
        assert again.version_number == 2
        assert db.get(Enhancement, enhancement.id).status == EnhancementStatus.COMPLETED
        assert db.get(Anchor, enhancement.anchor_id).active_enhancement_id == again.id

    @pytest.mark.asyncio
    async def test_insert_rejects_bad_paragraph(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        with pytest.raises(InvalidAnchorPositionError):
            await _orchestrator(session_factory, storage).insert_enhancement(chapter.id, 7)

    @pytest.mark.asyncio
    async def test_selection_adds_version_to_anchor(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage)
        first = await orchestrator.insert_enhancement(chapter.id, 1)
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        selected = await orchestrator.enhance_from_selection(
            "She walked uphill past shuttered shops", first.anchor_id
        )
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        assert selected.anchor_id == first.anchor_id
        assert selected.version_number == 2
        assert selected.config["source"] == "selection"
        assert selected.prompt.startswith("She walked uphill past shuttered shops")
        db.expire_all()
        assert db.get(Anchor, first.anchor_id).active_enhancement_id == selected.id

    @pytest.mark.asyncio
    async def test_empty_selection(self, db, session_factory, storage):
        with pytest.raises(ValueError):
            await _orchestrator(session_factory, storage).enhance_from_selection("   ", 1)

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, db, session_factory, storage):
        chapter = make_chapter(db, make_story(db))
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(fail_calls={1, 2}))
        run = await _finish(await orchestrator.run_enhancement(chapter.id))
        failed_id = run.scenes[0].enhancement_id

        retried = await orchestrator.retry_enhancement(failed_id)
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        db.expire_all()
        assert retried.version_number == 2
        assert retried.config["retry_of"] == failed_id
        assert db.get(Enhancement, retried.id).status == EnhancementStatus.COMPLETED
        assert db.get(Enhancement, failed_id).status == EnhancementStatus.FAILED
        assert db.get(Anchor, run.scenes[0].anchor_id).active_enhancement_id == retried.id

    @pytest.mark.asyncio
    async def test_retry_carries_character_links(self, db, session_factory, storage):
        story = make_story(db)
        chapter = make_chapter(db, story)
        mira = make_character(db, story, "Mira")
        oswin = make_character(db, story, "Oswin")
        ozzy = make_character(db, story, "Ozzy")
        hermit = make_character(db, story, "Hermit")
        orchestrator = _orchestrator(session_factory, storage, ScriptedProvider(fail_calls={1, 2}))
        run = await _finish(await orchestrator.run_enhancement(chapter.id))
        failed_id = run.scenes[0].enhancement_id
        # Links written before Ozzy was folded into Oswin and the hermit was ignored
        db.add_all([
            EnhancementCharacter(enhancement_id=failed_id, character_id=ozzy.id),
            EnhancementCharacter(enhancement_id=failed_id, character_id=hermit.id),
        ])
        ozzy.status = CharacterStatus.MERGED
        ozzy.merged_into_id = oswin.id
        hermit.status = CharacterStatus.IGNORED
        db.commit()

        retried = await orchestrator.retry_enhancement(failed_id)
        await asyncio.wait_for(orchestrator.drain(), timeout=5)

        db.expire_all()
        linked = {
            link.character_id for link in
            db.query(EnhancementCharacter).filter(EnhancementCharacter.enhancement_id == retried.id).all()
        }
        assert linked == {mira.id, oswin.id}
        source_links = db.query(EnhancementCharacter).filter(EnhancementCharacter.enhancement_id == failed_id).count()
        assert source_links == 3


class TestEnhanceStory:

    @pytest.mark.asyncio
    async def test_chapters_in_order(self, db, session_factory, storage):
        story = make_story(db)
        later = make_chapter(db, story, order_index=1, title="Two")
        earlier = make_chapter(db, story, order_index=0, title="One")
        orchestrator = _orchestrator(session_factory, storage)

        runs = await asyncio.wait_for(orchestrator.enhance_story(story.id), timeout=10)

        assert [r.chapter_id for r in runs] == [earlier.id, later.id]
        assert all(r.status == RunStatus.COMPLETED for r in runs)

    @pytest.mark.asyncio
    async def test_unknown_story(self, session_factory, storage):
        with pytest.raises(StoryNotFoundError):
            await _orchestrator(session_factory, storage).enhance_story(777)
