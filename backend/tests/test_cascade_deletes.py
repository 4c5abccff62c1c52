"""
Tests for the deletion graph.

Deletes are issued as bulk statements so that only the database rules
(ON DELETE CASCADE / SET NULL and the media cleanup trigger) are exercised,
never ORM-side cascades. Ids are read before the delete and results are
checked through a fresh session.
"""

import pytest
import sys
import os
from sqlalchemy.exc import IntegrityError

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models import (
    Story, Chapter, Anchor, Enhancement, EnhancementCharacter, Character, Media,
)
from app.services.anchor_service import AnchorService
from app.services.character_registry import CharacterRegistry
from app.services.enhancement_job import EnhancementJobService
from conftest import make_story, make_chapter, make_media, make_character


def _illustrate(db, chapter_id, position, character_ids=()):
    """Anchor + completed enhancement owning a fresh media row. Returns the three ids."""
    anchor_id = AnchorService(db).create_anchor(chapter_id, position).id
    jobs = EnhancementJobService(db)
    enhancement = jobs.create(anchor_id, prompt="scene")
    enhancement_id = enhancement.id
    media_id = make_media(db, url=f"/media/{chapter_id}_{position}_{enhancement.version_number}.png").id
    jobs.complete(enhancement_id, media_id)
    if character_ids:
        CharacterRegistry(db).link_characters(enhancement_id, list(character_ids))
    return anchor_id, enhancement_id, media_id


def _bulk_delete(db, model, row_id):
    db.query(model).filter(model.id == row_id).delete(synchronize_session=False)
    db.commit()


@pytest.fixture
def check(session_factory):
    """Separate session for assertions, so nothing is served from an identity map"""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class TestStoryDelete:

    def test_story_with_two_illustrated_chapters(self, db, check):
        story = make_story(db)
        story_id = story.id
        chapter_ids = [make_chapter(db, story, order_index=i).id for i in range(2)]
        character_ids = [make_character(db, story, name).id for name in ("Mira", "Stranger")]
        media_ids = []
        for chapter_id, character_id in zip(chapter_ids, character_ids):
            _, _, media_id = _illustrate(db, chapter_id, 1, [character_id])
            media_ids.append(media_id)
        unowned_id = make_media(db, url="/media/avatar.png").id

        _bulk_delete(db, Story, story_id)

        assert check.query(Chapter).filter(Chapter.story_id == story_id).count() == 0
        assert check.query(Anchor).filter(Anchor.chapter_id.in_(chapter_ids)).count() == 0
        assert check.query(Enhancement).filter(Enhancement.chapter_id.in_(chapter_ids)).count() == 0
        assert check.query(EnhancementCharacter).count() == 0
        assert check.query(Character).filter(Character.story_id == story_id).count() == 0
        assert [m.id for m in check.query(Media).all()] == [unowned_id]
        assert len(set(media_ids)) == 2

    def test_other_stories_are_untouched(self, db, check):
        story = make_story(db)
        story_id = story.id
        chapter_id = make_chapter(db, story).id
        mira_id = make_character(db, story, "Mira").id
        _illustrate(db, chapter_id, 0, [mira_id])
        _illustrate(db, chapter_id, 3, [mira_id])
        upload_id = make_media(db, url="/media/avatar.png").id
        other_story = make_story(db, title="Untouched")
        other_chapter_id = make_chapter(db, other_story).id
        _, other_enhancement_id, other_media_id = _illustrate(db, other_chapter_id, 1)

        _bulk_delete(db, Story, story_id)

        assert {m.id for m in check.query(Media).all()} == {upload_id, other_media_id}
        assert check.get(Enhancement, other_enhancement_id) is not None
        assert check.query(Chapter).filter(Chapter.id == other_chapter_id).count() == 1


class TestAnchorDelete:

    def test_removes_versions_links_and_owned_media(self, db, check):
        story = make_story(db)
        chapter_id = make_chapter(db, story).id
        mira_id = make_character(db, story, "Mira").id
        anchor_id, first_id, first_media_id = _illustrate(db, chapter_id, 2, [mira_id])
        jobs = EnhancementJobService(db)
        second_id = jobs.retry(first_id).id
        second_media_id = make_media(db, url="/media/second.png").id
        jobs.complete(second_id, second_media_id)
        _, kept_id, kept_media_id = _illustrate(db, chapter_id, 4, [mira_id])

        AnchorService(db).delete(anchor_id)

        assert check.query(Enhancement).filter(Enhancement.anchor_id == anchor_id).count() == 0
        assert check.get(Media, first_media_id) is None
        assert check.get(Media, second_media_id) is None
        assert check.get(Media, kept_media_id) is not None
        assert check.get(Enhancement, kept_id) is not None
        # Characters survive; only the junction rows of removed enhancements go
        assert check.get(Character, mira_id) is not None
        assert [link.enhancement_id for link in check.query(EnhancementCharacter).all()] == [kept_id]


class TestEnhancementDelete:

    def test_only_own_media_is_removed(self, db, check):
        chapter_id = make_chapter(db, make_story(db)).id
        _, enhancement_id, media_id = _illustrate(db, chapter_id, 1)
        _, neighbour_id, neighbour_media_id = _illustrate(db, chapter_id, 2)
        # Same uploader and type, but tagged for a different owner
        cover_id = make_media(db, url="/media/cover.png", owner_type="story_cover", owner_id=enhancement_id).id

        EnhancementJobService(db).delete(enhancement_id)

        assert check.get(Media, media_id) is None
        assert check.get(Media, neighbour_media_id) is not None
        assert check.get(Media, cover_id) is not None
        assert check.get(Enhancement, neighbour_id) is not None

    def test_active_reference_is_cleared(self, db, check):
        chapter_id = make_chapter(db, make_story(db)).id
        anchor_id, enhancement_id, _ = _illustrate(db, chapter_id, 0)
        assert check.get(Anchor, anchor_id).active_enhancement_id == enhancement_id
        check.expire_all()

        EnhancementJobService(db).delete(enhancement_id)

        assert check.get(Anchor, anchor_id).active_enhancement_id is None

    def test_character_delete_keeps_enhancement(self, db, check):
        story = make_story(db)
        chapter_id = make_chapter(db, story).id
        stranger_id = make_character(db, story, "Stranger").id
        _, enhancement_id, _ = _illustrate(db, chapter_id, 4, [stranger_id])

        _bulk_delete(db, Character, stranger_id)

        assert check.get(Enhancement, enhancement_id) is not None
        assert check.query(EnhancementCharacter).count() == 0


class TestChapterDelete:

    def test_chapter_delete_cascades_through_anchors(self, db, check):
        story = make_story(db)
        story_id = story.id
        chapter_id = make_chapter(db, story).id
        _, _, media_id = _illustrate(db, chapter_id, 0)

        _bulk_delete(db, Chapter, chapter_id)

        assert check.query(Anchor).count() == 0
        assert check.query(Enhancement).count() == 0
        assert check.get(Media, media_id) is None
        assert check.get(Story, story_id) is not None


class TestIdsAreNotReused:

    def test_recreated_rows_get_fresh_ids(self, db):
        chapter_id = make_chapter(db, make_story(db)).id
        anchor_id, enhancement_id, _ = _illustrate(db, chapter_id, 2)

        AnchorService(db).delete_by_chapter(chapter_id)
        new_anchor_id = AnchorService(db).create_anchor(chapter_id, 2).id
        new_enhancement_id = EnhancementJobService(db).create(new_anchor_id).id

        assert new_anchor_id > anchor_id
        assert new_enhancement_id > enhancement_id


class TestMediaProtection:

    def test_media_in_use_cannot_be_deleted_directly(self, db):
        chapter_id = make_chapter(db, make_story(db)).id
        _, _, media_id = _illustrate(db, chapter_id, 0)

        with pytest.raises(IntegrityError):
            db.query(Media).filter(Media.id == media_id).delete(synchronize_session=False)
            db.commit()
        db.rollback()

    def test_untagged_media_survives_everything(self, db, check):
        story = make_story(db)
        story_id = story.id
        chapter_id = make_chapter(db, story).id
        upload_id = make_media(db, url="/media/untagged.png").id
        _illustrate(db, chapter_id, 0)

        _bulk_delete(db, Story, story_id)

        assert check.get(Media, upload_id) is not None
        assert check.query(Media).count() == 1
