"""Shared fixtures: a throwaway SQLite database built from the production schema."""

import os
import sys

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.models import (  # noqa: E402
    Base,
    Story,
    Chapter,
    Media,
    Character,
    CharacterStatus,
)
from app.services import run_tracker  # noqa: E402
from app.services.media_storage import MediaStorage  # noqa: E402


CHAPTER_TEXT = (
    "Mira stepped off the ferry into a harbour town wrapped in fog. Lanterns swung from the "
    "masts behind her and gulls screamed over the fish market.\n"
    "\n"
    "She walked uphill past shuttered shops until the cobbles gave way to mud. Mira kept one "
    "hand on the satchel that held her father's letters.\n"
    "\n"
    "At the top of the hill stood the lighthouse, its great lamp dark for the first time in "
    "forty years. Ivy had swallowed the lower windows and the iron door hung open, creaking "
    "in the wind that came off the grey sea. Mira pushed it wider.\n"
    "\n"
    "Inside, Mira found the keeper's table still set for two.\n"
    "\n"
    "She climbed the spiral stair by candlelight, counting the steps the way her father had "
    "taught her, and at the top Mira saw the shattered lens scattered like frost across the "
    "floor while a stranger in a red coat watched her from the gallery rail.\n"
)


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so every session gets its own connection"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def storage(tmp_path):
    return MediaStorage(root=str(tmp_path / "storage"), base_url="/media")


@pytest.fixture(autouse=True)
def _clear_run_tracker():
    run_tracker.clear_runs()
    yield
    run_tracker.clear_runs()


def make_story(db, title="The Lighthouse", style_preferences=None, owner_id="user-1"):
    story = Story(owner_id=owner_id, title=title, style_preferences=style_preferences or {})
    db.add(story)
    db.commit()
    db.refresh(story)
    return story


def make_chapter(db, story, text=CHAPTER_TEXT, order_index=0, title="Chapter One"):
    chapter = Chapter(story_id=story.id, order_index=order_index, title=title, text_content=text)
    db.add(chapter)
    db.commit()
    db.refresh(chapter)
    return chapter


def make_media(db, url="/media/upload.png", owner_type=None, owner_id=None):
    media = Media(url=url, media_type="image", mime_type="image/png", owner_type=owner_type, owner_id=owner_id)
    db.add(media)
    db.commit()
    db.refresh(media)
    return media


def make_character(db, story, name, short_desc="", aliases=None, status=CharacterStatus.CONFIRMED):
    character = Character(
        story_id=story.id,
        name=name,
        short_desc=short_desc,
        aliases=aliases or [],
        status=status,
        confidence=1.0,
    )
    db.add(character)
    db.commit()
    db.refresh(character)
    return character
