"""create enhancement schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00

"""
from alembic import op
import sqlalchemy as sa

from app.models.triggers import (
    MEDIA_CLEANUP_TRIGGER,
    POSTGRES_CREATE_MEDIA_CLEANUP,
    POSTGRES_CREATE_MEDIA_CLEANUP_FUNCTION,
    POSTGRES_DROP_MEDIA_CLEANUP_FUNCTION,
    SQLITE_CREATE_MEDIA_CLEANUP,
)

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade():
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == 'sqlite'

    op.create_table(
        'stories',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(100), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('style_preferences', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_stories_id', 'stories', ['id'])
    op.create_index('ix_stories_owner_id', 'stories', ['owner_id'])

    op.create_table(
        'chapters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('story_id', sa.Integer(), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(200), nullable=True),
        sa.Column('text_content', sa.Text(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint('order_index >= 0', name='ck_chapters_order_index'),
        sa.ForeignKeyConstraint(['story_id'], ['stories.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_chapters_id', 'chapters', ['id'])
    op.create_index('idx_chapters_story_id_order', 'chapters', ['story_id', 'order_index'])

    op.create_table(
        'media',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('uploader_id', sa.String(100), nullable=True),
        sa.Column('url', sa.String(1000), nullable=False),
        sa.Column('storage_path', sa.String(500), nullable=True),
        sa.Column('media_type', sa.String(20), nullable=False),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('width', sa.Integer(), nullable=True),
        sa.Column('height', sa.Integer(), nullable=True),
        sa.Column('duration', sa.Float(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('owner_type', sa.String(30), nullable=True),
        sa.Column('owner_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint("media_type IN ('image', 'audio', 'video')", name='ck_media_media_type'),
        sa.CheckConstraint(
            "owner_type IS NULL OR owner_type IN ('enhancement', 'story_cover', 'avatar', 'user_upload')",
            name='ck_media_owner_type'
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_media_id', 'media', ['id'])
    op.create_index('ix_media_uploader_id', 'media', ['uploader_id'])
    op.create_index('idx_media_owner', 'media', ['owner_type', 'owner_id'])

    # anchors <-> enhancements reference each other. SQLite cannot add a
    # foreign key after the fact, so there it is declared inline.
    anchor_constraints = [
        sa.CheckConstraint('after_paragraph_index >= 0', name='ck_anchors_after_paragraph_index'),
        sa.ForeignKeyConstraint(['chapter_id'], ['chapters.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    ]
    if is_sqlite:
        anchor_constraints.append(sa.ForeignKeyConstraint(
            ['active_enhancement_id'], ['enhancements.id'],
            ondelete='SET NULL', name='fk_anchors_active_enhancement'
        ))
    op.create_table(
        'anchors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('chapter_id', sa.Integer(), nullable=False),
        sa.Column('after_paragraph_index', sa.Integer(), nullable=False),
        sa.Column('active_enhancement_id', sa.Integer(), nullable=True),
        *_timestamps(),
        *anchor_constraints,
        sqlite_autoincrement=True
    )
    op.create_index('ix_anchors_id', 'anchors', ['id'])
    op.create_index('ix_anchors_active_enhancement_id', 'anchors', ['active_enhancement_id'])
    op.create_index('idx_anchors_chapter_id_paragraph', 'anchors', ['chapter_id', 'after_paragraph_index'])

    op.create_table(
        'enhancements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('anchor_id', sa.Integer(), nullable=False),
        sa.Column('chapter_id', sa.Integer(), nullable=False),
        sa.Column('enhancement_type', sa.String(10), nullable=False),
        sa.Column('status', sa.String(10), nullable=False),
        sa.Column('media_id', sa.Integer(), nullable=True),
        sa.Column('version_number', sa.Integer(), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('seed', sa.Integer(), nullable=True),
        sa.Column('config', sa.JSON(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "enhancement_type IN ('ai_image', 'user_image', 'audio', 'animation')",
            name='enhancement_type'
        ),
        sa.CheckConstraint("status IN ('generating', 'completed', 'failed')", name='enhancement_status'),
        sa.CheckConstraint(
            "status != 'completed' OR enhancement_type = 'animation' OR media_id IS NOT NULL",
            name='ck_enhancements_completed_has_media'
        ),
        sa.CheckConstraint('version_number >= 1', name='ck_enhancements_version_number'),
        sa.ForeignKeyConstraint(['anchor_id'], ['anchors.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['chapter_id'], ['chapters.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['media_id'], ['media.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_enhancements_id', 'enhancements', ['id'])
    op.create_index('ix_enhancements_chapter_id', 'enhancements', ['chapter_id'])
    op.create_index('ix_enhancements_status', 'enhancements', ['status'])
    op.create_index('idx_enhancements_anchor_id_version', 'enhancements', ['anchor_id', 'version_number'])

    if not is_sqlite:
        op.create_foreign_key(
            'fk_anchors_active_enhancement', 'anchors', 'enhancements',
            ['active_enhancement_id'], ['id'], ondelete='SET NULL'
        )

    op.create_table(
        'characters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('story_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('short_desc', sa.Text(), nullable=True),
        sa.Column('aliases', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(9), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('merged_into_id', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status IN ('candidate', 'confirmed', 'ignored', 'merged')", name='character_status'),
        sa.CheckConstraint('confidence >= 0 AND confidence <= 1', name='ck_characters_confidence'),
        sa.ForeignKeyConstraint(['story_id'], ['stories.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['merged_into_id'], ['characters.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_characters_id', 'characters', ['id'])
    op.create_index('idx_characters_story_id_name', 'characters', ['story_id', 'name'])

    op.create_table(
        'enhancement_characters',
        sa.Column('enhancement_id', sa.Integer(), nullable=False),
        sa.Column('character_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['enhancement_id'], ['enhancements.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['character_id'], ['characters.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('enhancement_id', 'character_id')
    )
    op.create_index('ix_enhancement_characters_character_id', 'enhancement_characters', ['character_id'])

    # Owned media goes with its enhancement, including cascaded deletes
    if is_sqlite:
        op.execute(SQLITE_CREATE_MEDIA_CLEANUP)
    elif bind.dialect.name == 'postgresql':
        op.execute(POSTGRES_CREATE_MEDIA_CLEANUP_FUNCTION)
        op.execute(POSTGRES_CREATE_MEDIA_CLEANUP)


def downgrade():
    bind = op.get_bind()
    if bind.dialect.name == 'postgresql':
        op.execute(f"DROP TRIGGER IF EXISTS {MEDIA_CLEANUP_TRIGGER} ON enhancements")
        op.execute(POSTGRES_DROP_MEDIA_CLEANUP_FUNCTION)
    else:
        op.execute(f"DROP TRIGGER IF EXISTS {MEDIA_CLEANUP_TRIGGER}")

    op.drop_table('enhancement_characters')
    op.drop_table('characters')
    if bind.dialect.name != 'sqlite':
        op.drop_constraint('fk_anchors_active_enhancement', 'anchors', type_='foreignkey')
    op.drop_table('enhancements')
    op.drop_table('anchors')
    op.drop_table('media')
    op.drop_table('chapters')
    op.drop_table('stories')
