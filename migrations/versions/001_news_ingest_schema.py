"""News ingestion schema

Revision ID: 001_news_ingest
Revises:
Create Date: 2026-10-19

Creates sources, media, categories, tags, news (+ junctions) and import_logs.
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_news_ingest'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Publishers, one row per URL origin
    op.create_table(
        'sources',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('base_url', sa.String(512), unique=True, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )

    # Cover images (stored or external)
    op.create_table(
        'media',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('original_name', sa.String(512), nullable=True),
        sa.Column('external_url', sa.Text, nullable=True),
        sa.Column('storage_path', sa.String(1024), nullable=True),
        sa.Column('mime_type', sa.String(64), nullable=True),
        sa.Column('width', sa.Integer, nullable=True),
        sa.Column('height', sa.Integer, nullable=True),
        sa.Column('filesize', sa.BigInteger, nullable=True),
        sa.Column('content_hash', sa.String(64), nullable=True),
        sa.Column('alt_text', sa.String(1024), nullable=True),
        sa.Column('caption', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_media_content_hash', 'media', ['content_hash'])

    op.create_table(
        'categories',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('slug', sa.String(128), unique=True, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'tags',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('name', sa.String(128), nullable=False),
        sa.Column('slug', sa.String(128), unique=True, nullable=False),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    # Imported articles
    op.create_table(
        'news',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('source_guid', sa.String(512), unique=True, nullable=False),
        sa.Column('source_id', sa.String(255), nullable=True),
        sa.Column('source_fk', sa.Integer, sa.ForeignKey('sources.id'), nullable=True),
        sa.Column('slug', sa.String(512), unique=True, nullable=False),
        sa.Column('title', sa.Text, nullable=False),
        sa.Column('seo_title', sa.Text, nullable=True),
        sa.Column('seo_description', sa.Text, nullable=True),
        sa.Column('excerpt', sa.String(200), nullable=True),
        sa.Column('content_md', sa.Text, nullable=False, server_default=''),
        sa.Column('canonical_url', sa.Text, nullable=True),
        sa.Column('main_media_id', sa.Integer, sa.ForeignKey('media.id'), nullable=True),
        sa.Column('status', sa.String(16), nullable=False, server_default='published'),
        sa.Column('word_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('reading_time_min', sa.Integer, nullable=False, server_default='1'),
        sa.Column('meta', postgresql.JSONB, nullable=True),
        sa.Column('published_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
        sa.Column('updated_at', sa.DateTime, nullable=True),
    )
    op.create_index('ix_news_source_id', 'news', ['source_id'])
    op.create_index('ix_news_published_at', 'news', ['published_at'])

    op.create_table(
        'news_categories',
        sa.Column('news_id', sa.Integer, sa.ForeignKey('news.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('category_id', sa.Integer, sa.ForeignKey('categories.id'), primary_key=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'news_tags',
        sa.Column('news_id', sa.Integer, sa.ForeignKey('news.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('tag_id', sa.Integer, sa.ForeignKey('tags.id'), primary_key=True),
        sa.Column('created_at', sa.DateTime, nullable=False),
    )

    op.create_table(
        'news_media',
        sa.Column('news_id', sa.Integer, sa.ForeignKey('news.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('media_id', sa.Integer, sa.ForeignKey('media.id'), primary_key=True),
        sa.Column('is_main', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('position', sa.Integer, nullable=False, server_default='1'),
    )

    # Audit trail, one row per run that imported something
    op.create_table(
        'import_logs',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('source_id', sa.Integer, sa.ForeignKey('sources.id'), nullable=True),
        sa.Column('imported_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('imported_at', sa.DateTime, nullable=False),
        sa.Column('meta', postgresql.JSONB, nullable=True),
    )
    op.create_index('ix_import_logs_imported_at', 'import_logs', ['imported_at'])


def downgrade() -> None:
    op.drop_index('ix_import_logs_imported_at', table_name='import_logs')
    op.drop_table('import_logs')
    op.drop_table('news_media')
    op.drop_table('news_tags')
    op.drop_table('news_categories')
    op.drop_index('ix_news_published_at', table_name='news')
    op.drop_index('ix_news_source_id', table_name='news')
    op.drop_table('news')
    op.drop_table('tags')
    op.drop_table('categories')
    op.drop_index('ix_media_content_hash', table_name='media')
    op.drop_table('media')
    op.drop_table('sources')
