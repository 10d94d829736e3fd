"""initial_pipeline_schema

Revision ID: a1c3e5f70921
Revises:
Create Date: 2026-10-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = 'a1c3e5f70921'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create the pipeline schema.

    Tables:
    1. content_items - Pipeline state per ingested item
    2. content_chunks - Transcript chunks with embeddings
    3. content_views - Per-viewer consumption (ranking signals)
    4. usage_metrics - Daily cost/token totals per owner

    The embedding column is vector(768), matching the default
    EMBEDDING_DIMENSION. Changing the embedding model's dimension needs a
    new migration.
    """

    # ================================
    # Enable pgvector extension if not already enabled
    # ================================
    op.execute('CREATE EXTENSION IF NOT EXISTS vector')

    # ================================
    # Create content_items table
    # ================================
    op.create_table(
        'content_items',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
        sa.Column('owner_id', sa.String(length=100), nullable=False, comment='Owner (creator) identifier'),
        sa.Column('title', sa.String(length=255), nullable=False, comment='Display title'),
        sa.Column('source_type', sa.String(length=20), nullable=False, comment='Transcript source type'),
        sa.Column('source_ref', sa.String(length=1000), nullable=False, server_default='', comment='Video id/URL or object-store key'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending', comment='Pipeline status'),
        sa.Column('generation', sa.Integer(), nullable=False, server_default='0', comment='Incremented on every reprocess'),
        sa.Column('transcript', sa.Text(), nullable=True, comment='Full transcript text (NULL until extracted)'),
        sa.Column('transcript_segments', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Time-aligned segments: [{text, start, end}, ...]'),
        sa.Column('transcript_language', sa.String(length=50), nullable=True),
        sa.Column('transcription_method', sa.String(length=50), nullable=True, comment='youtube_captions, whisper or inline'),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True, comment='Human-readable reason if processing failed'),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('processing_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status_changed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()'), comment='Last status transition; used to find stuck items'),
        sa.Column('stage_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Per-stage cost, token counts, timings'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_items')),
    )
    op.create_index('ix_content_items_owner_id', 'content_items', ['owner_id'])
    op.create_index('ix_content_items_status', 'content_items', ['status'])
    op.create_index('ix_content_items_status_changed', 'content_items', ['status', 'status_changed_at'])

    # ================================
    # Create content_chunks table
    # ================================
    op.create_table(
        'content_chunks',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
        sa.Column('content_item_id', sa.Integer(), nullable=False, comment='Foreign key to content_items table'),
        sa.Column('chunk_index', sa.Integer(), nullable=False, comment='Order of this chunk within the content item (0-indexed)'),
        sa.Column('chunk_text', sa.Text(), nullable=False),
        sa.Column('start_time_seconds', sa.Float(), nullable=False, server_default='0'),
        sa.Column('end_time_seconds', sa.Float(), nullable=False, server_default='0'),
        sa.Column('word_count', sa.Integer(), nullable=False),
        sa.Column('chunk_metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True, comment='Overlap info and word span'),
        sa.ForeignKeyConstraint(['content_item_id'], ['content_items.id'], name=op.f('fk_content_chunks_content_item_id_content_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_chunks')),
        sa.UniqueConstraint('content_item_id', 'chunk_index', name='uq_content_item_chunk_index'),
    )

    # Add vector column for embeddings
    op.execute('ALTER TABLE content_chunks ADD COLUMN embedding vector(768)')

    op.create_index('ix_content_chunks_content_item_id', 'content_chunks', ['content_item_id'])

    # HNSW index for cosine similarity search
    # m=16 (max connections per layer), ef_construction=64 (quality during build)
    op.execute("""
        CREATE INDEX ix_content_chunks_embedding_hnsw
        ON content_chunks
        USING hnsw (embedding vector_cosine_ops)
        WITH (m = 16, ef_construction = 64)
    """)

    # ================================
    # Create content_views table
    # ================================
    op.create_table(
        'content_views',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
        sa.Column('viewer_id', sa.String(length=100), nullable=False),
        sa.Column('content_item_id', sa.Integer(), nullable=False),
        sa.Column('view_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('interaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_viewed_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['content_item_id'], ['content_items.id'], name=op.f('fk_content_views_content_item_id_content_items'), ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_content_views')),
        sa.UniqueConstraint('viewer_id', 'content_item_id', name='uq_content_view_viewer_item'),
    )
    op.create_index('ix_content_views_viewer_id', 'content_views', ['viewer_id'])
    op.create_index('ix_content_views_content_item_id', 'content_views', ['content_item_id'])

    # ================================
    # Create usage_metrics table
    # ================================
    op.create_table(
        'usage_metrics',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='Auto-incrementing primary key'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was created (UTC)'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='Timestamp when record was last updated (UTC)'),
        sa.Column('owner_id', sa.String(length=100), nullable=False),
        sa.Column('usage_date', sa.Date(), nullable=False),
        sa.Column('transcription_minutes', sa.Float(), nullable=False, server_default='0'),
        sa.Column('transcription_cost_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('embedding_tokens', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('embedding_cost_usd', sa.Float(), nullable=False, server_default='0'),
        sa.Column('ai_credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_usage_metrics')),
        sa.UniqueConstraint('owner_id', 'usage_date', name='uq_usage_metrics_owner_date'),
    )
    op.create_index('ix_usage_metrics_owner_id', 'usage_metrics', ['owner_id'])


def downgrade() -> None:
    """Drop the pipeline schema."""

    op.drop_table('usage_metrics')
    op.drop_table('content_views')
    op.execute('DROP INDEX IF EXISTS ix_content_chunks_embedding_hnsw')
    op.drop_table('content_chunks')
    op.drop_table('content_items')

    # Note: We don't drop the vector extension in downgrade
    # because other tables might be using it
