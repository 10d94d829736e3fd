"""
Database Models

Import models from this module to ensure they're registered with SQLAlchemy:

    from chronos.models import ContentItem, ContentChunk

This keeps Alembic's metadata complete and relationship strings resolvable.
"""

from chronos.models.content import (
    ContentChunk,
    ContentItem,
    ContentSourceType,
    ContentStatus,
    ContentView,
)
from chronos.models.usage import UsageMetric

__all__ = [
    "ContentItem",
    "ContentChunk",
    "ContentView",
    "UsageMetric",
    # Enums
    "ContentStatus",
    "ContentSourceType",
]
