"""
ORM foundation shared by every chronos table.

- Constraint naming convention, so names in the hand-written migrations
  (pk_content_items, fk_content_chunks_content_item_id_content_items, ...)
  match what the metadata generates.
- BaseModel: abstract base with id / created_at / updated_at.
- utcnow(): the single clock used by models, repositories and ranking.
"""

from datetime import datetime, timezone

from sqlalchemy import DateTime, MetaData, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

# Shared VARCHAR lengths
String50 = String(50)  # status values, source types
String100 = String(100)  # owner/viewer ids, languages
String255 = String(255)  # titles
String1000 = String(1000)  # video URLs, object-store keys


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=NAMING_CONVENTION)


class BaseModel(Base):
    """
    Abstract base for chronos tables.

    created_at is set once on insert; updated_at is refreshed on every
    update, including Core UPDATE statements.
    """

    __abstract__ = True

    id: Mapped[int] = mapped_column(
        primary_key=True,
        autoincrement=True,
        comment="Auto-incrementing primary key",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
        comment="Timestamp when record was created (UTC)",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
        comment="Timestamp when record was last updated (UTC)",
    )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id}>"
