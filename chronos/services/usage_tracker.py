"""
Usage / cost accumulator.

Adds transcription minutes, embedding tokens and their USD cost to the
owner's row for the current UTC day. AI credits are derived as
ceil(cost_usd * 1000), i.e. one credit per tenth of a cent.

Recording is best-effort: a database error is logged and swallowed so that
cost accounting can never fail a pipeline stage.
"""

import math
from datetime import date
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chronos.core.logging import get_logger
from chronos.db.base import utcnow
from chronos.models.usage import UsageMetric

logger = get_logger(__name__)


def credits_for(cost_usd: float) -> int:
    """AI credits charged for a USD cost."""
    if cost_usd <= 0:
        return 0
    return math.ceil(round(cost_usd * 1000, 9))


class UsageTracker:
    """Daily per-owner usage totals in usage_metrics."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        owner_id: str,
        transcription_minutes: float = 0.0,
        transcription_cost_usd: float = 0.0,
        embedding_tokens: int = 0,
        embedding_cost_usd: float = 0.0,
        usage_date: Optional[date] = None,
    ) -> bool:
        """
        Increment today's totals for an owner.

        Returns:
            True if recorded, False if nothing to record or the write failed
        """
        if not any((transcription_minutes, transcription_cost_usd, embedding_tokens, embedding_cost_usd)):
            return False

        usage_date = usage_date or utcnow().date()
        credits = credits_for(transcription_cost_usd + embedding_cost_usd)
        now = utcnow()

        stmt = insert(UsageMetric).values(
            owner_id=owner_id,
            usage_date=usage_date,
            transcription_minutes=transcription_minutes,
            transcription_cost_usd=transcription_cost_usd,
            embedding_tokens=embedding_tokens,
            embedding_cost_usd=embedding_cost_usd,
            ai_credits_used=credits,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            constraint="uq_usage_metrics_owner_date",
            set_={
                "transcription_minutes": UsageMetric.transcription_minutes + stmt.excluded.transcription_minutes,
                "transcription_cost_usd": UsageMetric.transcription_cost_usd + stmt.excluded.transcription_cost_usd,
                "embedding_tokens": UsageMetric.embedding_tokens + stmt.excluded.embedding_tokens,
                "embedding_cost_usd": UsageMetric.embedding_cost_usd + stmt.excluded.embedding_cost_usd,
                "ai_credits_used": UsageMetric.ai_credits_used + stmt.excluded.ai_credits_used,
                "updated_at": now,
            },
        )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("usage_record_failed", owner_id=owner_id, error=str(e))
            return False

        logger.debug(
            "usage_recorded",
            owner_id=owner_id,
            transcription_minutes=round(transcription_minutes, 2),
            embedding_tokens=embedding_tokens,
            credits=credits,
        )
        return True

    async def get_daily_usage(self, owner_id: str, usage_date: Optional[date] = None) -> Dict[str, float]:
        usage_date = usage_date or utcnow().date()
        async with self.session_factory() as session:
            result = await session.execute(
                select(UsageMetric).where(
                    UsageMetric.owner_id == owner_id,
                    UsageMetric.usage_date == usage_date,
                )
            )
            row = result.scalar_one_or_none()

        if row is None:
            return {
                "transcription_minutes": 0.0,
                "transcription_cost_usd": 0.0,
                "embedding_tokens": 0,
                "embedding_cost_usd": 0.0,
                "ai_credits_used": 0,
            }
        return {
            "transcription_minutes": row.transcription_minutes,
            "transcription_cost_usd": row.transcription_cost_usd,
            "embedding_tokens": row.embedding_tokens,
            "embedding_cost_usd": row.embedding_cost_usd,
            "ai_credits_used": row.ai_credits_used,
        }
