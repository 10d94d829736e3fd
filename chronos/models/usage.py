"""
Usage Metrics Model

One row per owner per UTC day. Rows are only ever incremented with
``INSERT ... ON CONFLICT DO UPDATE``, so concurrent stages for the same owner
never lose an update.
"""

from datetime import date

from sqlalchemy import Date, Float, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from chronos.db.base import BaseModel, String100


class UsageMetric(BaseModel):
    """Daily token and cost totals for an owner."""

    __tablename__ = "usage_metrics"

    owner_id: Mapped[str] = mapped_column(String100, nullable=False, index=True)

    usage_date: Mapped[date] = mapped_column(Date, nullable=False)

    transcription_minutes: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    transcription_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    embedding_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    embedding_cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    ai_credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("owner_id", "usage_date", name="uq_usage_metrics_owner_date"),
    )

    def __repr__(self) -> str:
        return f"UsageMetric(owner_id={self.owner_id}, date={self.usage_date})"
