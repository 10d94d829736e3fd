"""
Tests for the usage / cost accumulator.
"""

from datetime import date

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from chronos.services.usage_tracker import UsageTracker, credits_for


class RecordingSession:
    """Just enough AsyncSession for UsageTracker.record."""

    def __init__(self, statements):
        self.statements = statements

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def begin(self):
        return self

    async def execute(self, stmt):
        self.statements.append(stmt)


class TestCredits:
    """credits_for: one credit per tenth of a cent, rounded up."""

    @pytest.mark.parametrize("cost,expected", [
        (0.0, 0),
        (-1.0, 0),
        (0.0001, 1),
        (0.001, 1),
        (0.0011, 2),
        (0.012, 12),
        (1.0, 1000),
    ])
    def test_credits(self, cost, expected):
        assert credits_for(cost) == expected


@pytest.mark.asyncio
class TestUsageTracker:
    """Recording behaviour without a database."""

    async def test_nothing_to_record(self):
        statements = []
        tracker = UsageTracker(lambda: RecordingSession(statements))

        assert await tracker.record("creator-1") is False
        assert statements == []

    async def test_records_one_upsert(self):
        statements = []
        tracker = UsageTracker(lambda: RecordingSession(statements))

        recorded = await tracker.record(
            "creator-1",
            embedding_tokens=1200,
            embedding_cost_usd=0.0024,
            usage_date=date(2026, 10, 1),
        )

        assert recorded is True
        assert len(statements) == 1
        compiled = statements[0].compile(dialect=postgresql.dialect())
        assert "ON CONFLICT" in str(compiled).upper()
        assert compiled.params["ai_credits_used"] == 3
        assert compiled.params["usage_date"] == date(2026, 10, 1)

    async def test_database_failure_is_swallowed(self):
        def broken_factory():
            raise OperationalError("INSERT", {}, Exception("connection refused"))

        tracker = UsageTracker(broken_factory)

        assert await tracker.record("creator-1", transcription_minutes=3.0, transcription_cost_usd=0.018) is False
