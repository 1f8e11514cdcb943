"""XP ledger: exactly-once recording and aggregate consistency."""

from __future__ import annotations

from datetime import date, timedelta

import pytest
from sqlalchemy import func, select

from dungeon.db.models import XpEvent
from dungeon.exceptions import NotFoundError, StoreConflictError
from dungeon.ledger import _append, xp_service
from dungeon.ledger.xp_service import (
    aggregate_matches_ledger,
    ensure_user,
    get_daily_xp,
    ledger_total,
    record_event,
)
from tests.conftest import NOW, TEST_TIMEZONE, TEST_USER_ID


async def _event_count(db, **filters) -> int:
    stmt = select(func.count()).select_from(XpEvent)
    for column, value in filters.items():
        stmt = stmt.where(getattr(XpEvent, column) == value)
    return (await db.execute(stmt)).scalar_one()


class TestRecordEvent:
    @pytest.mark.asyncio
    async def test_first_write_updates_aggregate(self, db_session, user):
        result = await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:1", now=NOW)
        await db_session.commit()

        assert result.deduped is False
        assert result.new_total == 50
        assert result.new_level == 3
        assert result.level_up is True
        assert result.event.delta == 50
        assert result.event.dedupe_key == "block:1"

        await db_session.refresh(user)
        assert user.total_xp == 50
        assert user.current_level == 3

    @pytest.mark.asyncio
    async def test_duplicate_dedupe_key_is_replayed(self, db_session, user):
        first = await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:1", now=NOW)
        await db_session.commit()
        second = await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:1", now=NOW)
        await db_session.commit()

        assert second.deduped is True
        assert second.event.id == first.event.id
        assert second.new_total == 50
        assert second.level_up is False
        assert await _event_count(db_session, dedupe_key="block:1") == 1

    @pytest.mark.asyncio
    async def test_events_without_key_always_append(self, db_session, user):
        await record_event(db_session, user.id, "urge_resist", 15, now=NOW)
        await record_event(db_session, user.id, "urge_resist", 15, now=NOW)
        await db_session.commit()
        assert await _event_count(db_session, user_id=user.id) == 2
        assert await ledger_total(db_session, user.id) == 30

    @pytest.mark.asyncio
    async def test_unknown_user(self, db_session):
        with pytest.raises(NotFoundError):
            await record_event(db_session, "nobody", "block_complete", 10, dedupe_key="x", now=NOW)
        await db_session.rollback()
        assert await _event_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_unknown_type(self, db_session, user):
        with pytest.raises(ValueError):
            await record_event(db_session, user.id, "bribe", 10, now=NOW)

    @pytest.mark.asyncio
    async def test_fractional_delta_rejected(self, db_session, user):
        with pytest.raises(TypeError):
            await record_event(db_session, user.id, "block_complete", 10.5, now=NOW)  # type: ignore[arg-type]

    @pytest.mark.asyncio
    async def test_key_owned_by_another_user(self, db_session, user):
        other = await ensure_user(db_session, "user-test-2")
        await record_event(db_session, user.id, "task_complete", 25, dedupe_key="task:shared", now=NOW)
        await db_session.commit()

        result = await record_event(db_session, other.id, "task_complete", 25, dedupe_key="task:shared", now=NOW)
        await db_session.commit()

        assert result.deduped is True
        assert result.event.user_id == user.id
        await db_session.refresh(other)
        assert other.total_xp == 0


class TestAggregateConsistency:
    @pytest.mark.asyncio
    async def test_total_equals_sum_of_distinct_events(self, db_session, user):
        calls = [
            ("block_complete", 130, "block:a"),
            ("urge_resist", 15, "urge:a"),
            ("block_complete", 130, "block:a"),
            ("violation_penalty", -75, "overage:a"),
            ("urge_resist", 15, "urge:a"),
            ("task_complete", 25, None),
            ("lie_penalty", -60, "truth:a"),
            ("lie_penalty", -60, "truth:a"),
        ]
        for event_type, delta, key in calls:
            await record_event(db_session, user.id, event_type, delta, dedupe_key=key, now=NOW)
            await db_session.commit()

        await db_session.refresh(user)
        assert user.total_xp == 130 + 15 - 75 + 25 - 60
        assert user.total_xp == await ledger_total(db_session, user.id)
        assert await aggregate_matches_ledger(db_session, user.id) is True

    @pytest.mark.asyncio
    async def test_total_may_go_negative(self, db_session, user):
        result = await record_event(db_session, user.id, "lie_penalty", -60, dedupe_key="truth:neg", now=NOW)
        await db_session.commit()
        assert result.new_total == -60
        assert await aggregate_matches_ledger(db_session, user.id) is True

    @pytest.mark.asyncio
    async def test_level_never_decreases(self, db_session, user):
        up = await record_event(db_session, user.id, "block_complete", 100, now=NOW)
        await db_session.commit()
        assert up.new_level == 4

        down = await record_event(db_session, user.id, "lie_penalty", -90, now=NOW)
        await db_session.commit()
        assert down.new_total == 10
        assert down.new_level == 4
        assert down.level_up is False

    @pytest.mark.asyncio
    async def test_rollback_discards_event_and_total(self, db_session, user):
        await record_event(db_session, user.id, "block_complete", 40, dedupe_key="block:rb", now=NOW)
        await db_session.rollback()

        await db_session.refresh(user)
        assert user.total_xp == 0
        assert await _event_count(db_session, dedupe_key="block:rb") == 0


class TestDedupeRace:
    """A concurrent writer commits the same key between the pre-check and the insert."""

    @pytest.mark.asyncio
    async def test_loser_observes_winner(self, db_session, user, monkeypatch):
        winner = await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)
        await db_session.commit()

        async def _miss(db, model, key):
            return None

        monkeypatch.setattr(xp_service, "find_by_dedupe_key", _miss)

        loser = await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)
        await db_session.commit()

        assert loser.deduped is True
        assert loser.event.id == winner.event.id
        assert loser.new_total == 50
        assert await _event_count(db_session, dedupe_key="block:race") == 1
        assert await aggregate_matches_ledger(db_session, user.id) is True

    @pytest.mark.asyncio
    async def test_session_usable_after_recovered_race(self, db_session, user, monkeypatch):
        await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)
        await db_session.commit()

        async def _miss(db, model, key):
            return None

        monkeypatch.setattr(xp_service, "find_by_dedupe_key", _miss)
        await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)
        after = await record_event(db_session, user.id, "urge_resist", 15, dedupe_key="urge:after", now=NOW)
        await db_session.commit()

        assert after.new_total == 65

    @pytest.mark.asyncio
    async def test_unresolvable_conflict(self, db_session, user, monkeypatch):
        await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)
        await db_session.commit()

        async def _miss(db, model, key):
            return None

        monkeypatch.setattr(xp_service, "find_by_dedupe_key", _miss)
        monkeypatch.setattr(_append, "find_by_dedupe_key", _miss)

        with pytest.raises(StoreConflictError):
            await record_event(db_session, user.id, "block_complete", 50, dedupe_key="block:race", now=NOW)


class TestDailyXp:
    @pytest.mark.asyncio
    async def test_breakdown_for_local_day(self, db_session, user):
        await record_event(db_session, user.id, "block_complete", 130, now=NOW)
        await record_event(db_session, user.id, "urge_resist", 15, now=NOW)
        await record_event(db_session, user.id, "violation_penalty", -75, now=NOW)
        await record_event(db_session, user.id, "urge_resist", 15, now=NOW - timedelta(days=1))
        await db_session.commit()

        summary = await get_daily_xp(db_session, TEST_USER_ID, date(2026, 3, 10), TEST_TIMEZONE)
        assert summary.total == 70
        assert summary.events == 3
        assert summary.breakdown == {"block_complete": 130, "urge_resist": 15, "violation_penalty": -75}

    @pytest.mark.asyncio
    async def test_empty_day(self, db_session, user):
        summary = await get_daily_xp(db_session, user.id, date(2026, 1, 1), TEST_TIMEZONE)
        assert summary.total == 0
        assert summary.breakdown == {}
