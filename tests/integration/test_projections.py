"""HP and streak projections against the database."""

from __future__ import annotations

from datetime import date, time, timedelta

import pytest
from sqlalchemy import func, select

from dungeon.activity.service import complete_task
from dungeon.db.models import HpAdjustment, XpEvent
from dungeon.ledger.xp_service import record_event
from dungeon.projections.hp_service import HpSource, adjust_hp, heal_with_nsdr, set_hp_from_sleep
from dungeon.projections.streak_service import refresh_streak
from tests.conftest import NOW

DAY = date(2026, 3, 10)


class TestAdjustHp:
    @pytest.mark.asyncio
    async def test_once_per_day_and_source(self, db_session, user):
        first = await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -10, now=NOW)
        second = await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -10, now=NOW)
        await db_session.commit()

        assert first.hp == 90
        assert first.deduped is False
        assert second.deduped is True
        assert second.hp == 90
        count = await db_session.execute(select(func.count()).select_from(HpAdjustment))
        assert count.scalar_one() == 1

    @pytest.mark.asyncio
    async def test_sources_are_independent(self, db_session, user):
        await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -10, now=NOW)
        result = await adjust_hp(db_session, user.id, DAY, HpSource.TRUTH_VIOLATION, -10, now=NOW)
        await db_session.commit()
        assert result.hp == 80

    @pytest.mark.asyncio
    async def test_next_day_applies_again(self, db_session, user):
        await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -10, now=NOW)
        result = await adjust_hp(db_session, user.id, DAY + timedelta(days=1), HpSource.OVERAGE, -10, now=NOW)
        assert result.hp == 80

    @pytest.mark.asyncio
    async def test_clamped_to_zero(self, db_session, user):
        result = await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -250, now=NOW)
        assert result.hp == 0
        assert result.requested_delta == -250
        assert result.applied_delta == -100

    @pytest.mark.asyncio
    async def test_unknown_source(self, db_session, user):
        with pytest.raises(ValueError):
            await adjust_hp(db_session, user.id, DAY, "prayer", 5, now=NOW)

    @pytest.mark.asyncio
    async def test_hp_does_not_touch_xp(self, db_session, user):
        await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -10, now=NOW)
        await db_session.commit()
        await db_session.refresh(user)
        assert user.total_xp == 0


class TestHealing:
    @pytest.mark.asyncio
    async def test_nsdr_capped_at_100(self, db_session, user):
        result = await heal_with_nsdr(db_session, user.id, DAY, now=NOW)
        assert result.hp == 100
        assert result.applied_delta == 0

    @pytest.mark.asyncio
    async def test_nsdr_restores(self, db_session, user):
        await adjust_hp(db_session, user.id, DAY, HpSource.OVERAGE, -30, now=NOW)
        result = await heal_with_nsdr(db_session, user.id, DAY, now=NOW)
        assert result.hp == 80

    @pytest.mark.asyncio
    async def test_sleep_sets_morning_hp(self, db_session, user):
        result, calc = await set_hp_from_sleep(
            db_session, user.id, DAY, wake_time=time(8, 0), protocol_items_completed=0, rested_rating=1, now=NOW
        )
        assert calc.total_hp == 64
        assert result.hp == 64
        assert result.applied_delta == -36

    @pytest.mark.asyncio
    async def test_sleep_once_per_day(self, db_session, user):
        await set_hp_from_sleep(
            db_session, user.id, DAY, wake_time=time(7, 0), protocol_items_completed=2, rested_rating=3, now=NOW
        )
        again, _ = await set_hp_from_sleep(
            db_session, user.id, DAY, wake_time=time(9, 0), protocol_items_completed=0, rested_rating=1, now=NOW
        )
        assert again.deduped is True
        assert again.hp == 92


class TestRefreshStreak:
    async def _active_on(self, db, user_id, days_ago: int) -> None:
        await record_event(db, user_id, "block_complete", 20, now=NOW - timedelta(days=days_ago))

    @pytest.mark.asyncio
    async def test_consecutive_days(self, db_session, user):
        for days_ago in (0, 1, 2):
            await self._active_on(db_session, user.id, days_ago)

        current, longest = await refresh_streak(db_session, user.id, NOW)
        await db_session.commit()
        assert (current, longest) == (3, 3)
        await db_session.refresh(user)
        assert user.last_streak_date == DAY

    @pytest.mark.asyncio
    async def test_penalties_do_not_count(self, db_session, user):
        await record_event(db_session, user.id, "violation_penalty", -50, now=NOW)
        current, _ = await refresh_streak(db_session, user.id, NOW)
        assert current == 0

    @pytest.mark.asyncio
    async def test_local_day_boundaries(self, db_session, user):
        """02:00 UTC on the 10th is still the 9th in Chicago."""
        late_evening = NOW.replace(hour=2)
        await record_event(db_session, user.id, "urge_resist", 15, now=late_evening)
        await record_event(db_session, user.id, "urge_resist", 15, now=NOW)

        current, _ = await refresh_streak(db_session, user.id, NOW)
        assert current == 2

    @pytest.mark.asyncio
    async def test_break_keeps_longest_and_charges_once(self, db_session, user):
        for days_ago in (0, 1, 2):
            await self._active_on(db_session, user.id, days_ago)
        await refresh_streak(db_session, user.id, NOW)
        await db_session.commit()

        later = NOW + timedelta(days=3)
        current, longest = await refresh_streak(db_session, user.id, later)
        await refresh_streak(db_session, user.id, later + timedelta(days=1))
        await db_session.commit()

        assert (current, longest) == (0, 3)
        penalties = await db_session.execute(
            select(XpEvent.delta).where(XpEvent.type == "streak_break_penalty")
        )
        assert penalties.scalars().all() == [-100]
        await db_session.refresh(user)
        assert user.total_xp == 60 - 100

    @pytest.mark.asyncio
    async def test_gap_then_activity_charges_break(self, db_session, user):
        user_id = user.id
        for days_ago in (0, 1, 2):
            await self._active_on(db_session, user_id, days_ago)
        await refresh_streak(db_session, user_id, NOW)
        await db_session.commit()

        result = await complete_task(db_session, user_id, "task-back", now=NOW + timedelta(days=3))

        assert result.xp_earned > 0
        penalties = await db_session.execute(
            select(XpEvent.delta).where(XpEvent.type == "streak_break_penalty")
        )
        assert penalties.scalars().all() == [-100]
        await db_session.refresh(user)
        assert (user.current_streak, user.longest_streak) == (1, 3)

        await refresh_streak(db_session, user_id, NOW + timedelta(days=4))
        await db_session.commit()
        penalties = await db_session.execute(
            select(XpEvent.delta).where(XpEvent.type == "streak_break_penalty")
        )
        assert penalties.scalars().all() == [-100]
