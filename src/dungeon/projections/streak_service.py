"""Streak projection from the XP ledger.

A day counts toward the streak when it holds at least one qualifying
positive-XP event, keyed by the calendar date in the user's timezone. The
streak stays alive through the current day: if today has no activity yet, the
run ending yesterday is still current.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.dates import local_day, today as local_today
from dungeon.db.models import XpEvent, XpEventType
from dungeon.ledger._append import get_user
from dungeon.ledger.xp_service import record_event
from dungeon.policy.settings import safe_parse_settings

logger = logging.getLogger(__name__)

QUALIFYING_EVENT_TYPES = (
    XpEventType.BLOCK_COMPLETE,
    XpEventType.URGE_RESIST,
    XpEventType.TASK_COMPLETE,
)


def compute_streak(active_days: Iterable[date], today: date) -> int:
    """Length of the run of consecutive active days ending today or yesterday."""
    days = set(active_days)
    if today in days:
        cursor = today
    elif today - timedelta(days=1) in days:
        cursor = today - timedelta(days=1)
    else:
        return 0

    streak = 0
    while cursor in days:
        streak += 1
        cursor -= timedelta(days=1)
    return streak


def run_is_broken(active_days: Iterable[date], run_end: date, today: date) -> bool:
    """True when the run ending on ``run_end`` is not part of the current streak."""
    days = set(active_days)
    current = compute_streak(days, today)
    if current == 0:
        return True
    current_end = today if today in days else today - timedelta(days=1)
    return run_end < current_end - timedelta(days=current - 1)


def last_active_day(active_days: Iterable[date], today: date) -> date | None:
    """Most recent active day on or before ``today``."""
    past = [d for d in active_days if d <= today]
    return max(past) if past else None


async def active_days(db: AsyncSession, user_id: str, tz: str | None) -> set[date]:
    """Local calendar days holding at least one qualifying positive event."""
    result = await db.execute(
        select(XpEvent.created_at).where(
            XpEvent.user_id == user_id,
            XpEvent.delta > 0,
            XpEvent.type.in_([t.value for t in QUALIFYING_EVENT_TYPES]),
        )
    )
    return {local_day(created_at, tz) for created_at in result.scalars()}


async def refresh_streak(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
    tz: str | None = None,
) -> tuple[int, int]:
    """Recompute ``current_streak`` and raise ``longest_streak`` if exceeded.

    ``tz`` defaults to the user's stored timezone. When a running streak is
    found broken, the configured break penalty is recorded once per broken
    run. Returns ``(current_streak, longest_streak)``. Callers commit.
    """
    now = now or datetime.now(timezone.utc)
    user = await get_user(db, user_id, for_update=True)
    zone = tz or user.timezone
    day = local_today(zone, now)
    days = await active_days(db, user_id, zone)

    previous = user.current_streak
    broken_run_end = user.last_streak_date
    current = compute_streak(days, day)

    user.current_streak = current
    user.longest_streak = max(user.longest_streak, current)
    user.last_streak_date = last_active_day(days, day)
    user.updated_at = now
    await db.flush()

    if previous > 0 and broken_run_end is not None and run_is_broken(days, broken_run_end, day):
        logger.info("Streak broken user=%s after %d day(s)", user_id, previous)
        settings = safe_parse_settings(user.settings)
        penalty = settings.streaks.streak_break_xp_penalty
        if settings.features.streak_tracking and penalty > 0:
            await record_event(
                db,
                user_id,
                XpEventType.STREAK_BREAK_PENALTY,
                -penalty,
                description=f"Streak of {previous} day(s) broken",
                dedupe_key=f"streak_break:{user_id}:{broken_run_end.isoformat()}",
                details={"streak": previous, "last_active": broken_run_end.isoformat()},
                now=now,
            )

    return user.current_streak, user.longest_streak
