"""XP ledger: exactly-once event recording and the user aggregate.

``record_event`` inserts the event and adjusts ``users.total_xp`` in the
caller's transaction, so a commit makes both visible together and a rollback
discards both. Callers commit.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.dates import day_bounds_utc
from dungeon.db.models import User, XpEvent, XpEventType
from dungeon.ledger._append import find_by_dedupe_key, get_user, insert_once
from dungeon.ledger.schemas import DailyXpSummary, LedgerEventOut, LedgerResult
from dungeon.policy.level_thresholds import compute_level, next_level_after
from dungeon.policy.settings import UserSettings, safe_parse_settings

logger = logging.getLogger(__name__)


async def ensure_user(
    db: AsyncSession,
    user_id: str,
    *,
    timezone_name: str | None = None,
    settings: dict[str, Any] | None = None,
) -> User:
    """Get or create the aggregate row for an already-authenticated user."""
    user = await db.get(User, user_id)
    if user is None:
        now = datetime.now(timezone.utc)
        user = User(
            id=user_id,
            timezone=timezone_name,
            settings=settings,
            created_at=now,
            updated_at=now,
        )
        db.add(user)
        await db.flush()
    return user


async def get_user_settings(db: AsyncSession, user_id: str) -> UserSettings:
    """Settings snapshot for a user; an invalid stored blob yields defaults."""
    user = await get_user(db, user_id)
    return safe_parse_settings(user.settings)


async def record_event(
    db: AsyncSession,
    user_id: str,
    type: XpEventType | str,  # noqa: A002
    delta: int,
    *,
    description: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    dedupe_key: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> LedgerResult:
    """Append an XP event and apply its delta to the user aggregate.

    With a ``dedupe_key`` that already exists, nothing is written and the
    earlier event is returned with the aggregate's current totals
    (``deduped=True``). A concurrent insert of the same key resolves the same
    way instead of raising.
    """
    if isinstance(delta, bool) or not isinstance(delta, int):
        msg = f"delta must be an int, got {delta.__class__.__name__}"
        raise TypeError(msg)
    event_type = XpEventType(type)

    if dedupe_key is not None:
        existing = await find_by_dedupe_key(db, XpEvent, dedupe_key)
        if existing is not None:
            logger.debug("XP dedupe hit key=%s", dedupe_key)
            return await _replay(db, existing, requested_user_id=user_id)

    user = await get_user(db, user_id, for_update=True)
    now = now or datetime.now(timezone.utc)

    event, created = await insert_once(
        db,
        XpEvent,
        {
            "user_id": user_id,
            "type": event_type.value,
            "delta": delta,
            "related_entity_type": related_entity_type,
            "related_entity_id": related_entity_id,
            "description": description,
            "dedupe_key": dedupe_key,
            "details": details,
            "created_at": now,
        },
    )
    if not created:
        return await _replay(db, event, requested_user_id=user_id)

    old_level = user.current_level
    user.total_xp += delta
    user.current_level = next_level_after(old_level, user.total_xp)
    user.updated_at = now
    await db.flush()

    level_up = user.current_level > old_level
    if level_up:
        logger.info(
            "Level up user=%s %d -> %d (%s)",
            user_id, old_level, user.current_level, compute_level(user.total_xp)["title"],
        )

    return LedgerResult(
        event=LedgerEventOut.model_validate(event),
        new_total=user.total_xp,
        new_level=user.current_level,
        level_up=level_up,
    )


async def _replay(db: AsyncSession, event: XpEvent, *, requested_user_id: str) -> LedgerResult:
    if event.user_id != requested_user_id:
        logger.warning(
            "Dedupe key %s belongs to user=%s, requested by user=%s",
            event.dedupe_key, event.user_id, requested_user_id,
        )
    user = await get_user(db, event.user_id)
    return LedgerResult(
        event=LedgerEventOut.model_validate(event),
        new_total=user.total_xp,
        new_level=user.current_level,
        level_up=False,
        deduped=True,
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def list_events(
    db: AsyncSession,
    user_id: str,
    start: datetime,
    end: datetime,
) -> list[XpEvent]:
    """Events in [start, end), newest first."""
    result = await db.execute(
        select(XpEvent)
        .where(
            XpEvent.user_id == user_id,
            XpEvent.created_at >= start,
            XpEvent.created_at < end,
        )
        .order_by(XpEvent.created_at.desc())
    )
    return list(result.scalars().all())


async def get_daily_xp(db: AsyncSession, user_id: str, day: date, tz: str | None) -> DailyXpSummary:
    """Total and per-type XP for one local calendar day."""
    start, end = day_bounds_utc(day, tz)
    events = await list_events(db, user_id, start, end)
    breakdown: dict[str, int] = {}
    for event in events:
        breakdown[event.type] = breakdown.get(event.type, 0) + event.delta
    return DailyXpSummary(
        total=sum(e.delta for e in events),
        events=len(events),
        breakdown=breakdown,
    )


async def ledger_total(db: AsyncSession, user_id: str) -> int:
    """Sum of every XP delta recorded for the user."""
    result = await db.execute(
        select(func.coalesce(func.sum(XpEvent.delta), 0)).where(XpEvent.user_id == user_id)
    )
    return int(result.scalar_one())


async def aggregate_matches_ledger(db: AsyncSession, user_id: str) -> bool:
    """Read-only consistency check: does ``total_xp`` equal the ledger sum?"""
    user = await get_user(db, user_id)
    return user.total_xp == await ledger_total(db, user_id)
