"""HP projection.

HP is bounded to [0, 100] and changed only by sleep, healing and penalty
sources, never by the XP ledger. Each source may change HP at most once per
user per local day; the ``hp_adjustments`` row is the gate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from enum import StrEnum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.db.models import HpAdjustment
from dungeon.ledger._append import get_user
from dungeon.ledger.audit_service import AuditEventType, record_audit_event
from dungeon.policy.engine import HpCalculation, calculate_sleep_hp, clamp_hp, is_wake_on_time
from dungeon.policy.settings import safe_parse_settings

logger = logging.getLogger(__name__)


class HpSource(StrEnum):
    SLEEP = "sleep"
    NSDR = "nsdr"
    OVERAGE = "overage"
    TRUTH_VIOLATION = "truth_violation"


@dataclass(frozen=True)
class HpResult:
    hp: int
    requested_delta: int
    applied_delta: int
    deduped: bool = False


async def _find_adjustment(db: AsyncSession, user_id: str, day: date, source: str) -> HpAdjustment | None:
    result = await db.execute(
        select(HpAdjustment).where(
            HpAdjustment.user_id == user_id,
            HpAdjustment.date == day,
            HpAdjustment.source == source,
        )
    )
    return result.scalar_one_or_none()


async def _replay(db: AsyncSession, row: HpAdjustment) -> HpResult:
    user = await get_user(db, row.user_id)
    return HpResult(
        hp=user.current_hp,
        requested_delta=row.requested_delta,
        applied_delta=row.applied_delta,
        deduped=True,
    )


async def adjust_hp(
    db: AsyncSession,
    user_id: str,
    day: date,
    source: HpSource | str,
    delta: int,
    *,
    now: datetime | None = None,
) -> HpResult:
    """Apply ``delta`` to the user's HP once per (user, day, source), clamped to [0, 100].

    A repeat call for the same key writes nothing and returns the first
    adjustment. Callers commit.
    """
    source = HpSource(source).value
    existing = await _find_adjustment(db, user_id, day, source)
    if existing is not None:
        return await _replay(db, existing)

    user = await get_user(db, user_id, for_update=True)
    now = now or datetime.now(timezone.utc)
    hp_after = clamp_hp(user.current_hp + delta)
    row = HpAdjustment(
        user_id=user_id,
        date=day,
        source=source,
        requested_delta=delta,
        applied_delta=hp_after - user.current_hp,
        hp_after=hp_after,
        created_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(row)
            await db.flush()
    except IntegrityError:
        winner = await _find_adjustment(db, user_id, day, source)
        if winner is None:
            raise
        logger.info("HP adjustment race resolved user=%s day=%s source=%s", user_id, day, source)
        return await _replay(db, winner)

    user.current_hp = hp_after
    user.updated_at = now
    await record_audit_event(
        db,
        user_id,
        AuditEventType.HP_ADJUSTED,
        description=f"HP {source} {row.applied_delta:+d}",
        entity_type="hp_adjustment",
        entity_id=row.id,
        details={"date": day.isoformat(), "requested": delta, "hp_after": hp_after},
        now=now,
    )
    await db.flush()
    return HpResult(hp=hp_after, requested_delta=delta, applied_delta=row.applied_delta)


async def set_hp_from_sleep(
    db: AsyncSession,
    user_id: str,
    day: date,
    *,
    wake_time: time,
    protocol_items_completed: int,
    rested_rating: int,
    now: datetime | None = None,
) -> tuple[HpResult, HpCalculation]:
    """Set the morning HP from the sleep check-in; once per day."""
    user = await get_user(db, user_id)
    settings = safe_parse_settings(user.settings)
    calc = calculate_sleep_hp(
        settings,
        woke_on_time=is_wake_on_time(wake_time, settings),
        protocol_items_completed=protocol_items_completed,
        rested_rating=rested_rating,
    )
    result = await adjust_hp(db, user_id, day, HpSource.SLEEP, calc.total_hp - user.current_hp, now=now)
    return result, calc


async def heal_with_nsdr(db: AsyncSession, user_id: str, day: date, *, now: datetime | None = None) -> HpResult:
    user = await get_user(db, user_id)
    restore = safe_parse_settings(user.settings).circadian.nsdr_hp_restore
    return await adjust_hp(db, user_id, day, HpSource.NSDR, restore, now=now)
