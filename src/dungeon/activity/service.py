"""Activity actions: translate what the user did into ledger entries.

Each action reads the user's settings snapshot, asks the policy engine for the
amounts, and records them through the ledgers with a dedupe key derived from
the action, so a retried call never pays twice. Every action owns its
transaction: it commits on success and rolls back on any error.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.activity.schemas import BlockCompletion, BlockOut, TaskResult, UrgeResult, UsageLogResult
from dungeon.database import upsert
from dungeon.dates import elapsed_minutes
from dungeon.db.models import BlockStatus, BuildEventType, PhoneDailyLog, PhoneFreeBlock, Urge, XpEventType
from dungeon.exceptions import ActiveBlockExistsError, InvalidRangeError, NotFoundError, StoreConflictError
from dungeon.ledger._append import get_user
from dungeon.ledger.audit_service import AuditEventType, record_audit_event
from dungeon.ledger.build_service import record_build_event
from dungeon.ledger.schemas import LedgerResult
from dungeon.ledger.xp_service import record_event
from dungeon.policy.engine import (
    BlockContext,
    TaskKind,
    calculate_block_xp,
    calculate_decay,
    calculate_overage_penalty,
    calculate_task_xp,
    calculate_urge_xp,
    get_overage,
    get_warning_threshold,
    modulate_for_hp,
    points_for_phone_block,
    points_for_task,
    points_for_urge,
    validate_block_duration,
)
from dungeon.policy.settings import safe_parse_settings
from dungeon.projections.hp_service import HpSource, adjust_hp
from dungeon.projections.streak_service import refresh_streak

logger = logging.getLogger(__name__)

MAX_DAILY_MINUTES = 24 * 60


async def get_active_block(db: AsyncSession, user_id: str) -> PhoneFreeBlock | None:
    result = await db.execute(
        select(PhoneFreeBlock).where(
            PhoneFreeBlock.user_id == user_id,
            PhoneFreeBlock.status == BlockStatus.ACTIVE.value,
        )
    )
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Phone-free blocks
# ---------------------------------------------------------------------------


async def start_block(
    db: AsyncSession,
    user_id: str,
    planned_duration_min: int,
    *,
    is_boss_block: bool = False,
    now: datetime | None = None,
) -> BlockOut:
    """Open a phone-free block.

    Raises:
        InvalidRangeError: Duration outside the user's block bounds.
        ActiveBlockExistsError: A block is already in progress.
    """
    now = now or datetime.now(timezone.utc)
    try:
        user = await get_user(db, user_id, for_update=True)
        validate_block_duration(planned_duration_min, safe_parse_settings(user.settings))

        active = await get_active_block(db, user_id)
        if active is not None:
            raise ActiveBlockExistsError(user_id, active.id)

        block = PhoneFreeBlock(
            id=str(uuid.uuid4()),
            user_id=user_id,
            start_time=now,
            planned_duration_min=planned_duration_min,
            status=BlockStatus.ACTIVE.value,
            verified=False,
            is_boss_block=is_boss_block,
            awarded_min=0,
            xp_earned=0,
            build_points=0,
        )
        try:
            async with db.begin_nested():
                db.add(block)
                await db.flush()
        except IntegrityError as exc:
            raise ActiveBlockExistsError(user_id) from exc

        await record_audit_event(
            db,
            user_id,
            AuditEventType.BLOCK_STARTED,
            description=f"Started {planned_duration_min} min block",
            entity_type="phone_free_block",
            entity_id=block.id,
            details={"planned_duration_min": planned_duration_min, "is_boss_block": is_boss_block},
            now=now,
        )
        out = BlockOut.model_validate(block)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Block started user=%s block=%s planned=%d", user_id, out.id, planned_duration_min)
    return out


async def complete_block(
    db: AsyncSession,
    user_id: str,
    block_id: str,
    *,
    verified: bool = False,
    now: datetime | None = None,
) -> BlockCompletion:
    """Close a block and pay XP and build points for the minutes actually held.

    Awarded minutes are the elapsed minutes capped at the planned duration.
    Completing an already completed block is a no-op (``deduped=True``).
    """
    now = now or datetime.now(timezone.utc)
    try:
        result = await db.execute(
            select(PhoneFreeBlock)
            .where(PhoneFreeBlock.id == block_id, PhoneFreeBlock.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        block = result.scalar_one_or_none()
        if block is None:
            raise NotFoundError("PhoneFreeBlock", block_id)

        if block.status == BlockStatus.COMPLETED.value:
            out = BlockOut.model_validate(block)
            await db.commit()
            return BlockCompletion(block=out, deduped=True)

        user = await get_user(db, user_id, for_update=True)
        settings = safe_parse_settings(user.settings)

        awarded = min(elapsed_minutes(block.start_time, now), block.planned_duration_min)
        xp = calculate_block_xp(awarded, settings, BlockContext(verified=verified, boss_block=block.is_boss_block))
        modulation = modulate_for_hp(xp.total_xp, user.current_hp)

        ledger = None
        if settings.features.xp_system and modulation.delta > 0:
            ledger = await record_event(
                db,
                user_id,
                XpEventType.BLOCK_COMPLETE,
                modulation.delta,
                description=f"Phone-free block: {awarded} min",
                related_entity_type="phone_free_block",
                related_entity_id=block.id,
                dedupe_key=f"block:{block.id}",
                details={
                    "awarded_min": awarded,
                    "base_xp": xp.base_xp,
                    "bonus_xp": xp.bonus_xp,
                    "hp_modulated": modulation.applied,
                },
                now=now,
            )

        build = None
        if settings.features.build_mode and awarded > 0:
            build = await record_build_event(
                db,
                user_id,
                BuildEventType.BLOCK_COMPLETE,
                points_for_phone_block(awarded, settings),
                description=f"Phone-free block: {awarded} min",
                related_entity_type="phone_free_block",
                related_entity_id=block.id,
                dedupe_key=f"build:block:{block.id}",
                now=now,
            )

        block.status = BlockStatus.COMPLETED.value
        block.end_time = now
        block.verified = verified
        block.awarded_min = awarded
        block.xp_earned = ledger.event.delta if ledger else 0
        block.build_points = build.event.delta if build else 0

        await record_audit_event(
            db,
            user_id,
            AuditEventType.BLOCK_COMPLETED,
            description=f"Completed block: {awarded}/{block.planned_duration_min} min",
            entity_type="phone_free_block",
            entity_id=block.id,
            details={"awarded_min": awarded, "xp": block.xp_earned, "build_points": block.build_points},
            now=now,
        )
        await refresh_streak(db, user_id, now)
        out = BlockOut.model_validate(block)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Block completed user=%s block=%s awarded=%d xp=%d", user_id, block_id, awarded, out.xp_earned)
    return BlockCompletion(
        block=out,
        base_xp=xp.base_xp,
        bonus_xp=xp.bonus_xp,
        hp_modulated=modulation.applied,
        ledger=ledger,
        build=build,
    )


# ---------------------------------------------------------------------------
# Urges and tasks
# ---------------------------------------------------------------------------


async def _find_urge(db: AsyncSession, user_id: str, urge_id: str) -> Urge | None:
    """The user's urge with this id; another user's urge with the same id is a conflict."""
    stmt = select(Urge).where(Urge.id == urge_id).execution_options(populate_existing=True)
    urge = (await db.execute(stmt)).scalar_one_or_none()
    if urge is not None and urge.user_id != user_id:
        raise StoreConflictError(f"urge {urge_id!r} exists for another user")
    return urge


def _replayed_urge(urge: Urge) -> UrgeResult:
    return UrgeResult(
        urge_id=urge.id,
        in_active_block=urge.during_block_id is not None,
        xp_earned=urge.xp_earned,
    )


async def log_urge(
    db: AsyncSession,
    user_id: str,
    *,
    trigger: str | None = None,
    completed_micro_task: bool = False,
    urge_id: str | None = None,
    now: datetime | None = None,
) -> UrgeResult:
    """Record a resisted urge.

    An urge logged inside an active block earns nothing; the block already
    pays for that time. Pass a client-generated ``urge_id`` to make retries safe.
    """
    now = now or datetime.now(timezone.utc)
    try:
        if urge_id is not None:
            existing = await _find_urge(db, user_id, urge_id)
            if existing is not None:
                await db.commit()
                return _replayed_urge(existing)

        user = await get_user(db, user_id, for_update=True)
        settings = safe_parse_settings(user.settings)
        active = await get_active_block(db, user_id)
        in_block = active is not None

        urge = Urge(
            id=urge_id or str(uuid.uuid4()),
            user_id=user_id,
            trigger=trigger,
            completed_micro_task=completed_micro_task,
            during_block_id=active.id if active else None,
            xp_earned=0,
            created_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(urge)
                await db.flush()
        except IntegrityError as exc:
            winner = await _find_urge(db, user_id, urge.id)
            if winner is None:
                raise StoreConflictError(f"urge {urge.id!r} conflict but no winning row found") from exc
            logger.info("Urge retry race resolved urge=%s", urge.id)
            await db.commit()
            return _replayed_urge(winner)

        modulation = modulate_for_hp(calculate_urge_xp(settings, in_active_block=in_block), user.current_hp)
        ledger = None
        if settings.features.xp_system and modulation.delta > 0:
            ledger = await record_event(
                db,
                user_id,
                XpEventType.URGE_RESIST,
                modulation.delta,
                description="Resisted urge",
                related_entity_type="urge",
                related_entity_id=urge.id,
                dedupe_key=f"urge:{urge.id}",
                now=now,
            )
            urge.xp_earned = ledger.event.delta

        build = None
        if settings.features.build_mode and not in_block:
            build = await record_build_event(
                db,
                user_id,
                BuildEventType.URGE_RESIST,
                points_for_urge(settings, completed_micro_task=completed_micro_task),
                description="Resisted urge",
                related_entity_type="urge",
                related_entity_id=urge.id,
                dedupe_key=f"build:urge:{urge.id}",
                now=now,
            )

        await record_audit_event(
            db,
            user_id,
            AuditEventType.URGE_LOGGED,
            description="Urge resisted inside block" if in_block else "Urge resisted",
            entity_type="urge",
            entity_id=urge.id,
            details={"trigger": trigger, "xp": urge.xp_earned, "during_block_id": urge.during_block_id},
            now=now,
        )
        if ledger is not None:
            await refresh_streak(db, user_id, now)
        result = UrgeResult(
            urge_id=urge.id,
            in_active_block=in_block,
            xp_earned=urge.xp_earned,
            ledger=ledger,
            build=build,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result


async def complete_task(
    db: AsyncSession,
    user_id: str,
    task_id: str,
    kind: TaskKind | str = TaskKind.STANDARD,
    *,
    duration_min: int | None = None,
    title: str | None = None,
    now: datetime | None = None,
) -> TaskResult:
    """Pay XP and build points for a completed task, once per ``task_id``."""
    now = now or datetime.now(timezone.utc)
    try:
        user = await get_user(db, user_id, for_update=True)
        settings = safe_parse_settings(user.settings)
        modulation = modulate_for_hp(calculate_task_xp(kind, settings, duration_min), user.current_hp)
        description = f"Task: {title}" if title else "Task completed"

        ledger = None
        if settings.features.xp_system and modulation.delta > 0:
            ledger = await record_event(
                db,
                user_id,
                XpEventType.TASK_COMPLETE,
                modulation.delta,
                description=description,
                related_entity_type="task",
                related_entity_id=task_id,
                dedupe_key=f"task:{task_id}",
                details={"kind": TaskKind(kind).value, "duration_min": duration_min},
                now=now,
            )
        xp_earned = ledger.event.delta if ledger else 0

        build = None
        if settings.features.build_mode:
            build = await record_build_event(
                db,
                user_id,
                BuildEventType.TASK_COMPLETE,
                points_for_task(settings, duration_min, xp_earned),
                description=description,
                related_entity_type="task",
                related_entity_id=task_id,
                dedupe_key=f"build:task:{task_id}",
                now=now,
            )

        if not (ledger and ledger.deduped):
            await record_audit_event(
                db,
                user_id,
                AuditEventType.TASK_COMPLETED,
                description=description,
                entity_type="task",
                entity_id=task_id,
                details={"xp": xp_earned},
                now=now,
            )
        if ledger is not None:
            await refresh_streak(db, user_id, now)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return TaskResult(task_id=task_id, xp_earned=xp_earned, ledger=ledger, build=build)


# ---------------------------------------------------------------------------
# Daily usage
# ---------------------------------------------------------------------------


async def log_daily_usage(
    db: AsyncSession,
    user_id: str,
    day: date,
    social_media_min: int,
    *,
    now: datetime | None = None,
) -> UsageLogResult:
    """Store the self-reported minutes for ``day`` and charge any overage.

    Re-logging a day overwrites the report, but the overage penalty and its HP
    hit are charged only on the first over-limit log of that day.
    """
    if not 0 <= social_media_min <= MAX_DAILY_MINUTES:
        raise InvalidRangeError("social_media_min", social_media_min, 0, MAX_DAILY_MINUTES)
    now = now or datetime.now(timezone.utc)
    try:
        user = await get_user(db, user_id, for_update=True)
        settings = safe_parse_settings(user.settings)
        limit = settings.phone_usage.daily_limit_min
        overage = get_overage(social_media_min, settings)

        await upsert(
            db,
            PhoneDailyLog,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "date": day,
                "social_media_min": social_media_min,
                "limit_min": limit,
                "overage_min": overage,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["user_id", "date"],
            update_columns=["social_media_min", "limit_min", "overage_min", "updated_at"],
        )

        penalty = None
        penalty_xp = calculate_overage_penalty(overage, settings)
        if settings.features.xp_system and penalty_xp < 0:
            penalty = await record_event(
                db,
                user_id,
                XpEventType.VIOLATION_PENALTY,
                penalty_xp,
                description=f"Over daily limit by {overage} min",
                related_entity_type="phone_daily_log",
                dedupe_key=f"overage:{user_id}:{day.isoformat()}",
                details={"overage_min": overage, "limit_min": limit},
                now=now,
            )
        if overage > 0 and settings.circadian.violation_hp_penalty:
            await adjust_hp(db, user_id, day, HpSource.OVERAGE, -settings.circadian.violation_hp_penalty, now=now)

        await record_audit_event(
            db,
            user_id,
            AuditEventType.PHONE_LOG_RECORDED,
            description=f"Logged {social_media_min} min for {day.isoformat()}",
            entity_type="phone_daily_log",
            details={"date": day.isoformat(), "social_media_min": social_media_min, "overage_min": overage},
            now=now,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    return UsageLogResult(
        date=day,
        social_media_min=social_media_min,
        limit_min=limit,
        overage_min=overage,
        warning=social_media_min >= get_warning_threshold(settings),
        penalty=penalty,
    )


async def apply_daily_decay(
    db: AsyncSession,
    user_id: str,
    day: date,
    *,
    now: datetime | None = None,
) -> LedgerResult | None:
    """Charge the daily XP decay for ``day`` if the user has it enabled. Commits."""
    now = now or datetime.now(timezone.utc)
    try:
        user = await get_user(db, user_id, for_update=True)
        delta = calculate_decay(user.total_xp, safe_parse_settings(user.settings))
        result = None
        if delta < 0:
            result = await record_event(
                db,
                user_id,
                XpEventType.DECAY,
                delta,
                description=f"Daily decay for {day.isoformat()}",
                dedupe_key=f"decay:{user_id}:{day.isoformat()}",
                now=now,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return result
