"""Truth reconciliation: self-reported vs verified usage minutes.

Two phases per (user, date):

* ``compute_truth_check`` classifies the day. It is an upsert and may run any
  number of times; it never touches the consequence gate.
* ``apply_truth_consequences`` applies the lie penalty at most once. The gate
  (``daily_truth_checks.violation_id``) is checked and closed in the same
  transaction as the penalty writes.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.config import get_settings
from dungeon.database import upsert
from dungeon.db.models import (
    DailyTruthCheck,
    PhoneDailyLog,
    TruthStatus,
    UsageViolation,
    XpEventType,
)
from dungeon.exceptions import InvalidRangeError, NotFoundError
from dungeon.ledger._append import get_user
from dungeon.ledger.audit_service import AuditEventType, record_audit_event
from dungeon.ledger.xp_service import record_event
from dungeon.policy.settings import safe_parse_settings
from dungeon.projections.hp_service import HpSource, adjust_hp
from dungeon.truth.schemas import ConsequenceResult, NoOpReason, TruthCheckOut

logger = logging.getLogger(__name__)

# Truth policy; not part of the per-user settings snapshot.
TRUTH_DELTA_THRESHOLD_MINUTES = 5
TRUTH_PENALTY_PER_MINUTE = 2
TRUTH_POLICY_VERSION = "v1"

_VIOLATION_NAMESPACE = uuid.UUID("6f1c2b8e-3d4a-5e6f-8a9b-0c1d2e3f4a5b")


def classify(reported: int | None, verified: int | None) -> tuple[TruthStatus, int | None]:
    """Status and signed delta (reported - verified) for one day."""
    if reported is None:
        if verified is None:
            return TruthStatus.MISSING_VERIFICATION, None
        return TruthStatus.MISSING_REPORT, None
    if verified is None:
        return TruthStatus.MISSING_VERIFICATION, None
    delta = reported - verified
    if abs(delta) <= TRUTH_DELTA_THRESHOLD_MINUTES:
        return TruthStatus.MATCH, delta
    return TruthStatus.MISMATCH, delta


def penalty_for(delta_minutes: int) -> int:
    return -TRUTH_PENALTY_PER_MINUTE * abs(delta_minutes)


def violation_id_for(user_id: str, day: date, source: str) -> str:
    """Stable id so a repeated application lands on the same violation row."""
    name = f"{TRUTH_POLICY_VERSION}:{source}:{user_id}:{day.isoformat()}"
    return str(uuid.uuid5(_VIOLATION_NAMESPACE, name))


def penalty_dedupe_key(user_id: str, day: date, source: str) -> str:
    return f"truth:{TRUTH_POLICY_VERSION}:{source}:{user_id}:{day.isoformat()}"


async def _get_truth_check(db: AsyncSession, user_id: str, day: date, *, for_update: bool = False) -> DailyTruthCheck | None:
    stmt = (
        select(DailyTruthCheck)
        .where(DailyTruthCheck.user_id == user_id, DailyTruthCheck.date == day)
        .execution_options(populate_existing=True)
    )
    if for_update:
        stmt = stmt.with_for_update()
    return (await db.execute(stmt)).scalar_one_or_none()


async def compute_truth_check(
    db: AsyncSession,
    user_id: str,
    day: date,
    verified_minutes: int | None,
    source: str | None = None,
    *,
    now: datetime | None = None,
) -> TruthCheckOut:
    """Classify one user-day and upsert the result. Commits.

    The self-report is read from ``phone_daily_logs``; ``verified_minutes`` is
    supplied by the caller. Recomputing overwrites the classification but
    leaves ``violation_id`` as it was.
    """
    if verified_minutes is not None and verified_minutes < 0:
        raise InvalidRangeError("verified_minutes", verified_minutes, 0, None)
    source = source or get_settings().truth_source
    now = now or datetime.now(timezone.utc)

    try:
        await get_user(db, user_id)
        result = await db.execute(
            select(PhoneDailyLog.social_media_min).where(
                PhoneDailyLog.user_id == user_id,
                PhoneDailyLog.date == day,
            )
        )
        reported = result.scalar_one_or_none()
        status, delta = classify(reported, verified_minutes)

        await upsert(
            db,
            DailyTruthCheck,
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "date": day,
                "reported_minutes": reported,
                "verified_minutes": verified_minutes,
                "delta_minutes": delta,
                "status": status.value,
                "source": source,
                "computed_at": now,
            },
            index_elements=["user_id", "date"],
            update_columns=[
                "reported_minutes",
                "verified_minutes",
                "delta_minutes",
                "status",
                "source",
                "computed_at",
            ],
        )
        row = await _get_truth_check(db, user_id, day)
        out = TruthCheckOut.model_validate(row)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Truth check user=%s date=%s status=%s reported=%s verified=%s delta=%s",
        user_id, day, out.status, reported, verified_minutes, delta,
    )
    return out


def _no_op_reason(row: DailyTruthCheck) -> NoOpReason | None:
    if row.violation_id is not None:
        return "already_applied"
    if row.reported_minutes is None or row.verified_minutes is None or row.delta_minutes is None:
        return "missing_minutes"
    if row.status != TruthStatus.MISMATCH.value:
        return "not_mismatch"
    if abs(row.delta_minutes) <= TRUTH_DELTA_THRESHOLD_MINUTES:
        return "within_threshold"
    return None


async def apply_truth_consequences(
    db: AsyncSession,
    user_id: str,
    day: date,
    *,
    now: datetime | None = None,
) -> ConsequenceResult:
    """Apply the lie penalty for a computed, mismatched day exactly once. Commits.

    Raises:
        NotFoundError: The day has not been through ``compute_truth_check``.
    """
    now = now or datetime.now(timezone.utc)
    try:
        row = await _get_truth_check(db, user_id, day, for_update=True)
        if row is None:
            raise NotFoundError("DailyTruthCheck", f"{user_id}/{day.isoformat()}")

        reason = _no_op_reason(row)
        if reason is not None:
            out = TruthCheckOut.model_validate(row)
            await db.commit()
            logger.info("Truth consequence skipped user=%s date=%s reason=%s", user_id, day, reason)
            return ConsequenceResult(
                applied=False,
                reason=reason,
                truth_check=out,
                violation_id=row.violation_id,
            )

        delta = row.delta_minutes
        penalty = penalty_for(delta)
        violation_id = violation_id_for(user_id, day, row.source)

        await upsert(
            db,
            UsageViolation,
            {
                "id": violation_id,
                "user_id": user_id,
                "date": day,
                "source": row.source,
                "policy_version": TRUTH_POLICY_VERSION,
                "threshold_minutes": TRUTH_DELTA_THRESHOLD_MINUTES,
                "reported_minutes": row.reported_minutes,
                "verified_minutes": row.verified_minutes,
                "delta_minutes": delta,
                "penalty_xp": penalty,
                "created_at": now,
            },
            index_elements=["id"],
        )

        ledger = await record_event(
            db,
            user_id,
            XpEventType.LIE_PENALTY,
            penalty,
            description=f"Reported {row.reported_minutes} min, verified {row.verified_minutes} min",
            related_entity_type="usage_violation",
            related_entity_id=violation_id,
            dedupe_key=penalty_dedupe_key(user_id, day, row.source),
            details={"delta_minutes": delta, "policy_version": TRUTH_POLICY_VERSION},
            now=now,
        )

        user = await get_user(db, user_id)
        hp_penalty = safe_parse_settings(user.settings).circadian.violation_hp_penalty
        if hp_penalty:
            await adjust_hp(db, user_id, day, HpSource.TRUTH_VIOLATION, -hp_penalty, now=now)

        await record_audit_event(
            db,
            user_id,
            AuditEventType.TRUTH_PENALTY_APPLIED,
            description=f"Truth penalty {penalty} XP for {day.isoformat()}",
            entity_type="usage_violation",
            entity_id=violation_id,
            details={
                "date": day.isoformat(),
                "source": row.source,
                "reported_minutes": row.reported_minutes,
                "verified_minutes": row.verified_minutes,
                "delta_minutes": delta,
                "penalty_xp": penalty,
                "ledger_event_id": ledger.event.id,
            },
            now=now,
        )

        row.violation_id = violation_id
        await db.flush()
        out = TruthCheckOut.model_validate(row)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Truth penalty applied user=%s date=%s delta=%d penalty=%d violation=%s",
        user_id, day, delta, penalty, violation_id,
    )
    return ConsequenceResult(
        applied=True,
        truth_check=out,
        violation_id=violation_id,
        penalty_xp=penalty,
        ledger=ledger,
    )


async def get_truth_check(db: AsyncSession, user_id: str, day: date) -> TruthCheckOut | None:
    row = await _get_truth_check(db, user_id, day)
    return TruthCheckOut.model_validate(row) if row is not None else None


async def list_truth_checks(db: AsyncSession, user_id: str, start: date, end: date) -> list[TruthCheckOut]:
    """Truth checks for ``start``..``end`` inclusive, oldest first."""
    result = await db.execute(
        select(DailyTruthCheck)
        .where(
            DailyTruthCheck.user_id == user_id,
            DailyTruthCheck.date >= start,
            DailyTruthCheck.date <= end,
        )
        .order_by(DailyTruthCheck.date.asc())
    )
    return [TruthCheckOut.model_validate(row) for row in result.scalars().all()]
