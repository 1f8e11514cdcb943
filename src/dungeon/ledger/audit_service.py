"""Append-only audit log of truth-critical actions.

Audit rows are written in the same transaction as the action they describe;
a failed audit write fails the action.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.db.models import AuditEvent


class AuditEventType(StrEnum):
    BLOCK_STARTED = "block_started"
    BLOCK_COMPLETED = "block_completed"
    URGE_LOGGED = "urge_logged"
    TASK_COMPLETED = "task_completed"
    PHONE_LOG_RECORDED = "phone_log_recorded"
    TRUTH_PENALTY_APPLIED = "truth_penalty_applied"
    HP_ADJUSTED = "hp_adjusted"


async def record_audit_event(
    db: AsyncSession,
    user_id: str,
    type: AuditEventType | str,  # noqa: A002
    *,
    description: str | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    details: dict[str, Any] | None = None,
    now: datetime | None = None,
) -> AuditEvent:
    event = AuditEvent(
        user_id=user_id,
        type=AuditEventType(type).value,
        description=description,
        entity_type=entity_type,
        entity_id=entity_id,
        details=details,
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(event)
    await db.flush()
    return event


async def list_audit_events(
    db: AsyncSession,
    user_id: str,
    start: datetime,
    end: datetime,
    type: AuditEventType | str | None = None,  # noqa: A002
) -> list[AuditEvent]:
    """Audit rows in [start, end), oldest first."""
    stmt = select(AuditEvent).where(
        AuditEvent.user_id == user_id,
        AuditEvent.created_at >= start,
        AuditEvent.created_at < end,
    )
    if type is not None:
        stmt = stmt.where(AuditEvent.type == AuditEventType(type).value)
    result = await db.execute(stmt.order_by(AuditEvent.created_at.asc()))
    return list(result.scalars().all())
