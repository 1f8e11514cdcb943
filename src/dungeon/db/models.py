"""ORM models for the ledger, reconciliation and activity tables.

Every idempotency boundary in the core is a unique constraint declared here:
ledger dedupe keys, one truth check per user-day, deterministic violation ids,
one HP adjustment per user-day-source, one active block per user.
"""

from __future__ import annotations

import datetime as dt
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from dungeon.db.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return str(uuid.uuid4())


class XpEventType(StrEnum):
    BLOCK_COMPLETE = "block_complete"
    URGE_RESIST = "urge_resist"
    TASK_COMPLETE = "task_complete"
    VIOLATION_PENALTY = "violation_penalty"
    LIE_PENALTY = "lie_penalty"
    STREAK_BREAK_PENALTY = "streak_break_penalty"
    DECAY = "decay"


class BuildEventType(StrEnum):
    BLOCK_COMPLETE = "block_complete"
    URGE_RESIST = "urge_resist"
    TASK_COMPLETE = "task_complete"
    MANUAL = "manual"


class TruthStatus(StrEnum):
    MATCH = "match"
    MISMATCH = "mismatch"
    MISSING_REPORT = "missing_report"
    MISSING_VERIFICATION = "missing_verification"


class BlockStatus(StrEnum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


# ---------------------------------------------------------------------------
# User aggregate
# ---------------------------------------------------------------------------


class User(Base):
    """Per-user aggregate. Totals are only ever mutated alongside a ledger insert."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("current_hp >= 0 AND current_hp <= 100", name="hp_bounds"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    timezone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_xp: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_streak_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    current_hp: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    total_build_points: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")
    settings: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    settings_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Ledgers
# ---------------------------------------------------------------------------


class LedgerEventMixin:
    """Columns shared by the XP and build-point ledgers. Rows are never updated."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    # Loose reference: the related row may be deleted later.
    related_entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(String(256), nullable=True)
    dedupe_key: Mapped[str | None] = mapped_column(String(256), unique=True, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @declared_attr
    def user_id(cls) -> Mapped[str]:  # noqa: N805
        return mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)


class XpEvent(LedgerEventMixin, Base):
    """Append-only XP ledger."""

    __tablename__ = "xp_events"
    __table_args__ = (Index("ix_xp_events_user_created", "user_id", "created_at"),)


class BuildEvent(LedgerEventMixin, Base):
    """Append-only build-point ledger (second currency, funds blueprint progress)."""

    __tablename__ = "build_events"
    __table_args__ = (Index("ix_build_events_user_created", "user_id", "created_at"),)

    blueprint_id: Mapped[str] = mapped_column(String(64), nullable=False)


class AuditEvent(Base):
    """Append-only record of truth-critical actions."""

    __tablename__ = "audit_events"
    __table_args__ = (Index("ix_audit_events_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    type: Mapped[str] = mapped_column(String(48), nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column("metadata", JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Truth reconciliation
# ---------------------------------------------------------------------------


class PhoneDailyLog(Base):
    """Self-reported social media minutes for one local day."""

    __tablename__ = "phone_daily_logs"
    __table_args__ = (UniqueConstraint("user_id", "date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    social_media_min: Mapped[int] = mapped_column(Integer, nullable=False)
    limit_min: Mapped[int] = mapped_column(Integer, nullable=False)
    overage_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class UsageViolation(Base):
    """Applied truth consequence. The id is derived from (user, date, source, policy version)."""

    __tablename__ = "usage_violations"
    __table_args__ = (UniqueConstraint("user_id", "date", "source", "policy_version"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    policy_version: Mapped[str] = mapped_column(String(16), nullable=False)
    threshold_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    reported_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    verified_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    delta_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    penalty_xp: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class DailyTruthCheck(Base):
    """Per user-day comparison of reported vs verified minutes.

    ``violation_id`` is the consequence gate: set once, in the same transaction
    as the penalty, and never cleared.
    """

    __tablename__ = "daily_truth_checks"
    __table_args__ = (UniqueConstraint("user_id", "date"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    reported_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    verified_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    delta_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    violation_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("usage_violations.id"), nullable=True
    )
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


# ---------------------------------------------------------------------------
# Activity
# ---------------------------------------------------------------------------


class PhoneFreeBlock(Base):
    """A phone-free focus block. At most one ACTIVE block per user."""

    __tablename__ = "phone_free_blocks"
    __table_args__ = (
        Index(
            "uq_phone_free_blocks_one_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    planned_duration_min: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=BlockStatus.ACTIVE.value)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_boss_block: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    awarded_min: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    build_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")


class Urge(Base):
    """A resisted urge to reach for the phone."""

    __tablename__ = "urges"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    trigger: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_micro_task: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    during_block_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    xp_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class HpAdjustment(Base):
    """One HP change per (user, date, source); the row is the per-day idempotency gate."""

    __tablename__ = "hp_adjustments"
    __table_args__ = (UniqueConstraint("user_id", "date", "source"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    requested_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_delta: Mapped[int] = mapped_column(Integer, nullable=False)
    hp_after: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
