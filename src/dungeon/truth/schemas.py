"""Result models for truth reconciliation."""

from __future__ import annotations

import datetime as dt
from typing import Literal

from pydantic import BaseModel, ConfigDict

from dungeon.ledger.schemas import LedgerResult

NoOpReason = Literal["already_applied", "missing_minutes", "not_mismatch", "within_threshold"]


class TruthCheckOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    date: dt.date
    reported_minutes: int | None = None
    verified_minutes: int | None = None
    delta_minutes: int | None = None
    status: str
    source: str
    violation_id: str | None = None
    computed_at: dt.datetime


class ConsequenceResult(BaseModel):
    """Outcome of ``apply_truth_consequences``.

    ``applied=False`` is a normal outcome; ``reason`` says why nothing was written.
    """

    applied: bool
    reason: NoOpReason | None = None
    truth_check: TruthCheckOut
    violation_id: str | None = None
    penalty_xp: int = 0
    ledger: LedgerResult | None = None


class ReconciliationSummary(BaseModel):
    date: dt.date
    computed: int = 0
    applied: int = 0
    skipped: dict[str, int] = {}
    failed: list[str] = []
