"""Result models returned by ledger operations."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class LedgerEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    type: str
    delta: int
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    description: str | None = None
    dedupe_key: str | None = None
    created_at: datetime


class LedgerResult(BaseModel):
    """Outcome of ``record_event``. ``deduped`` marks a replay of an earlier write."""

    event: LedgerEventOut
    new_total: int
    new_level: int
    level_up: bool
    deduped: bool = False


class SegmentProgress(BaseModel):
    key: str
    label: str
    phase: str
    cost: int
    points_applied: int
    completed: bool


class BlueprintProgress(BaseModel):
    blueprint_id: str
    total_points: int
    total_cost: int
    completion_pct: int
    current_segment: SegmentProgress | None = None
    current_segment_pct: int
    segments: list[SegmentProgress]


class BuildResult(BaseModel):
    event: LedgerEventOut
    new_total: int
    deduped: bool = False
    progress: BlueprintProgress


class DailyXpSummary(BaseModel):
    total: int
    events: int
    breakdown: dict[str, int]
