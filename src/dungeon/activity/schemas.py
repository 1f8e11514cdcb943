"""Result models for activity actions."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict

from dungeon.ledger.schemas import BuildResult, LedgerResult


class BlockOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    start_time: dt.datetime
    end_time: dt.datetime | None = None
    planned_duration_min: int
    status: str
    verified: bool
    is_boss_block: bool
    awarded_min: int
    xp_earned: int
    build_points: int


class BlockCompletion(BaseModel):
    block: BlockOut
    base_xp: int = 0
    bonus_xp: int = 0
    hp_modulated: bool = False
    ledger: LedgerResult | None = None
    build: BuildResult | None = None
    deduped: bool = False


class UrgeResult(BaseModel):
    urge_id: str
    in_active_block: bool
    xp_earned: int
    ledger: LedgerResult | None = None
    build: BuildResult | None = None


class TaskResult(BaseModel):
    task_id: str
    xp_earned: int
    ledger: LedgerResult | None = None
    build: BuildResult | None = None


class UsageLogResult(BaseModel):
    date: dt.date
    social_media_min: int
    limit_min: int
    overage_min: int
    warning: bool
    penalty: LedgerResult | None = None
