"""Versioned per-user policy settings (v1).

The stored blob is untrusted: it is parsed here, at the edge, into a frozen
model that the policy engine receives as an explicit snapshot. Both camelCase
(as written by the web client) and snake_case keys are accepted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from dungeon.exceptions import InvalidSettingsError


class _Section(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class FeatureFlags(_Section):
    phone_free_blocks: bool = True
    urge_logging: bool = True
    sleep_tracking: bool = True
    morning_protocol: bool = True
    streak_tracking: bool = True
    xp_system: bool = True
    build_mode: bool = True


class PhoneUsageRules(_Section):
    daily_limit_min: int = Field(30, ge=0, le=480)
    warning_threshold_percent: int = Field(80, ge=0, le=100)
    default_block_min: int = Field(30, ge=5, le=240)
    min_block_min: int = Field(15, ge=5, le=60)
    max_block_min: int = Field(240, ge=30, le=480)

    @model_validator(mode="after")
    def _check_block_bounds(self) -> PhoneUsageRules:
        if not self.min_block_min <= self.default_block_min <= self.max_block_min:
            msg = "default_block_min must lie within [min_block_min, max_block_min]"
            raise ValueError(msg)
        return self


class XpRules(_Section):
    # Block XP
    xp_per_block_min: int = Field(2, ge=0, le=10)
    block_xp_cap_min: int = Field(240, ge=30, le=480)
    endurance_floor_min: int = Field(30, ge=0, le=240)
    endurance_ceiling_min: int = Field(120, ge=1, le=480)
    endurance_bonus_max: int = Field(30, ge=0, le=200)
    bonus_xp_verified: int = Field(20, ge=0, le=100)
    bonus_xp_boss_block: int = Field(30, ge=0, le=100)

    # Urges and tasks
    xp_per_urge_resist: int = Field(15, ge=0, le=50)
    xp_per_task_complete: int = Field(25, ge=0, le=100)
    xp_per_exposure_task: int = Field(50, ge=0, le=200)
    xp_per_habit_min: int = Field(1, ge=0, le=10)
    habit_xp_cap: int = Field(60, ge=0, le=240)

    # Penalties
    xp_penalty_per_overage_min: int = Field(5, ge=0, le=10)
    xp_penalty_violation: int = Field(50, ge=0, le=100)

    # Decay
    enable_decay: bool = False
    decay_percent_per_day: int = Field(1, ge=0, le=10)

    @model_validator(mode="after")
    def _check_endurance_window(self) -> XpRules:
        if self.endurance_floor_min >= self.endurance_ceiling_min:
            msg = "endurance_floor_min must be below endurance_ceiling_min"
            raise ValueError(msg)
        return self


class StreakRules(_Section):
    require_under_limit: bool = True
    require_one_block: bool = False
    require_protocol: bool = False
    grace_days: int = Field(0, ge=0, le=3)
    streak_break_xp_penalty: int = Field(100, ge=0, le=500)


class CircadianRules(_Section):
    target_wake_time: str = Field("07:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
    wake_window_min: int = Field(15, ge=0, le=60)
    base_hp: int = Field(60, ge=20, le=100)
    hp_per_on_time_wake: int = Field(10, ge=0, le=20)
    hp_per_protocol_item: int = Field(5, ge=0, le=10)
    hp_per_rested_point: int = Field(4, ge=0, le=10)
    nsdr_hp_restore: int = Field(10, ge=0, le=50)
    violation_hp_penalty: int = Field(10, ge=0, le=50)
    protocol_items: tuple[str, ...] = (
        "woke_on_time",
        "got_morning_light",
        "drank_water",
        "delayed_caffeine",
    )


class BuildRules(_Section):
    max_points_per_block: int = Field(240, ge=1, le=480)
    urge_base_points: int = Field(12, ge=0, le=100)
    urge_micro_task_bonus: int = Field(6, ge=0, le=100)
    task_base_points: int = Field(20, ge=0, le=200)


class UserSettings(_Section):
    """Complete settings snapshot consumed by the policy engine."""

    version: Literal[1] = 1
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    phone_usage: PhoneUsageRules = Field(default_factory=PhoneUsageRules)
    xp: XpRules = Field(default_factory=XpRules)
    streaks: StreakRules = Field(default_factory=StreakRules)
    circadian: CircadianRules = Field(default_factory=CircadianRules)
    build: BuildRules = Field(default_factory=BuildRules)
    updated_at: datetime | None = None


DEFAULT_SETTINGS = UserSettings()

_PRESET_OVERRIDES: dict[str, dict[str, Any]] = {
    "gentle": {
        "features": {"sleep_tracking": False, "morning_protocol": False, "build_mode": False},
        "phone_usage": {
            "daily_limit_min": 60,
            "warning_threshold_percent": 90,
            "default_block_min": 15,
            "min_block_min": 10,
            "max_block_min": 60,
        },
        "xp": {
            "bonus_xp_verified": 10,
            "bonus_xp_boss_block": 0,
            "xp_per_urge_resist": 10,
            "xp_per_task_complete": 20,
            "xp_per_exposure_task": 30,
            "xp_penalty_per_overage_min": 2,
            "xp_penalty_violation": 25,
            "decay_percent_per_day": 0,
        },
        "streaks": {"grace_days": 1, "streak_break_xp_penalty": 50},
        "circadian": {
            "target_wake_time": "08:00",
            "wake_window_min": 30,
            "base_hp": 70,
            "protocol_items": ["woke_on_time", "drank_water"],
        },
    },
    "standard": {},
    "hardcore": {
        "phone_usage": {
            "daily_limit_min": 20,
            "warning_threshold_percent": 70,
            "default_block_min": 45,
            "min_block_min": 20,
            "max_block_min": 180,
        },
        "xp": {
            "xp_per_block_min": 3,
            "bonus_xp_verified": 30,
            "bonus_xp_boss_block": 50,
            "xp_per_urge_resist": 25,
            "xp_per_task_complete": 40,
            "xp_per_exposure_task": 100,
            "xp_penalty_per_overage_min": 10,
            "xp_penalty_violation": 100,
            "enable_decay": True,
            "decay_percent_per_day": 2,
        },
        "streaks": {
            "require_one_block": True,
            "require_protocol": True,
            "streak_break_xp_penalty": 200,
        },
        "circadian": {
            "target_wake_time": "06:00",
            "wake_window_min": 10,
            "base_hp": 50,
            "hp_per_on_time_wake": 15,
            "hp_per_protocol_item": 10,
            "hp_per_rested_point": 5,
        },
    },
}

SETTINGS_PRESETS: dict[str, UserSettings] = {
    name: UserSettings.model_validate(overrides) for name, overrides in _PRESET_OVERRIDES.items()
}


def parse_settings(data: dict[str, Any] | None) -> UserSettings:
    """Strictly parse a stored settings blob. Raises InvalidSettingsError."""
    try:
        return UserSettings.model_validate(data or {})
    except ValidationError as exc:
        raise InvalidSettingsError(exc.errors(include_url=False)) from exc


def safe_parse_settings(data: dict[str, Any] | None) -> UserSettings:
    """Parse a stored blob, falling back to defaults when it is invalid."""
    try:
        return parse_settings(data)
    except InvalidSettingsError:
        return DEFAULT_SETTINGS


def merge_settings(current: UserSettings, partial: dict[str, Any]) -> UserSettings:
    """Apply a snake_case partial update section by section and re-validate the result."""
    merged = current.model_dump()
    for key, value in partial.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return parse_settings(merged)
