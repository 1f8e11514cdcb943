"""Pure point-policy functions.

Every function takes the user's settings snapshot as an explicit argument and
performs no I/O, so a result is reproducible from its inputs alone. Amounts
are whole integers; rounding happens here, before anything reaches a ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from enum import StrEnum

from dungeon.exceptions import InvalidRangeError
from dungeon.policy.settings import UserSettings

HP_MIN = 0
HP_MAX = 100


class TaskKind(StrEnum):
    STANDARD = "standard"
    EXPOSURE = "exposure"
    HABIT = "habit"


@dataclass(frozen=True)
class BlockContext:
    verified: bool = False
    boss_block: bool = False


@dataclass(frozen=True)
class BlockXpResult:
    base_xp: int
    endurance_bonus: int
    verified_bonus: int
    boss_bonus: int

    @property
    def bonus_xp(self) -> int:
        return self.endurance_bonus + self.verified_bonus + self.boss_bonus

    @property
    def total_xp(self) -> int:
        return self.base_xp + self.bonus_xp


@dataclass(frozen=True)
class HpModulation:
    original_delta: int
    delta: int
    applied: bool


@dataclass(frozen=True)
class HpCalculation:
    base_hp: int
    wake_bonus: int
    protocol_bonus: int
    rested_bonus: int
    total_hp: int


@dataclass(frozen=True)
class StreakEvaluation:
    maintained: bool
    grace_used: bool
    reason: str | None = None


def _round_half_up(value: float) -> int:
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


# ---------------------------------------------------------------------------
# Phone-free blocks
# ---------------------------------------------------------------------------


def get_block_duration_options(settings: UserSettings) -> dict[str, int]:
    """Inclusive bounds (and the default) for a new block's planned duration."""
    usage = settings.phone_usage
    return {
        "min": usage.min_block_min,
        "default": usage.default_block_min,
        "max": usage.max_block_min,
    }


def validate_block_duration(duration_min: int, settings: UserSettings) -> int:
    options = get_block_duration_options(settings)
    if not options["min"] <= duration_min <= options["max"]:
        raise InvalidRangeError("duration_min", duration_min, options["min"], options["max"])
    return duration_min


def endurance_bonus(duration_min: int, settings: UserSettings) -> int:
    """Saturating bonus for long blocks.

    Zero at or below the floor, the full bonus at or above the ceiling, and a
    linear ramp (rounded down) in between. Depends on duration alone.
    """
    rules = settings.xp
    floor_min = rules.endurance_floor_min
    ceiling_min = rules.endurance_ceiling_min
    if duration_min <= floor_min:
        return 0
    if duration_min >= ceiling_min:
        return rules.endurance_bonus_max
    return (rules.endurance_bonus_max * (duration_min - floor_min)) // (ceiling_min - floor_min)


def calculate_block_xp(
    duration_min: int,
    settings: UserSettings,
    context: BlockContext | None = None,
) -> BlockXpResult:
    """XP for a completed block of ``duration_min`` awarded minutes.

    Non-decreasing in duration and flat beyond ``max(block_xp_cap_min,
    endurance_ceiling_min)``.
    """
    if duration_min < 0:
        raise InvalidRangeError("duration_min", duration_min, 0, None)
    context = context or BlockContext()
    rules = settings.xp

    base_xp = min(duration_min, rules.block_xp_cap_min) * rules.xp_per_block_min
    return BlockXpResult(
        base_xp=base_xp,
        endurance_bonus=endurance_bonus(duration_min, settings),
        verified_bonus=rules.bonus_xp_verified if context.verified else 0,
        boss_bonus=rules.bonus_xp_boss_block if context.boss_block else 0,
    )


# ---------------------------------------------------------------------------
# Urges and tasks
# ---------------------------------------------------------------------------


def calculate_urge_xp(settings: UserSettings, *, in_active_block: bool = False) -> int:
    """Fixed reward for a resisted urge; zero while a block is already being rewarded."""
    if in_active_block:
        return 0
    return settings.xp.xp_per_urge_resist


def calculate_task_xp(kind: TaskKind | str, settings: UserSettings, duration_min: int | None = None) -> int:
    rules = settings.xp
    kind = TaskKind(kind)
    if kind is TaskKind.EXPOSURE:
        return rules.xp_per_exposure_task
    if kind is TaskKind.HABIT:
        if not duration_min or duration_min < 0:
            return 0
        return min(duration_min * rules.xp_per_habit_min, rules.habit_xp_cap)
    return rules.xp_per_task_complete


# ---------------------------------------------------------------------------
# Usage limits and penalties
# ---------------------------------------------------------------------------


def get_warning_threshold(settings: UserSettings) -> int:
    usage = settings.phone_usage
    return (usage.daily_limit_min * usage.warning_threshold_percent) // 100


def is_over_limit(usage_min: int, settings: UserSettings) -> bool:
    return usage_min > settings.phone_usage.daily_limit_min


def get_overage(usage_min: int, settings: UserSettings) -> int:
    return max(0, usage_min - settings.phone_usage.daily_limit_min)


def calculate_overage_penalty(overage_min: int, settings: UserSettings) -> int:
    """Signed (non-positive) XP delta for minutes over the daily limit."""
    return -max(0, overage_min) * settings.xp.xp_penalty_per_overage_min


def calculate_decay(current_xp: int, settings: UserSettings) -> int:
    """Signed (non-positive) daily decay, zero unless decay is enabled."""
    if not settings.xp.enable_decay or current_xp <= 0:
        return 0
    return -((current_xp * settings.xp.decay_percent_per_day) // 100)


# ---------------------------------------------------------------------------
# HP
# ---------------------------------------------------------------------------


def hp_band(current_hp: int) -> str:
    if current_hp >= 85:
        return "excellent"
    if current_hp >= 60:
        return "good"
    return "struggling"


def modulate_for_hp(delta: int, current_hp: int) -> HpModulation:
    """Scale positive rewards by the user's HP band. Penalties pass through unchanged."""
    if delta <= 0:
        return HpModulation(original_delta=delta, delta=delta, applied=False)
    band = hp_band(current_hp)
    if band == "excellent":
        return HpModulation(original_delta=delta, delta=delta, applied=False)
    factor = 85 if band == "good" else 70
    return HpModulation(original_delta=delta, delta=(delta * factor) // 100, applied=True)


def clamp_hp(value: int) -> int:
    return max(HP_MIN, min(HP_MAX, value))


def is_wake_on_time(actual: time, settings: UserSettings) -> bool:
    hour, minute = (int(part) for part in settings.circadian.target_wake_time.split(":"))
    variance = abs((actual.hour * 60 + actual.minute) - (hour * 60 + minute))
    return variance <= settings.circadian.wake_window_min


def calculate_sleep_hp(
    settings: UserSettings,
    *,
    woke_on_time: bool,
    protocol_items_completed: int,
    rested_rating: int,
) -> HpCalculation:
    """Morning HP from wake adherence, protocol items and a 1-5 rested rating."""
    if not 1 <= rested_rating <= 5:
        raise InvalidRangeError("rested_rating", rested_rating, 1, 5)
    max_items = len(settings.circadian.protocol_items)
    if not 0 <= protocol_items_completed <= max_items:
        raise InvalidRangeError("protocol_items_completed", protocol_items_completed, 0, max_items)

    rules = settings.circadian
    wake_bonus = rules.hp_per_on_time_wake if woke_on_time else 0
    protocol_bonus = protocol_items_completed * rules.hp_per_protocol_item
    rested_bonus = rested_rating * rules.hp_per_rested_point
    return HpCalculation(
        base_hp=rules.base_hp,
        wake_bonus=wake_bonus,
        protocol_bonus=protocol_bonus,
        rested_bonus=rested_bonus,
        total_hp=clamp_hp(rules.base_hp + wake_bonus + protocol_bonus + rested_bonus),
    )


# ---------------------------------------------------------------------------
# Streaks
# ---------------------------------------------------------------------------


def evaluate_streak_day(
    settings: UserSettings,
    *,
    under_limit: bool,
    completed_block: bool,
    completed_protocol: bool,
    grace_days_used: int = 0,
) -> StreakEvaluation:
    rules = settings.streaks
    reasons: list[str] = []
    if rules.require_under_limit and not under_limit:
        reasons.append("Over phone limit")
    if rules.require_one_block and not completed_block:
        reasons.append("No phone-free block")
    if rules.require_protocol and not completed_protocol:
        reasons.append("Protocol incomplete")

    if not reasons:
        return StreakEvaluation(maintained=True, grace_used=False)
    if grace_days_used < rules.grace_days:
        return StreakEvaluation(
            maintained=True,
            grace_used=True,
            reason=f"Grace day used ({', '.join(reasons)})",
        )
    return StreakEvaluation(maintained=False, grace_used=False, reason=", ".join(reasons))


# ---------------------------------------------------------------------------
# Build points
# ---------------------------------------------------------------------------


def points_for_phone_block(duration_min: int, settings: UserSettings) -> int:
    """One build point per minute, at least 1 and capped per block."""
    return max(1, min(duration_min, settings.build.max_points_per_block))


def points_for_urge(settings: UserSettings, *, completed_micro_task: bool = False) -> int:
    rules = settings.build
    return rules.urge_base_points + (rules.urge_micro_task_bonus if completed_micro_task else 0)


def points_for_task(settings: UserSettings, duration_min: int | None, xp_earned: int) -> int:
    duration_bonus = _round_half_up(duration_min / 5) if duration_min else 0
    xp_bonus = max(0, _round_half_up(xp_earned / 5))
    return settings.build.task_base_points + duration_bonus + xp_bonus
