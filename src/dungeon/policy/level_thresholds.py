"""Level thresholds and computation.

Level ``n`` starts at ``9 * (n - 1) ** 2`` XP, i.e. ``floor(sqrt(xp) / 3) + 1``
evaluated against a fixed table so titles stay attached to their levels.
"""

from __future__ import annotations

LEVEL_TITLES: list[str] = [
    "Scroll Thrall",
    "Restless Squire",
    "Notification Dodger",
    "Focus Initiate",
    "Block Walker",
    "Urge Breaker",
    "Dungeon Delver",
    "Quiet Knight",
    "Deep Worker",
    "Feed Slayer",
    "Attention Warden",
    "Stillness Adept",
    "Monk of the Hour",
    "Keeper of Mornings",
    "Dopamine Tamer",
    "Iron Will",
    "Time Reclaimer",
    "Dungeon Lord",
    "Master of Hours",
    "Unplugged Sovereign",
]

LEVEL_THRESHOLDS: list[dict] = [
    {"level": n, "title": title, "cumulative": 9 * (n - 1) ** 2}
    for n, title in enumerate(LEVEL_TITLES, start=1)
]


def compute_level(total_xp: int) -> dict:
    """Compute level info from total XP.

    Negative totals (possible after penalties) sit at level 1.
    """
    current = LEVEL_THRESHOLDS[0]
    next_level = LEVEL_THRESHOLDS[1]

    for i in range(len(LEVEL_THRESHOLDS) - 1):
        if total_xp >= LEVEL_THRESHOLDS[i]["cumulative"]:
            current = LEVEL_THRESHOLDS[i]
            next_level = LEVEL_THRESHOLDS[i + 1]

    if total_xp >= LEVEL_THRESHOLDS[-1]["cumulative"]:
        current = LEVEL_THRESHOLDS[-1]
        next_level = LEVEL_THRESHOLDS[-1]

    xp_into_level = total_xp - current["cumulative"]
    xp_for_level = next_level["cumulative"] - current["cumulative"]

    # At max level, avoid division by zero
    if xp_for_level == 0:
        xp_for_level = 1

    return {
        "level": current["level"],
        "title": current["title"],
        "xp_into_level": xp_into_level,
        "xp_for_level": xp_for_level,
        "next_level": next_level["level"],
        "next_title": next_level["title"],
    }


def next_level_after(old_level: int, total_xp: int) -> int:
    """Level after a ledger mutation. Never lower than ``old_level``."""
    return max(old_level, compute_level(total_xp)["level"])


def hours_reclaimed(total_xp: int) -> float:
    """Display helper: one XP stands for one minute of reclaimed attention."""
    return round(max(total_xp, 0) / 60, 1)
