"""Build-point ledger and blueprint progress.

Build points are a second currency with their own ledger and aggregate
(``users.total_build_points``). Construction progress is not stored per
segment: it is projected from the aggregate total against the blueprint's
ordered segment costs, so it cannot drift from the ledger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.db.models import BuildEvent, BuildEventType
from dungeon.exceptions import InvalidRangeError
from dungeon.ledger._append import find_by_dedupe_key, get_user, insert_once
from dungeon.ledger.schemas import BlueprintProgress, BuildResult, LedgerEventOut, SegmentProgress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlueprintSegment:
    key: str
    label: str
    phase: str
    cost: int


@dataclass(frozen=True)
class Blueprint:
    id: str
    name: str
    segments: tuple[BlueprintSegment, ...]

    @property
    def total_cost(self) -> int:
        return sum(seg.cost for seg in self.segments)


CATHEDRAL_V1 = Blueprint(
    id="cathedral_cologne_v1",
    name="Cologne Cathedral",
    segments=(
        BlueprintSegment("foundation", "Foundation trenches", "groundwork", 300),
        BlueprintSegment("choir_footings", "Choir footings", "groundwork", 450),
        BlueprintSegment("choir_walls", "Choir walls", "choir", 800),
        BlueprintSegment("choir_vault", "Choir vault", "choir", 1000),
        BlueprintSegment("nave_piers", "Nave piers", "nave", 1200),
        BlueprintSegment("nave_vault", "Nave vault", "nave", 1500),
        BlueprintSegment("transept", "Transept", "nave", 1500),
        BlueprintSegment("south_tower", "South tower", "towers", 2200),
        BlueprintSegment("north_tower", "North tower", "towers", 2200),
        BlueprintSegment("spires", "Spires and finials", "towers", 3000),
    ),
)

BLUEPRINTS: dict[str, Blueprint] = {CATHEDRAL_V1.id: CATHEDRAL_V1}
DEFAULT_BLUEPRINT_ID = CATHEDRAL_V1.id


def get_blueprint(blueprint_id: str | None = None) -> Blueprint:
    return BLUEPRINTS[blueprint_id or DEFAULT_BLUEPRINT_ID]


def compute_blueprint_progress(total_points: int, blueprint: Blueprint) -> BlueprintProgress:
    """Fill segments in order with ``total_points`` and report where construction stands."""
    remaining = max(total_points, 0)
    segments: list[SegmentProgress] = []
    current: SegmentProgress | None = None

    for seg in blueprint.segments:
        applied = min(remaining, seg.cost)
        remaining -= applied
        progress = SegmentProgress(
            key=seg.key,
            label=seg.label,
            phase=seg.phase,
            cost=seg.cost,
            points_applied=applied,
            completed=applied >= seg.cost,
        )
        segments.append(progress)
        if current is None and not progress.completed:
            current = progress

    applied_total = sum(s.points_applied for s in segments)
    total_cost = blueprint.total_cost
    completion_pct = 0 if total_cost == 0 else (applied_total * 100) // total_cost
    current_segment_pct = 100 if current is None else (current.points_applied * 100) // current.cost

    return BlueprintProgress(
        blueprint_id=blueprint.id,
        total_points=total_points,
        total_cost=total_cost,
        completion_pct=completion_pct,
        current_segment=current,
        current_segment_pct=current_segment_pct,
        segments=segments,
    )


async def record_build_event(
    db: AsyncSession,
    user_id: str,
    type: BuildEventType | str,  # noqa: A002
    points: int,
    *,
    description: str | None = None,
    related_entity_type: str | None = None,
    related_entity_id: str | None = None,
    dedupe_key: str | None = None,
    details: dict[str, Any] | None = None,
    blueprint_id: str | None = None,
    now: datetime | None = None,
) -> BuildResult:
    """Append build points; same exactly-once contract as the XP ledger."""
    if isinstance(points, bool) or not isinstance(points, int) or points <= 0:
        raise InvalidRangeError("points", points, 1, None)
    event_type = BuildEventType(type)
    blueprint = get_blueprint(blueprint_id)

    if dedupe_key is not None:
        existing = await find_by_dedupe_key(db, BuildEvent, dedupe_key)
        if existing is not None:
            logger.debug("Build dedupe hit key=%s", dedupe_key)
            return await _replay(db, existing)

    user = await get_user(db, user_id, for_update=True)
    now = now or datetime.now(timezone.utc)

    event, created = await insert_once(
        db,
        BuildEvent,
        {
            "user_id": user_id,
            "type": event_type.value,
            "delta": points,
            "related_entity_type": related_entity_type,
            "related_entity_id": related_entity_id,
            "description": description,
            "dedupe_key": dedupe_key,
            "details": details,
            "blueprint_id": blueprint.id,
            "created_at": now,
        },
    )
    if not created:
        return await _replay(db, event)

    user.total_build_points += points
    user.updated_at = now
    await db.flush()

    return BuildResult(
        event=LedgerEventOut.model_validate(event),
        new_total=user.total_build_points,
        progress=compute_blueprint_progress(user.total_build_points, blueprint),
    )


async def _replay(db: AsyncSession, event: BuildEvent) -> BuildResult:
    user = await get_user(db, event.user_id)
    return BuildResult(
        event=LedgerEventOut.model_validate(event),
        new_total=user.total_build_points,
        deduped=True,
        progress=compute_blueprint_progress(user.total_build_points, get_blueprint(event.blueprint_id)),
    )


async def get_project_status(db: AsyncSession, user_id: str, blueprint_id: str | None = None) -> BlueprintProgress:
    user = await get_user(db, user_id)
    return compute_blueprint_progress(user.total_build_points, get_blueprint(blueprint_id))
