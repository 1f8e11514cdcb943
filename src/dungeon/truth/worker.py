"""Batch truth reconciliation for one calendar day.

The upstream fetch collaborator supplies verified minutes per user; this
runner computes and applies consequences for each user in its own session so
one user's failure never blocks the rest. Safe to re-run: classification is an
upsert and consequences are gated per user-day.

Usage: python -m dungeon.truth.worker --date 2026-03-10 --verified verified.json
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Mapping
from datetime import date, datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dungeon.config import get_settings
from dungeon.database import close_db, get_session_factory, init_db
from dungeon.dates import parse_date_only
from dungeon.logging_config import setup_logging
from dungeon.truth.schemas import ReconciliationSummary
from dungeon.truth.truth_service import apply_truth_consequences, compute_truth_check

logger = structlog.get_logger()


async def run_truth_reconciliation(
    session_factory: async_sessionmaker[AsyncSession],
    day: date,
    verified_minutes_by_user: Mapping[str, int | None],
    *,
    source: str | None = None,
    now: datetime | None = None,
) -> ReconciliationSummary:
    """Compute and apply truth consequences for every user in the mapping."""
    now = now or datetime.now(timezone.utc)
    summary = ReconciliationSummary(date=day)

    for user_id, verified in verified_minutes_by_user.items():
        try:
            async with session_factory() as session:
                await compute_truth_check(session, user_id, day, verified, source, now=now)
                summary.computed += 1
                result = await apply_truth_consequences(session, user_id, day, now=now)
        except Exception:
            logger.exception("truth_reconciliation_failed", user_id=user_id, date=day.isoformat())
            summary.failed.append(user_id)
            continue

        if result.applied:
            summary.applied += 1
        else:
            reason = result.reason or "unknown"
            summary.skipped[reason] = summary.skipped.get(reason, 0) + 1

    logger.info(
        "truth_reconciliation_complete",
        date=day.isoformat(),
        users=len(verified_minutes_by_user),
        computed=summary.computed,
        applied=summary.applied,
        skipped=summary.skipped,
        failed=len(summary.failed),
    )
    return summary


def load_verified_minutes(path: str) -> dict[str, int | None]:
    """Read a ``{user_id: minutes}`` JSON object produced by the verification fetcher."""
    with open(path, encoding="utf-8") as fh:
        data = json.load(fh)
    if not isinstance(data, dict):
        msg = f"{path}: expected a JSON object of user_id -> minutes"
        raise ValueError(msg)
    return {str(user_id): (None if minutes is None else int(minutes)) for user_id, minutes in data.items()}


async def main(argv: list[str] | None = None) -> ReconciliationSummary:
    parser = argparse.ArgumentParser(description="Run truth reconciliation for one day.")
    parser.add_argument("--date", required=True, type=parse_date_only, help="Local day, YYYY-MM-DD")
    parser.add_argument("--verified", required=True, help="Path to the verified-minutes JSON file")
    parser.add_argument("--source", default=None, help="Verification source name")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url, echo=settings.database_echo, pool_size=settings.database_pool_size)
    try:
        return await run_truth_reconciliation(
            get_session_factory(),
            args.date,
            load_verified_minutes(args.verified),
            source=args.source,
        )
    finally:
        await close_db()


if __name__ == "__main__":
    asyncio.run(main())
