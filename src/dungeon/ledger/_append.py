"""Insert-once helpers shared by the XP and build ledgers."""

from __future__ import annotations

import logging
from typing import Any, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dungeon.db.models import BuildEvent, User, XpEvent
from dungeon.exceptions import NotFoundError, StoreConflictError

logger = logging.getLogger(__name__)

EventT = TypeVar("EventT", XpEvent, BuildEvent)


async def get_user(db: AsyncSession, user_id: str, *, for_update: bool = False) -> User:
    """Load the user aggregate, optionally row-locked for the rest of the transaction."""
    stmt = select(User).where(User.id == user_id).execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User", user_id)
    return user


async def find_by_dedupe_key(db: AsyncSession, model: type[EventT], dedupe_key: str) -> EventT | None:
    result = await db.execute(select(model).where(model.dedupe_key == dedupe_key))
    return result.scalar_one_or_none()


async def insert_once(db: AsyncSession, model: type[EventT], values: dict[str, Any]) -> tuple[EventT, bool]:
    """Insert a ledger row inside a SAVEPOINT.

    Returns ``(row, True)`` when this call inserted it, or ``(winner, False)``
    when a concurrent writer already committed the same dedupe key. Only the
    savepoint is rolled back, so the caller's transaction stays usable.
    """
    event = model(**values)
    try:
        async with db.begin_nested():
            db.add(event)
            await db.flush()
    except IntegrityError as exc:
        dedupe_key = values.get("dedupe_key")
        if dedupe_key is None:
            raise
        winner = await find_by_dedupe_key(db, model, dedupe_key)
        if winner is None:
            msg = f"{model.__tablename__} conflict on {dedupe_key!r} but no winning row found"
            raise StoreConflictError(msg) from exc
        logger.info("Dedupe race resolved on %s key=%s", model.__tablename__, dedupe_key)
        return winner, False
    return event, True
