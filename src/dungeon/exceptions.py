"""Typed failures raised by the core.

Idempotency outcomes (a deduped ledger write, an already-applied consequence)
are never raised; they come back as result values.
"""

from __future__ import annotations


class DungeonError(Exception):
    """Base class for all core errors."""


class NotFoundError(DungeonError):
    """A row required by the operation does not exist."""

    def __init__(self, entity: str, key: object) -> None:
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found: {key}")


class InvalidRangeError(DungeonError):
    """An input lies outside the bounds declared by policy."""

    def __init__(self, field: str, value: object, minimum: object, maximum: object) -> None:
        self.field = field
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        super().__init__(f"{field}={value} outside [{minimum}, {maximum}]")


class InvalidSettingsError(DungeonError):
    """A settings blob failed validation at the parse boundary."""

    def __init__(self, errors: list[dict]) -> None:
        self.errors = errors
        super().__init__(f"Invalid settings: {len(errors)} error(s)")


class StoreConflictError(DungeonError):
    """A concurrent writer won a unique constraint and its row could not be re-read."""


class ActiveBlockExistsError(DungeonError):
    """The user already has a phone-free block in progress."""

    def __init__(self, user_id: str, block_id: str | None = None) -> None:
        self.user_id = user_id
        self.block_id = block_id
        super().__init__(f"User {user_id} already has an active block")
