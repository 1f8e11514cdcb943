"""Discipline Dungeon core: event ledger, policy engine and truth reconciliation."""

__version__ = "0.1.0"
