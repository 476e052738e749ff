"""
Storage Services Package

Provides the abstract ledger interface and its two implementations:
an in-memory ledger with JSON snapshots and a relational ledger.
"""

from mealbot.services.storage.interface import (
    UNLIMITED,
    LedgerError,
    LedgerInterface,
    LedgerNotImplementedError,
    NoActiveDatabase,
    NoUser,
    PayerDoesNotExist,
    RecipientDoesNotExist,
    SnapshotError,
    StorageError,
    UserExists,
)
from mealbot.services.storage.json_ledger import JsonLedger
from mealbot.services.storage.sql_ledger import SqlLedger

__all__ = [
    # Interface
    "LedgerInterface",
    "UNLIMITED",
    # Exceptions
    "LedgerError",
    "LedgerNotImplementedError",
    "NoActiveDatabase",
    "NoUser",
    "PayerDoesNotExist",
    "RecipientDoesNotExist",
    "SnapshotError",
    "StorageError",
    "UserExists",
    # Implementations
    "JsonLedger",
    "SqlLedger",
]
