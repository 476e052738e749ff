"""Services package."""

from mealbot.services.storage import (
    JsonLedger,
    LedgerError,
    LedgerInterface,
    NoUser,
    PayerDoesNotExist,
    RecipientDoesNotExist,
    SqlLedger,
    StorageError,
    UserExists,
)

__all__ = [
    "JsonLedger",
    "LedgerError",
    "LedgerInterface",
    "NoUser",
    "PayerDoesNotExist",
    "RecipientDoesNotExist",
    "SqlLedger",
    "StorageError",
    "UserExists",
]
