"""
Data Models Package

Pydantic models shared by every ledger backend.
"""

from mealbot.models.ledger import (
    Account,
    DebtTable,
    Record,
    SummaryRecord,
)
from mealbot.models.snapshot import (
    LegacySnapshot,
    SnapshotReceipt,
    SnapshotUser,
    format_timestamp,
)
from mealbot.models.audit import (
    LedgerEvent,
    LedgerEventBuilder,
    LedgerEventType,
    LedgerSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "DebtTable",
    "Record",
    "SummaryRecord",
    # Snapshot models
    "LegacySnapshot",
    "SnapshotReceipt",
    "SnapshotUser",
    "format_timestamp",
    # Audit models
    "LedgerEvent",
    "LedgerEventBuilder",
    "LedgerEventType",
    "LedgerSeverity",
]
