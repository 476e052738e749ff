"""
Audit Models for Mealbot

Every mutation of a ledger and every snapshot flush produces one of
these events. They are only logged locally; the ledger itself is the
durable record.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class LedgerEventType(str, Enum):
    """Types of events we audit."""
    # Lifecycle
    STORE_OPENED = "store_opened"
    STORE_CLOSED = "store_closed"

    # Mutations
    USER_CREATED = "user_created"
    RECORD_CREATED = "record_created"
    MUTATION_REJECTED = "mutation_rejected"

    # Persistence
    SNAPSHOT_FLUSHED = "snapshot_flushed"
    SNAPSHOT_FLUSH_FAILED = "snapshot_flush_failed"
    SNAPSHOT_LOADED = "snapshot_loaded"


class LedgerSeverity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LedgerEvent(BaseModel):
    """A single audit event."""

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )
    event_type: LedgerEventType
    severity: LedgerSeverity = LedgerSeverity.INFO
    backend: Optional[str] = Field(
        default=None,
        description="Backend that emitted the event (e.g., 'json', 'sql')"
    )
    description: str
    details: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten into keyword arguments for structlog."""
        result = {
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "description": self.description,
        }
        if self.backend:
            result["backend"] = self.backend
        if self.details:
            result["details"] = self.details
        if self.error_message:
            result["error"] = self.error_message
        return result


class LedgerEventBuilder:
    """
    Convenience constructors for the events we emit.

    Usage:
        event = LedgerEventBuilder.user_created("json", "alice")
    """

    @staticmethod
    def store_opened(backend: str, location: str, users: int, receipts: int) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.STORE_OPENED,
            backend=backend,
            description=f"Ledger opened at {location}",
            details={"location": location, "users": users, "receipts": receipts},
        )

    @staticmethod
    def store_closed(backend: str, location: str) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.STORE_CLOSED,
            backend=backend,
            description=f"Ledger closed at {location}",
            details={"location": location},
        )

    @staticmethod
    def user_created(backend: str, username: str) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.USER_CREATED,
            backend=backend,
            description=f"User created: {username}",
            details={"username": username},
        )

    @staticmethod
    def record_created(backend: str, payer: str, recipient: str, credits: int) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.RECORD_CREATED,
            backend=backend,
            description=f"{payer} -> {recipient}: {credits}",
            details={"payer": payer, "recipient": recipient, "credits": credits},
        )

    @staticmethod
    def mutation_rejected(backend: str, operation: str, reason: str) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.MUTATION_REJECTED,
            severity=LedgerSeverity.WARNING,
            backend=backend,
            description=f"{operation} rejected",
            details={"operation": operation},
            error_message=reason,
        )

    @staticmethod
    def snapshot_flushed(path: str, size: int, coalesced: int) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.SNAPSHOT_FLUSHED,
            severity=LedgerSeverity.DEBUG,
            backend="json",
            description="Snapshot synced",
            details={"path": path, "bytes": size, "coalesced_signals": coalesced},
        )

    @staticmethod
    def snapshot_flush_failed(path: str, error: str) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.SNAPSHOT_FLUSH_FAILED,
            severity=LedgerSeverity.ERROR,
            backend="json",
            description="Snapshot sync failed",
            details={"path": path},
            error_message=error,
        )

    @staticmethod
    def snapshot_loaded(path: str, users: int, receipts: int) -> LedgerEvent:
        return LedgerEvent(
            event_type=LedgerEventType.SNAPSHOT_LOADED,
            backend="json",
            description=f"Snapshot loaded from {path}",
            details={"path": path, "users": users, "receipts": receipts},
        )
