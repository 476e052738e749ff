"""
Ledger Factory for Mealbot

Process bootstrap calls open_ledger() once and hands the result to every
collaborator (HTTP handlers, the static site's data export). There are no
module-level ledgers: each instance owns its lock, its worker and its
connection.
"""

from typing import Optional, Union

from mealbot.audit import LedgerAuditLogger, configure_logging
from mealbot.config import BackendType, LedgerSettings, get_settings
from mealbot.services.storage import JsonLedger, LedgerInterface, SqlLedger


def create_ledger(
    kind: Union[BackendType, str],
    queue_size: int = 10,
    retry_attempts: int = 3,
    audit_logger: Optional[LedgerAuditLogger] = None,
) -> LedgerInterface:
    """
    Build an un-initialized ledger of the given kind.

    Args:
        kind: Backend type (or its string value)
        queue_size: Flush queue capacity (in-memory backend only)
        retry_attempts: Attempts per snapshot write (in-memory backend only)
        audit_logger: Logger shared with other components, if any

    Raises:
        ValueError: If the backend type is unknown
    """
    kind = BackendType(kind)

    if kind == BackendType.JSON:
        return JsonLedger(
            queue_size=queue_size,
            retry_attempts=retry_attempts,
            audit_logger=audit_logger,
        )
    return SqlLedger(audit_logger=audit_logger)


def open_ledger(settings: Optional[LedgerSettings] = None) -> LedgerInterface:
    """
    Configure logging, build the configured backend and open it.

    The caller owns the result and must close() it (or use it as a
    context manager).
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_json)

    ledger = create_ledger(
        settings.backend,
        queue_size=settings.flush_queue_size,
        retry_attempts=settings.flush_retry_attempts,
    )
    ledger.init(settings.database_path)
    return ledger
