"""
Audit Logger

DESIGN DECISION: Every mutation and every snapshot flush is logged.
This provides:
1. Traceability of who was charged what and when
2. Visibility into background flush failures, which never reach a caller

The audit logger never raises: a logging failure must not fail a ledger
operation or kill the flush worker.
"""

import logging

import structlog

from mealbot.models.audit import LedgerEvent, LedgerEventBuilder, LedgerSeverity


def _processors(json_output: bool) -> list:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """
    Configure structlog on top of the standard library logger.

    Safe to call more than once; the last call wins for loggers created
    afterwards.
    """
    logging.basicConfig(format="%(message)s", level=getattr(logging, level))
    logging.getLogger("mealbot").setLevel(getattr(logging, level))

    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Defaults until process bootstrap applies its settings
structlog.configure(
    processors=_processors(json_output=True),
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class LedgerAuditLogger:
    """
    Central audit logging service for ledger backends.

    Each backend owns one instance; pass a shared one in to route all
    events through the same bound logger.
    """

    def __init__(self, name: str = "mealbot.ledger"):
        self._logger = structlog.get_logger(name)

    def log(self, event: LedgerEvent) -> None:
        """Log an audit event at the level matching its severity."""
        log_dict = event.to_log_dict()
        try:
            if event.severity == LedgerSeverity.ERROR:
                self._logger.error("ledger_event", **log_dict)
            elif event.severity == LedgerSeverity.WARNING:
                self._logger.warning("ledger_event", **log_dict)
            elif event.severity == LedgerSeverity.DEBUG:
                self._logger.debug("ledger_event", **log_dict)
            else:
                self._logger.info("ledger_event", **log_dict)
        except Exception as e:
            logging.getLogger(__name__).error("Failed to log ledger event: %s", e)

    def log_store_opened(self, backend: str, location: str, users: int, receipts: int) -> None:
        self.log(LedgerEventBuilder.store_opened(backend, location, users, receipts))

    def log_store_closed(self, backend: str, location: str) -> None:
        self.log(LedgerEventBuilder.store_closed(backend, location))

    def log_user_created(self, backend: str, username: str) -> None:
        self.log(LedgerEventBuilder.user_created(backend, username))

    def log_record_created(
        self,
        backend: str,
        payer: str,
        recipient: str,
        credits: int,
    ) -> None:
        self.log(LedgerEventBuilder.record_created(backend, payer, recipient, credits))

    def log_mutation_rejected(
        self,
        backend: str,
        operation: str,
        reason: str,
    ) -> None:
        """Log a create call that failed validation (missing or duplicate user)."""
        self.log(LedgerEventBuilder.mutation_rejected(backend, operation, reason))

    def log_snapshot_flushed(self, path: str, size: int, coalesced: int) -> None:
        self.log(LedgerEventBuilder.snapshot_flushed(path, size, coalesced))

    def log_snapshot_flush_failed(self, path: str, error: str) -> None:
        self.log(LedgerEventBuilder.snapshot_flush_failed(path, error))

    def log_snapshot_loaded(self, path: str, users: int, receipts: int) -> None:
        self.log(LedgerEventBuilder.snapshot_loaded(path, users, receipts))

