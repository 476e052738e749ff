"""Audit logging package."""

from mealbot.audit.logger import LedgerAuditLogger, configure_logging

__all__ = ["LedgerAuditLogger", "configure_logging"]
