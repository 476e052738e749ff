"""Shared fixtures: every contract test runs against each backend."""

import pytest

from mealbot.audit import LedgerAuditLogger
from mealbot.models.audit import LedgerEvent, LedgerEventType
from mealbot.services.storage import JsonLedger, SqlLedger


class RecordingAuditLogger(LedgerAuditLogger):
    """Keeps every event in memory instead of logging it."""

    def __init__(self):
        super().__init__("mealbot.tests")
        self.events: list[LedgerEvent] = []

    def log(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: LedgerEventType) -> list[LedgerEvent]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def audit_logger():
    return RecordingAuditLogger()


@pytest.fixture(params=["json", "sql-memory", "sql-file"])
def backend(request, tmp_path, audit_logger):
    """An un-initialized ledger plus the location to open it at."""
    if request.param == "json":
        return JsonLedger(retry_attempts=1, audit_logger=audit_logger), str(tmp_path / "db.json")
    if request.param == "sql-memory":
        return SqlLedger(audit_logger=audit_logger), ":memory:"
    return SqlLedger(audit_logger=audit_logger), str(tmp_path / "db.sqlite")


@pytest.fixture
def ledger(backend):
    store, location = backend
    store.init(location)
    yield store
    store.close()


@pytest.fixture(params=["json", "sql-file"])
def durable_backend(request, tmp_path, audit_logger):
    """Backends whose state survives close() and a fresh init()."""
    if request.param == "json":
        return JsonLedger(retry_attempts=1, audit_logger=audit_logger), str(tmp_path / "db.json")
    return SqlLedger(audit_logger=audit_logger), str(tmp_path / "db.sqlite")
