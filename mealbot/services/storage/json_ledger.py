"""
In-Memory Ledger with Durable Snapshots

DESIGN DECISION: The whole ledger lives in memory as two append-only
lists (users, receipts). Mutations are applied synchronously under an
exclusive lock and then signal a background worker, which writes a full
snapshot to disk. Callers never wait on the disk except in close().

Snapshot writes are crash-safe: the state is written to a temporary file
in the destination directory, fsync'd, and atomically renamed over the
destination. The destination path is never written directly.

The worker serializes under the shared lock and writes after releasing
it, so a slow or retrying write never blocks the ledger.

TRADEOFFS:
- Every flush rewrites the whole file (fine for a meal ledger)
- A failed flush is logged, not raised; close() always forces one
  final flush
"""

import os
import queue
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError
from tenacity import Retrying, stop_after_attempt, wait_exponential

from mealbot.audit import LedgerAuditLogger
from mealbot.models.ledger import Account, Record, SummaryRecord
from mealbot.models.snapshot import LegacySnapshot, SnapshotReceipt, SnapshotUser
from mealbot.services.storage.interface import (
    LedgerInterface,
    NoActiveDatabase,
    NoUser,
    PayerDoesNotExist,
    RecipientDoesNotExist,
    SnapshotError,
    StorageError,
    UserExists,
    as_utc,
    utcnow,
    validate_credits,
    validate_limit,
)
from mealbot.services.storage.locking import ReadWriteLock


TEMP_PREFIX = "MealBotServe"

# Queue messages
_FLUSH = "flush"
_STOP = "stop"


class JsonLedger(LedgerInterface):
    """
    Ledger held in memory and snapshotted to a JSON file.

    One background worker thread per instance drains a bounded queue of
    flush signals. Bursts of mutations coalesce into a single write.
    """

    backend_name = "json"

    def __init__(
        self,
        queue_size: int = 10,
        retry_attempts: int = 3,
        audit_logger: Optional[LedgerAuditLogger] = None,
    ):
        self._queue_size = queue_size
        self._retry_attempts = retry_attempts
        self._audit = audit_logger or LedgerAuditLogger()

        self._path: Optional[Path] = None
        self._lock = ReadWriteLock()
        self._users: list[SnapshotUser] = []
        self._receipts: list[SnapshotReceipt] = []
        self._ids: dict[str, int] = {}

        self._signals: Optional[queue.Queue] = None
        self._worker: Optional[threading.Thread] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self, location: str) -> None:
        """Load the snapshot at `location` if it exists, then start the worker."""
        if self._worker is not None:
            raise StorageError("Ledger is already open")

        path = Path(location)
        snapshot = self._load(path)

        with self._lock.write():
            self._path = path
            self._users = list(snapshot.users)
            self._receipts = list(snapshot.receipts)
            self._ids = {user.upn: user.id for user in self._users}

        self._signals = queue.Queue(maxsize=self._queue_size)
        self._worker = threading.Thread(
            target=self._run,
            name=f"mealbot-flush-{path.name}",
            daemon=True,
        )
        self._worker.start()

        self._audit.log_store_opened(
            self.backend_name, str(path), len(self._users), len(self._receipts)
        )

    def close(self) -> None:
        """Queue a final flush and wait for the worker to finish it."""
        with self._lock.write():
            if self._worker is None:
                return
            worker, signals = self._worker, self._signals
            self._worker = None
            self._signals = None

        signals.put(_FLUSH)
        signals.put(_STOP)
        worker.join()

        self._audit.log_store_closed(self.backend_name, str(self._path))

    def get_legacy_database(self) -> bytes:
        with self._lock.read():
            self._require_open()
            return self._snapshot().to_json_bytes()

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def get_user(self, username: str) -> Account:
        with self._lock.read():
            self._require_open()
            user = self._lookup(username)
            return Account(username=user.upn)

    def get_user_by_id(self, user_id: int) -> Account:
        with self._lock.read():
            self._require_open()
            if not 0 <= user_id < len(self._users):
                raise NoUser(f"No user with id {user_id}")
            return Account(username=self._users[user_id].upn)

    def get_users(self) -> list[Account]:
        with self._lock.read():
            self._require_open()
            return [Account(username=user.upn) for user in self._users]

    def create_user(self, username: str) -> None:
        account = Account(username=username)

        with self._lock.write():
            self._require_open()
            if account.username in self._ids:
                self._audit.log_mutation_rejected(
                    self.backend_name, "create_user", f"{account.username} exists"
                )
                raise UserExists(f"User already exists: {account.username}")

            user = SnapshotUser(id=len(self._users), upn=account.username)
            self._users.append(user)
            self._ids[user.upn] = user.id
            self._signal_flush()

        self._audit.log_user_created(self.backend_name, account.username)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create_record(self, payer: str, recipient: str, credits: int) -> None:
        credits = validate_credits(credits)

        with self._lock.write():
            self._require_open()
            if payer not in self._ids:
                self._audit.log_mutation_rejected(
                    self.backend_name, "create_record", f"payer {payer} missing"
                )
                raise PayerDoesNotExist(f"Payer does not exist: {payer}")
            if recipient not in self._ids:
                self._audit.log_mutation_rejected(
                    self.backend_name, "create_record", f"recipient {recipient} missing"
                )
                raise RecipientDoesNotExist(f"Recipient does not exist: {recipient}")

            self._receipts.append(
                SnapshotReceipt(
                    payer=self._ids[payer],
                    payee=self._ids[recipient],
                    num_meals=credits,
                    date_time=utcnow(),
                )
            )
            self._signal_flush()

        self._audit.log_record_created(self.backend_name, payer, recipient, credits)

    def get_timebound_records(
        self,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        with self._lock.read():
            self._require_open()
            return self._collect(limit, start, end, lambda r: True)

    def get_timebound_records_for_user(
        self,
        user: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        with self._lock.read():
            self._require_open()
            uid = self._lookup(user).id
            return self._collect(
                limit, start, end, lambda r: uid in (r.payer, r.payee)
            )

    def get_timebound_records_between_users(
        self,
        user1: str,
        user2: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        with self._lock.read():
            self._require_open()
            pair = {self._lookup(user1).id, self._lookup(user2).id}
            return self._collect(
                limit, start, end, lambda r: {r.payer, r.payee} == pair
            )

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    def get_timebound_summary_for_user(
        self,
        user: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, SummaryRecord]:
        with self._lock.read():
            self._require_open()
            uid = self._lookup(user).id
            summary = {u.upn: SummaryRecord() for u in self._users}

            for receipt in self._in_window(start, end):
                if receipt.payer == uid:
                    other = self._users[receipt.payee].upn
                    summary[other].add_as_payer(receipt.num_meals)
                if receipt.payee == uid:
                    other = self._users[receipt.payer].upn
                    summary[other].add_as_recipient(receipt.num_meals)

            return summary

    # -------------------------------------------------------------------------
    # Internals (callers hold the lock)
    # -------------------------------------------------------------------------

    def _require_open(self) -> None:
        if self._worker is None:
            raise NoActiveDatabase()

    def _lookup(self, username: str) -> SnapshotUser:
        uid = self._ids.get(username)
        if uid is None:
            raise NoUser(f"No such user: {username}")
        return self._users[uid]

    def _in_window(self, start: datetime, end: datetime) -> Iterator[SnapshotReceipt]:
        start, end = as_utc(start), as_utc(end)
        for receipt in self._receipts:
            if start <= receipt.date_time <= end:
                yield receipt

    def _collect(self, limit, start, end, predicate) -> list[Record]:
        limit = validate_limit(limit)
        if limit == 0:
            return []

        # Newest first; equal timestamps keep the later insertion first
        matches = [r for r in self._in_window(start, end) if predicate(r)]
        matches.reverse()
        matches.sort(key=lambda r: r.date_time, reverse=True)

        return [self._to_record(r) for r in matches[:limit]]

    def _to_record(self, receipt: SnapshotReceipt) -> Record:
        return Record(
            payer=self._users[receipt.payer].upn,
            recipient=self._users[receipt.payee].upn,
            credits=receipt.num_meals,
            date=receipt.date_time,
        )

    def _snapshot(self) -> LegacySnapshot:
        return LegacySnapshot(users=list(self._users), receipts=list(self._receipts))

    def _signal_flush(self) -> None:
        try:
            self._signals.put_nowait(_FLUSH)
        except queue.Full:
            # A queued signal is already waiting; it will see this mutation
            pass

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _load(self, path: Path) -> LegacySnapshot:
        if not path.exists():
            return LegacySnapshot()

        try:
            data = path.read_bytes()
        except OSError as e:
            raise StorageError(f"Failed to read snapshot {path}: {e}") from e

        try:
            snapshot = LegacySnapshot.from_json_bytes(data)
        except ValidationError as e:
            raise SnapshotError(f"Invalid snapshot {path}: {e}") from e

        self._audit.log_snapshot_loaded(
            str(path), len(snapshot.users), len(snapshot.receipts)
        )
        return snapshot

    def _run(self) -> None:
        signals = self._signals
        while True:
            if signals.get() == _STOP:
                break
            if self._sync(signals):
                break

    def _sync(self, signals: queue.Queue) -> bool:
        """
        Write the current state to disk.

        The lock is held SHARED only while serializing; the file write and
        its retries run without it. Returns True if a stop request was
        drained along with the pending flush signals.
        """
        stopping = False
        coalesced = 0

        with self._lock.read():
            while True:
                try:
                    extra = signals.get_nowait()
                except queue.Empty:
                    break
                if extra == _STOP:
                    stopping = True
                else:
                    coalesced += 1

            try:
                data = self._snapshot().to_json_bytes()
            except Exception as e:
                self._audit.log_snapshot_flush_failed(str(self._path), str(e))
                return stopping

        try:
            self._write_with_retry(data)
        except Exception as e:
            # The worker must survive; the next mutation retries the flush
            self._audit.log_snapshot_flush_failed(str(self._path), str(e))
        else:
            self._audit.log_snapshot_flushed(str(self._path), len(data), coalesced)

        return stopping

    def _write_with_retry(self, data: bytes) -> None:
        for attempt in Retrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=0.05, max=1),
            reraise=True,
        ):
            with attempt:
                self._replace_file(data)

    def _replace_file(self, data: bytes) -> None:
        """Atomically replace the snapshot file with `data`."""
        directory = self._path.parent
        fd, temp_path = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=directory)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self._path)
        except BaseException:
            try:
                os.unlink(temp_path)
            except FileNotFoundError:
                pass
            raise
