"""
Abstract Ledger Interface

DESIGN DECISION: Every backend implements the same small set of primitive,
time-bounded operations. Everything else ("all records", "records for a
user", the global summary, the debt table) is defined once here in terms
of those primitives, so both backends answer them identically.

Callers (the HTTP layer, process bootstrap) only ever see this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

from mealbot.models.ledger import Account, DebtTable, Record, SummaryRecord


# Largest limit accepted by every backend (fits a signed 64-bit SQL LIMIT)
UNLIMITED = 2**63 - 1

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def past() -> datetime:
    """Start of the sentinel window used by the unbounded queries."""
    return EPOCH


def future() -> datetime:
    """End of the sentinel window used by the unbounded queries."""
    return datetime.now(timezone.utc) + timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def validate_credits(credits: int) -> int:
    """Credits passed to create_record are unsigned integers."""
    if isinstance(credits, bool) or not isinstance(credits, int):
        raise ValueError(f"credits must be an integer, got {credits!r}")
    if credits < 0:
        raise ValueError(f"credits must not be negative, got {credits}")
    return credits


def validate_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 0:
        raise ValueError(f"limit must be a non-negative integer, got {limit!r}")
    return min(limit, UNLIMITED)


class LedgerInterface(ABC):
    """
    Abstract interface for ledger storage.

    Any backend (in-memory snapshot, SQL, ...) must implement the abstract
    methods. The concrete methods are shared and must not be overridden
    with different semantics.
    """

    backend_name: str = "abstract"

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @abstractmethod
    def init(self, location: str) -> None:
        """
        Open or create the store at `location`.

        Must be called exactly once before any other operation. Calling it
        again after close() reopens the state from the same location.

        Raises:
            StorageError: If the store cannot be opened or read
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """
        Flush all pending state durably and release resources.

        Operations after close() are not required to succeed.
        """
        pass

    @abstractmethod
    def get_legacy_database(self) -> bytes:
        """Serialize the whole store into the canonical snapshot format."""
        pass

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_user(self, username: str) -> Account:
        """
        Raises:
            NoUser: If no account has this name
        """
        pass

    @abstractmethod
    def get_user_by_id(self, user_id: int) -> Account:
        """
        Look up an account by its zero-based creation position.

        Raises:
            NoUser: If there is no account at that position
        """
        pass

    @abstractmethod
    def get_users(self) -> list[Account]:
        """All accounts, in creation order."""
        pass

    @abstractmethod
    def create_user(self, username: str) -> None:
        """
        Raises:
            UserExists: If the name is already taken
        """
        pass

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    @abstractmethod
    def create_record(self, payer: str, recipient: str, credits: int) -> None:
        """
        Record that `payer` owes `recipient` `credits` more.

        Args:
            payer: Account that paid
            recipient: Account that received
            credits: Unsigned number of credits

        Raises:
            PayerDoesNotExist: If the payer account is missing
            RecipientDoesNotExist: If the recipient account is missing
            ValueError: If credits is negative
        """
        pass

    @abstractmethod
    def get_timebound_records(
        self,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        """
        Up to `limit` records dated within [start, end], newest first.

        To paginate, pass the date of the last returned record as the
        `end` of the next call.
        """
        pass

    @abstractmethod
    def get_timebound_records_for_user(
        self,
        user: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        """
        Up to `limit` records involving `user` dated within [start, end],
        newest first.

        Raises:
            NoUser: If `user` does not exist
        """
        pass

    @abstractmethod
    def get_timebound_records_between_users(
        self,
        user1: str,
        user2: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        """
        Up to `limit` records between `user1` and `user2` (either
        direction) dated within [start, end], newest first.

        Raises:
            NoUser: If either user does not exist
        """
        pass

    # -------------------------------------------------------------------------
    # Summaries
    # -------------------------------------------------------------------------

    @abstractmethod
    def get_timebound_summary_for_user(
        self,
        user: str,
        start: datetime,
        end: datetime,
    ) -> dict[str, SummaryRecord]:
        """
        Per-counterparty debts of `user`, using only records dated within
        [start, end].

        The result holds an entry for every known account, zero if the
        pair never traded.

        Raises:
            NoUser: If `user` does not exist
        """
        pass

    # -------------------------------------------------------------------------
    # Derived queries
    # -------------------------------------------------------------------------

    def get_all_records(self) -> list[Record]:
        return self.get_timebound_records(UNLIMITED, past(), future())

    def get_records(self, limit: int) -> list[Record]:
        """The last `limit` records."""
        return self.get_timebound_records(limit, past(), future())

    def get_all_records_for_user(self, user: str) -> list[Record]:
        return self.get_timebound_records_for_user(user, UNLIMITED, past(), future())

    def get_records_for_user(self, user: str, limit: int) -> list[Record]:
        return self.get_timebound_records_for_user(user, limit, past(), future())

    def get_all_records_between_users(self, user1: str, user2: str) -> list[Record]:
        return self.get_timebound_records_between_users(
            user1, user2, UNLIMITED, past(), future()
        )

    def get_records_between_users(
        self,
        user1: str,
        user2: str,
        limit: int,
    ) -> list[Record]:
        return self.get_timebound_records_between_users(
            user1, user2, limit, past(), future()
        )

    def get_summary_for_user(self, user: str) -> dict[str, SummaryRecord]:
        return self.get_timebound_summary_for_user(user, past(), future())

    def get_summary(self) -> dict[str, dict[str, SummaryRecord]]:
        """
        Global summary: for every known account, its per-counterparty
        summary.
        """
        return {
            account.username: self.get_summary_for_user(account.username)
            for account in self.get_users()
        }

    def get_debt_table(self) -> DebtTable:
        """
        Square matrix of net debts, indexed by creation position.

        Built from the global summary, so it is a signed sum over every
        receipt and always anti-symmetric.
        """
        users = [account.username for account in self.get_users()]
        summary = self.get_summary()

        labels = {name: index for index, name in enumerate(users)}
        debts = [[0] * len(users) for _ in users]
        for debtor, row in summary.items():
            for creditor, record in row.items():
                if debtor in labels and creditor in labels and debtor != creditor:
                    debts[labels[debtor]][labels[creditor]] = record.net_credits

        return DebtTable(labels=labels, debts=debts)

    def __enter__(self) -> "LedgerInterface":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class LedgerError(Exception):
    """
    Base exception for ledger operations.

    `client_error` tells the HTTP layer whether the caller is at fault;
    `code` is a coarse diagnostic that is safe to return to untrusted
    callers (the message is not).
    """
    code = "ledger_error"
    client_error = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__.strip())


class NoUser(LedgerError):
    """No such user."""
    code = "no_user"
    client_error = True


class PayerDoesNotExist(NoUser):
    """Payer does not exist."""
    code = "payer_does_not_exist"


class RecipientDoesNotExist(NoUser):
    """Recipient does not exist."""
    code = "recipient_does_not_exist"


class UserExists(LedgerError):
    """User already exists."""
    code = "user_exists"
    client_error = True


class LedgerNotImplementedError(LedgerError):
    """Function is not implemented."""
    code = "not_implemented"


class StorageError(LedgerError):
    """Persistence or driver failure."""
    code = "storage_error"


class SnapshotError(StorageError):
    """A snapshot could not be serialized or deserialized."""
    code = "snapshot_error"


class NoActiveDatabase(StorageError):
    """There is no active database connection."""
    code = "no_active_database"
