"""
Relational Ledger Implementation

DESIGN DECISION: Accounts and receipts are rows in two tables and every
query is a parameterized SQL statement. Atomicity comes from the
database's own transactions; there is no background worker and no
in-process lock.

Works with SQLite out of the box (a path, or ':memory:') and with any
SQLAlchemy URL.
"""

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import Column, String, and_, case, event, func, or_
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Field, Session, SQLModel, create_engine, select

from mealbot.audit import LedgerAuditLogger
from mealbot.models.ledger import Account, Record, SummaryRecord
from mealbot.models.snapshot import LegacySnapshot, SnapshotReceipt, SnapshotUser
from mealbot.services.storage.interface import (
    EPOCH,
    LedgerInterface,
    NoActiveDatabase,
    NoUser,
    PayerDoesNotExist,
    RecipientDoesNotExist,
    StorageError,
    UserExists,
    as_utc,
    utcnow,
    validate_credits,
    validate_limit,
)


class UserRow(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(sa_column=Column(String, unique=True, nullable=False))


class ReceiptRow(SQLModel, table=True):
    __tablename__ = "receipts"
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    date: int = Field(index=True, description="Unix time in microseconds (UTC)")
    credits: int
    payer: str = Field(foreign_key="users.username", index=True)
    recipient: str = Field(foreign_key="users.username", index=True)


def to_timestamp(value: datetime) -> int:
    return (as_utc(value) - EPOCH) // timedelta(microseconds=1)


def from_timestamp(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


def database_url(location: str) -> str:
    """Map a bare path or ':memory:' to a SQLite URL."""
    if "://" in location:
        return location
    if location == ":memory:":
        return "sqlite://"
    return f"sqlite:///{location}"


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqlLedger(LedgerInterface):
    """
    SQLModel implementation of the ledger.

    Each operation runs in its own session; failed writes are rolled back
    before the error reaches the caller.
    """

    backend_name = "sql"

    def __init__(
        self,
        audit_logger: Optional[LedgerAuditLogger] = None,
        echo: bool = False,
    ):
        self._audit = audit_logger or LedgerAuditLogger()
        self._echo = echo
        self._engine: Optional[Engine] = None
        self._location: Optional[str] = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self, location: str) -> None:
        if self._engine is not None:
            raise StorageError("Ledger is already open")

        url = database_url(location)
        options = {"echo": self._echo}
        if url.startswith("sqlite"):
            options["connect_args"] = {"check_same_thread": False}
            if url == "sqlite://":
                # One shared connection, or every session sees an empty database
                options["poolclass"] = StaticPool

        try:
            engine = create_engine(url, **options)
            if engine.dialect.name == "sqlite":
                event.listen(engine, "connect", _enable_foreign_keys)
            SQLModel.metadata.create_all(
                engine, tables=[UserRow.__table__, ReceiptRow.__table__]
            )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to open database {location}: {e}") from e

        self._engine = engine
        self._location = location

        with self._session() as session:
            users = session.exec(select(func.count()).select_from(UserRow)).one()
            receipts = session.exec(select(func.count()).select_from(ReceiptRow)).one()
        self._audit.log_store_opened(self.backend_name, location, users, receipts)

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._audit.log_store_closed(self.backend_name, self._location)

    def get_legacy_database(self) -> bytes:
        """
        Rebuild the snapshot layout from rows.

        Users get dense positional ids in creation order; these ids exist
        only in the export.
        """
        with self._session() as session:
            # Receipts first: every user they reference is already committed,
            # so the later user read always covers them
            rows = session.exec(select(ReceiptRow).order_by(ReceiptRow.id)).all()
            names = self._usernames(session)

        lookup = {name: index for index, name in enumerate(names)}
        snapshot = LegacySnapshot(
            users=[SnapshotUser(id=i, upn=name) for i, name in enumerate(names)],
            receipts=[
                SnapshotReceipt(
                    payer=lookup[row.payer],
                    payee=lookup[row.recipient],
                    num_meals=row.credits,
                    date_time=from_timestamp(row.date),
                )
                for row in rows
            ],
        )
        return snapshot.to_json_bytes()

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def get_user(self, username: str) -> Account:
        with self._session() as session:
            if not self._exists(session, username):
                raise NoUser(f"No such user: {username}")
        return Account(username=username)

    def get_user_by_id(self, user_id: int) -> Account:
        if user_id < 0:
            raise NoUser(f"No user with id {user_id}")

        with self._session() as session:
            name = session.exec(
                select(UserRow.username)
                .order_by(UserRow.id)
                .offset(user_id)
                .limit(1)
            ).first()

        if name is None:
            raise NoUser(f"No user with id {user_id}")
        return Account(username=name)

    def get_users(self) -> list[Account]:
        with self._session() as session:
            names = self._usernames(session)
        return [Account(username=name) for name in names]

    def create_user(self, username: str) -> None:
        account = Account(username=username)

        with self._session() as session:
            if self._exists(session, account.username):
                self._audit.log_mutation_rejected(
                    self.backend_name, "create_user", f"{account.username} exists"
                )
                raise UserExists(f"User already exists: {account.username}")

            try:
                session.add(UserRow(username=account.username))
                session.commit()
            except IntegrityError as e:
                # Lost a race with a concurrent create_user
                session.rollback()
                raise UserExists(f"User already exists: {account.username}") from e

        self._audit.log_user_created(self.backend_name, account.username)

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create_record(self, payer: str, recipient: str, credits: int) -> None:
        credits = validate_credits(credits)

        with self._session() as session:
            # Optimize for good callers: insert first, diagnose on failure
            try:
                session.add(
                    ReceiptRow(
                        date=to_timestamp(utcnow()),
                        credits=credits,
                        payer=payer,
                        recipient=recipient,
                    )
                )
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                if not self._exists(session, payer):
                    self._audit.log_mutation_rejected(
                        self.backend_name, "create_record", f"payer {payer} missing"
                    )
                    raise PayerDoesNotExist(f"Payer does not exist: {payer}") from e
                if not self._exists(session, recipient):
                    self._audit.log_mutation_rejected(
                        self.backend_name, "create_record", f"recipient {recipient} missing"
                    )
                    raise RecipientDoesNotExist(
                        f"Recipient does not exist: {recipient}"
                    ) from e
                raise

        self._audit.log_record_created(self.backend_name, payer, recipient, credits)

    def get_timebound_records(
        self,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        return self._query_records(limit, start, end)

    def get_timebound_records_for_user(
        self,
        user: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        self._require_users(user)
        return self._query_records(
            limit,
            start,
            end,
            or_(ReceiptRow.payer == user, ReceiptRow.recipient == user),
        )

    def get_timebound_records_between_users(
        self,
        user1: str,
        user2: str,
        limit: int,
        start: datetime,
        end: datetime,
    ) -> list[Record]:
        self._require_users(user1, user2)
        return self._query_records(
            limit,
            start,
            end,
            or_(
                and_(ReceiptRow.payer == user1, ReceiptRow.recipient == user2),
                and_(ReceiptRow.payer == user2, ReceiptRow.recipient == user1),
            ),
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
        """
        Two grouped aggregates, one per direction.

        Positive and negative credits are summed separately so a negative
        receipt counts in the opposite direction, exactly as the in-memory
        ledger folds it.
        """
        self._require_users(user)
        window = ReceiptRow.date.between(to_timestamp(start), to_timestamp(end))

        positive = func.sum(case((ReceiptRow.credits >= 0, ReceiptRow.credits), else_=0))
        negative = func.sum(case((ReceiptRow.credits < 0, -ReceiptRow.credits), else_=0))

        with self._session() as session:
            paid = session.exec(
                select(ReceiptRow.recipient, positive, negative)
                .where(ReceiptRow.payer == user, window)
                .group_by(ReceiptRow.recipient)
            ).all()
            received = session.exec(
                select(ReceiptRow.payer, positive, negative)
                .where(ReceiptRow.recipient == user, window)
                .group_by(ReceiptRow.payer)
            ).all()
            # Read after the aggregates so every counterparty is covered
            summary = {name: SummaryRecord() for name in self._usernames(session)}

        for recipient, owed, reversed_ in paid:
            entry = summary.setdefault(recipient, SummaryRecord())
            entry.outgoing_credits += int(owed or 0)
            entry.incoming_credits += int(reversed_ or 0)

        for payer, owed, reversed_ in received:
            entry = summary.setdefault(payer, SummaryRecord())
            entry.incoming_credits += int(owed or 0)
            entry.outgoing_credits += int(reversed_ or 0)

        return summary

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @contextmanager
    def _session(self) -> Iterator[Session]:
        if self._engine is None:
            raise NoActiveDatabase()

        with Session(self._engine) as session:
            try:
                yield session
            except SQLAlchemyError as e:
                session.rollback()
                raise StorageError(f"Database operation failed: {e}") from e

    @staticmethod
    def _usernames(session: Session) -> list[str]:
        """Every username in creation order."""
        return list(
            session.exec(select(UserRow.username).order_by(UserRow.id)).all()
        )

    @staticmethod
    def _exists(session: Session, username: str) -> bool:
        found = session.exec(
            select(UserRow.id).where(UserRow.username == username)
        ).first()
        return found is not None

    def _require_users(self, *usernames: str) -> None:
        with self._session() as session:
            for username in usernames:
                if not self._exists(session, username):
                    raise NoUser(f"No such user: {username}")

    def _query_records(self, limit, start, end, *conditions) -> list[Record]:
        limit = validate_limit(limit)
        if limit == 0:
            return []

        statement = (
            select(ReceiptRow)
            .where(
                ReceiptRow.date.between(to_timestamp(start), to_timestamp(end)),
                *conditions,
            )
            .order_by(ReceiptRow.date.desc(), ReceiptRow.id.desc())
            .limit(limit)
        )

        with self._session() as session:
            rows = session.exec(statement).all()

        return [
            Record(
                payer=row.payer,
                recipient=row.recipient,
                credits=row.credits,
                date=from_timestamp(row.date),
            )
            for row in rows
        ]
