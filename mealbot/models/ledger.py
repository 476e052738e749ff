"""
Core Ledger Models for Mealbot

These are the value objects handed back to callers by every backend.
Callers only ever see copies: backends build fresh instances from their
own internal state on every read.

DESIGN DECISION: A positive Record means the payer owes the recipient
that many credits. Reversals are recorded as new receipts, never as edits.
"""

from datetime import datetime, timezone

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


class Account(BaseModel):
    """A named party that can owe or be owed credits."""
    model_config = ConfigDict(frozen=True)

    username: str = Field(
        ...,
        min_length=1,
        description="Unique name, stored and matched verbatim"
    )


class Record(BaseModel):
    """
    One signed transfer event between two accounts.

    Records are immutable once created.
    """
    model_config = ConfigDict(frozen=True)

    payer: str = Field(..., description="Who paid")
    recipient: str = Field(..., description="Who received")
    credits: int = Field(
        ...,
        description="Signed number of credits in this transaction"
    )
    date: datetime = Field(
        ...,
        description="When this transaction occurred (UTC)"
    )

    @field_validator("date")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        """Naive datetimes are taken to be UTC."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class SummaryRecord(BaseModel):
    """
    Net debt between a subject account and one counterparty.

    Both fields are unsigned. The JSON aliases match the wire format
    consumed by the HTTP layer.
    """
    model_config = ConfigDict(populate_by_name=True)

    incoming_credits: int = Field(
        default=0,
        ge=0,
        alias="incoming-credits",
        description="Credits the counterparty owes this account"
    )
    outgoing_credits: int = Field(
        default=0,
        ge=0,
        alias="outgoing-credits",
        description="Credits this account owes the counterparty"
    )

    def add_as_payer(self, credits: int) -> None:
        """Fold in a receipt where the subject account was the payer."""
        if credits >= 0:
            self.outgoing_credits += credits
        else:
            self.incoming_credits += -credits

    def add_as_recipient(self, credits: int) -> None:
        """Fold in a receipt where the subject account was the recipient."""
        if credits >= 0:
            self.incoming_credits += credits
        else:
            self.outgoing_credits += -credits

    @property
    def net_credits(self) -> int:
        """Positive when this account owes the counterparty."""
        return self.outgoing_credits - self.incoming_credits


class DebtTable(BaseModel):
    """
    Square matrix of every known debt.

    `debts[labels[a]][labels[b]]` is the net amount `a` owes `b`.
    Entries are signed sums over all receipts between the pair, so
    `debts[A][B] == -debts[B][A]` always holds.
    """

    labels: dict[str, int] = Field(default_factory=dict)
    debts: list[list[int]] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_square(self) -> "DebtTable":
        size = len(self.labels)
        if len(self.debts) != size or any(len(row) != size for row in self.debts):
            raise ValueError("Debt table must be square and match its labels")
        return self

    def owed(self, debtor: str, creditor: str) -> int:
        """Net amount `debtor` owes `creditor`."""
        return self.debts[self.labels[debtor]][self.labels[creditor]]
