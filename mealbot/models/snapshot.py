"""
Snapshot Models

The canonical on-disk layout of the in-memory ledger, also used as the
export format of `get_legacy_database()` for every backend.

The field names (including the `Reciepts` and `Payee` spellings) are part
of the wire contract and must not change.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)


def format_timestamp(value: datetime) -> str:
    """RFC 3339 in UTC with a trailing `Z`."""
    value = value.astimezone(timezone.utc)
    return value.isoformat().replace("+00:00", "Z")


class SnapshotUser(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: int = Field(..., ge=0, alias="ID")
    upn: str = Field(..., min_length=1, alias="UPN")


class SnapshotReceipt(BaseModel):
    """
    A receipt in snapshot form.

    `payer` and `payee` are positions into the snapshot's user list.
    """
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    payer: int = Field(..., ge=0, alias="Payer")
    payee: int = Field(..., ge=0, alias="Payee")
    num_meals: int = Field(..., alias="NumMeals")
    date_time: datetime = Field(..., alias="DateTime")

    @field_validator("date_time")
    @classmethod
    def ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @field_serializer("date_time")
    def serialize_date_time(self, value: datetime) -> str:
        return format_timestamp(value)


class LegacySnapshot(BaseModel):
    """
    Full serialized store state.

    User ids are dense: `users[i].id == i`.
    """
    model_config = ConfigDict(populate_by_name=True)

    users: list[SnapshotUser] = Field(default_factory=list, alias="Users")
    receipts: list[SnapshotReceipt] = Field(default_factory=list, alias="Reciepts")

    @field_validator("users", "receipts", mode="before")
    @classmethod
    def null_as_empty(cls, v: Optional[Any]) -> Any:
        # Older snapshots serialize empty lists as null
        return [] if v is None else v

    @model_validator(mode="after")
    def validate_references(self) -> "LegacySnapshot":
        seen = set()
        for index, user in enumerate(self.users):
            if user.id != index:
                raise ValueError(
                    f"User {user.upn!r} has id {user.id}, expected {index}"
                )
            if user.upn in seen:
                raise ValueError(f"Duplicate user {user.upn!r}")
            seen.add(user.upn)

        count = len(self.users)
        for receipt in self.receipts:
            if receipt.payer >= count or receipt.payee >= count:
                raise ValueError(
                    f"Receipt references unknown user "
                    f"({receipt.payer} -> {receipt.payee})"
                )
        return self

    def to_json_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_json_bytes(cls, data: bytes) -> "LegacySnapshot":
        return cls.model_validate_json(data)
