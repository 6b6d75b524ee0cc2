"""
Person record shared by the signed-in user and each of their contacts.
"""

from datetime import UTC, datetime, timedelta
from enum import StrEnum

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


DEFAULT_CHECK_IN_INTERVAL = timedelta(hours=24)


def utcnow() -> datetime:
    return datetime.now(UTC)


class ContactStatus(StrEnum):
    # declaration order is display priority
    ALERTING = "alerting"
    NON_RESPONSIVE = "non_responsive"
    PINGED_OUTGOING = "pinged_outgoing"
    PINGED_INCOMING = "pinged_incoming"
    NORMAL = "normal"

    @property
    def priority(self) -> int:
        return list(ContactStatus).index(self)


class PersonRecord(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str
    name: str = ""
    phone_number: str = ""
    note: str = ""
    qr_code_id: str | None = None

    last_checked_in: datetime = Field(default_factory=utcnow)
    check_in_interval: timedelta = DEFAULT_CHECK_IN_INTERVAL

    is_responder: bool = False
    is_dependent: bool = False

    manual_alert_active: bool = False
    manual_alert_timestamp: datetime | None = None

    has_incoming_ping: bool = False
    incoming_ping_timestamp: datetime | None = None
    has_outgoing_ping: bool = False
    outgoing_ping_timestamp: datetime | None = None

    # Firestore spells these without a digit boundary
    notify_30_min_before: bool = Field(default=True, alias="notify30MinBefore")
    notify_2_hours_before: bool = Field(default=False, alias="notify2HoursBefore")
    notifications_enabled: bool = True

    added_at: datetime | None = None
    last_updated: datetime | None = None

    @field_validator(
        "last_checked_in",
        "manual_alert_timestamp",
        "incoming_ping_timestamp",
        "outgoing_ping_timestamp",
        "added_at",
        "last_updated",
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    @field_validator("check_in_interval")
    @classmethod
    def _positive_interval(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("check_in_interval must be positive")
        return value

    @model_validator(mode="after")
    def _ping_pairs_consistent(self) -> "PersonRecord":
        if self.has_incoming_ping != (self.incoming_ping_timestamp is not None):
            raise ValueError("hasIncomingPing must match incomingPingTimestamp")
        if self.has_outgoing_ping != (self.outgoing_ping_timestamp is not None):
            raise ValueError("hasOutgoingPing must match outgoingPingTimestamp")
        return self

    @field_serializer("check_in_interval")
    def _interval_seconds(self, value: timedelta) -> float:
        return value.total_seconds()

    @property
    def has_role(self) -> bool:
        return self.is_responder or self.is_dependent

    def to_document(self) -> dict:
        """Firestore-shaped dict: camelCase keys, interval in seconds."""
        return self.model_dump(by_alias=True)


class AddContactResult(BaseModel):
    contact: PersonRecord
    already_existed: bool = False
