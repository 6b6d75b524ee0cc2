"""
State transitions for a single person record.

Each function returns a new record and never mutates its input. Persisting
the result is the caller's job; see ``changed_fields`` for the partial
document to send.
"""

from collections.abc import Iterable
from datetime import datetime, timedelta

from lifesignal.errors import InvalidInterval, InvalidRoleState, RoleRequired
from lifesignal.models import PersonRecord


def set_roles(
    record: PersonRecord, is_responder: bool, is_dependent: bool
) -> PersonRecord:
    if not (is_responder or is_dependent):
        raise InvalidRoleState()
    return record.model_copy(
        update={"is_responder": is_responder, "is_dependent": is_dependent}
    )


def check_in(record: PersonRecord, now: datetime) -> PersonRecord:
    # an active manual alert stays on; only clear_alert silences it
    return record.model_copy(update={"last_checked_in": now})


def set_interval(record: PersonRecord, interval: timedelta) -> PersonRecord:
    if interval <= timedelta(0):
        raise InvalidInterval()
    return record.model_copy(update={"check_in_interval": interval})


def trigger_alert(record: PersonRecord, now: datetime) -> PersonRecord:
    return record.model_copy(
        update={"manual_alert_active": True, "manual_alert_timestamp": now}
    )


def clear_alert(record: PersonRecord) -> PersonRecord:
    return record.model_copy(
        update={"manual_alert_active": False, "manual_alert_timestamp": None}
    )


def _require_dependent(record: PersonRecord) -> None:
    if not record.is_dependent:
        raise RoleRequired("dependent", record.id)


def _require_responder(record: PersonRecord) -> None:
    if not record.is_responder:
        raise RoleRequired("responder", record.id)


def send_ping(record: PersonRecord, now: datetime) -> PersonRecord:
    _require_dependent(record)
    return record.model_copy(
        update={"has_outgoing_ping": True, "outgoing_ping_timestamp": now}
    )


def clear_ping(record: PersonRecord) -> PersonRecord:
    _require_dependent(record)
    return record.model_copy(
        update={"has_outgoing_ping": False, "outgoing_ping_timestamp": None}
    )


def receive_ping(record: PersonRecord, now: datetime) -> PersonRecord:
    _require_responder(record)
    return record.model_copy(
        update={"has_incoming_ping": True, "incoming_ping_timestamp": now}
    )


def respond_to_ping(record: PersonRecord) -> PersonRecord:
    _require_responder(record)
    return record.model_copy(
        update={"has_incoming_ping": False, "incoming_ping_timestamp": None}
    )


def respond_to_all_pings(records: Iterable[PersonRecord]) -> list[PersonRecord]:
    """
    Clear every incoming ping. Either every pinged record is valid and the
    whole list is returned, or ``RoleRequired`` is raised and nothing is.
    """
    return [
        respond_to_ping(r) if r.has_incoming_ping else r for r in records
    ]


def set_notification_preferences(
    record: PersonRecord,
    *,
    notifications_enabled: bool | None = None,
    notify_30_min_before: bool | None = None,
    notify_2_hours_before: bool | None = None,
) -> PersonRecord:
    update = {
        "notifications_enabled": notifications_enabled,
        "notify_30_min_before": notify_30_min_before,
        "notify_2_hours_before": notify_2_hours_before,
    }
    return record.model_copy(
        update={k: v for k, v in update.items() if v is not None}
    )


def changed_fields(before: PersonRecord, after: PersonRecord) -> dict:
    """Partial document (camelCase keys) holding only fields that differ."""
    old = before.to_document()
    new = after.to_document()
    return {key: value for key, value in new.items() if old.get(key) != value}
