from collections.abc import Iterable
from datetime import datetime

from lifesignal.models import ContactStatus, PersonRecord
from lifesignal.timing import expiration_of, is_expired


def classify(record: PersonRecord, now: datetime) -> ContactStatus:
    """
    Single display status for a record at ``now``. First match wins: a manual
    alert outranks an expired window, which outranks any ping.
    """
    if record.manual_alert_active:
        return ContactStatus.ALERTING
    if is_expired(record, now):
        return ContactStatus.NON_RESPONSIVE
    if record.has_outgoing_ping:
        return ContactStatus.PINGED_OUTGOING
    if record.has_incoming_ping:
        return ContactStatus.PINGED_INCOMING
    return ContactStatus.NORMAL


def is_non_responsive(record: PersonRecord, now: datetime) -> bool:
    return is_expired(record, now) and not record.manual_alert_active


def _recency_key(record: PersonRecord, status: ContactStatus) -> float:
    # smaller sorts first
    if status == ContactStatus.ALERTING:
        moment = record.manual_alert_timestamp
    elif status == ContactStatus.NON_RESPONSIVE:
        return expiration_of(record).timestamp()
    elif status == ContactStatus.PINGED_OUTGOING:
        moment = record.outgoing_ping_timestamp
    elif status == ContactStatus.PINGED_INCOMING:
        moment = record.incoming_ping_timestamp
    else:
        return 0.0

    if moment is None:
        return float("inf")
    return -moment.timestamp()


def sort_by_status(
    records: Iterable[PersonRecord], now: datetime
) -> list[PersonRecord]:
    """
    Display order for contact lists: status priority, then newest alert or
    ping first (most overdue first for non-responsive), then name.
    """

    def key(record: PersonRecord) -> tuple[int, float, str]:
        status = classify(record, now)
        return (status.priority, _recency_key(record, status), record.name)

    return sorted(records, key=key)


def pending_ping_count(records: Iterable[PersonRecord]) -> int:
    return sum(1 for r in records if r.has_incoming_ping)


def attention_count(records: Iterable[PersonRecord], now: datetime) -> int:
    """Contacts that are alerting or past their check-in window."""
    return sum(
        1
        for r in records
        if r.manual_alert_active or is_non_responsive(r, now)
    )
