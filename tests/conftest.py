from datetime import UTC, datetime, timedelta

import pytest

from lifesignal.database import (
    InMemoryAuth,
    InMemoryDocumentStore,
    InMemoryIdentifierLookup,
    InMemoryNotifier,
)
from lifesignal.models import PersonRecord
from lifesignal.session import Session

T0 = datetime(2025, 7, 1, 9, 0, 0, tzinfo=UTC)


class Clock:
    """Manually advanced ``now_fn``."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


def make_record(record_id: str = "rec-1", **fields) -> PersonRecord:
    fields.setdefault("name", record_id)
    fields.setdefault("last_checked_in", T0)
    return PersonRecord(id=record_id, **fields)


@pytest.fixture
def clock() -> Clock:
    return Clock(T0)


@pytest.fixture
def db(clock: Clock) -> InMemoryDocumentStore:
    db = InMemoryDocumentStore(now_fn=clock)
    db.put_user(
        PersonRecord(
            id="alice-id",
            name="Alice Ongwele",
            phone_number="+15550001",
            qr_code_id="qr-alice",
            last_checked_in=T0 - timedelta(hours=1),
        )
    )
    db.put_user(
        PersonRecord(
            id="bob-id",
            name="Bob Kozumikov",
            phone_number="+15550002",
            qr_code_id="qr-bob",
            last_checked_in=T0 - timedelta(hours=2),
        )
    )
    db.put_user(
        PersonRecord(
            id="carol-id",
            name="Carol Yan",
            phone_number="+15550003",
            qr_code_id="qr-carol",
            last_checked_in=T0 - timedelta(hours=3),
            check_in_interval=timedelta(hours=12),
        )
    )
    return db


@pytest.fixture
def auth() -> InMemoryAuth:
    return InMemoryAuth("alice-id")


@pytest.fixture
def notifier() -> InMemoryNotifier:
    return InMemoryNotifier()


@pytest.fixture
def session(
    db: InMemoryDocumentStore,
    auth: InMemoryAuth,
    notifier: InMemoryNotifier,
    clock: Clock,
) -> Session:
    return Session(
        auth=auth,
        sync=db,
        notifier=notifier,
        lookup=InMemoryIdentifierLookup(db),
        now_fn=clock,
    )
