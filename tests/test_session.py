import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import Clock

from lifesignal.database import (
    InMemoryAuth,
    InMemoryDocumentStore,
    InMemoryIdentifierLookup,
    InMemoryNotifier,
)
from lifesignal.errors import (
    InvalidContact,
    InvalidInterval,
    InvalidRoleState,
    NotAuthenticated,
    NotFound,
    RoleRequired,
    SyncFailure,
)
from lifesignal.models import ContactStatus
from lifesignal.session import Session
from lifesignal.status import classify, pending_ping_count
from lifesignal.timing import (
    REMINDER_LEAD_2_HOURS,
    REMINDER_LEAD_30_MIN,
    expiration_of,
    reminder_id,
)


def _p(msg: str) -> None:
    print(msg, flush=True)


async def _settle() -> None:
    # let listener tasks drain their queues
    for _ in range(5):
        await asyncio.sleep(0)


async def _with_contacts(session: Session) -> Session:
    """alice has bob as a responder and carol as a dependent."""
    await session.load()
    await session.add_contact("qr-bob", is_responder=True, is_dependent=False)
    await session.add_contact("qr-carol", is_responder=False, is_dependent=True)
    return session


@pytest.mark.asyncio
async def test_load_reads_own_record_and_contacts(
    session: Session, db: InMemoryDocumentStore
) -> None:
    await db.create_relationship("alice-id", "bob-id", True, False)

    me = await session.load()

    assert me.id == "alice-id"
    assert session.user_id == "alice-id"
    assert [r.id for r in session.store] == ["bob-id"]


@pytest.mark.asyncio
async def test_add_contact_by_qr_code(session: Session, db: InMemoryDocumentStore) -> None:
    await session.load()

    result = await session.add_contact("qr-bob", is_responder=True, is_dependent=False)

    assert result.already_existed is False
    assert result.contact.id == "bob-id"
    assert session.store.responders() == [result.contact]
    alice_for_bob = await db.get_record("bob-id", "alice-id")
    assert alice_for_bob.is_dependent


@pytest.mark.asyncio
async def test_add_existing_contact_is_informational(session: Session) -> None:
    await session.load()
    await session.add_contact("qr-bob", is_responder=True, is_dependent=False)

    again = await session.add_contact("qr-bob", is_responder=True, is_dependent=False)

    assert again.already_existed is True
    assert len(session.store) == 1


@pytest.mark.asyncio
async def test_add_contact_without_role_is_rejected_before_lookup(
    session: Session,
) -> None:
    await session.load()
    session.lookup = AsyncMock()

    with pytest.raises(InvalidRoleState):
        await session.add_contact("qr-bob", is_responder=False, is_dependent=False)

    session.lookup.resolve.assert_not_awaited()
    assert len(session.store) == 0


@pytest.mark.asyncio
async def test_add_self_or_unknown_code(session: Session) -> None:
    await session.load()

    with pytest.raises(InvalidContact):
        await session.add_contact("qr-alice", is_responder=True, is_dependent=False)
    with pytest.raises(NotFound):
        await session.add_contact("qr-ghost", is_responder=True, is_dependent=False)
    assert len(session.store) == 0


@pytest.mark.asyncio
async def test_check_in_resets_window_and_schedules_reminders(
    session: Session,
    db: InMemoryDocumentStore,
    notifier: InMemoryNotifier,
    clock: Clock,
) -> None:
    await session.load()
    clock.advance(timedelta(hours=30))
    assert classify(session.me, clock.now) == ContactStatus.NON_RESPONSIVE

    me = await session.check_in()

    _p(f"checked in at {me.last_checked_in.isoformat()}, scheduled={notifier.scheduled}")
    assert me.last_checked_in == clock.now
    assert classify(me, clock.now) == ContactStatus.NORMAL
    assert (await db.get_record("alice-id", "alice-id")).last_checked_in == clock.now

    expected = reminder_id(expiration_of(me), REMINDER_LEAD_30_MIN)
    assert list(notifier.scheduled) == [expected]
    assert notifier.shown == [
        (
            "Check-in Successful",
            "Your check-in has been recorded. Next check-in due in 1 day.",
        )
    ]


@pytest.mark.asyncio
async def test_second_check_in_replaces_reminders(
    session: Session, notifier: InMemoryNotifier, clock: Clock
) -> None:
    await session.load()
    await session.update_notification_preferences(notify_2_hours_before=True)

    first = await session.check_in()
    clock.advance(timedelta(hours=2))
    second = await session.check_in()

    old = [reminder_id(expiration_of(first), lead) for lead in (REMINDER_LEAD_30_MIN, REMINDER_LEAD_2_HOURS)]
    new = [reminder_id(expiration_of(second), lead) for lead in (REMINDER_LEAD_30_MIN, REMINDER_LEAD_2_HOURS)]
    assert sorted(notifier.scheduled) == sorted(new)
    assert set(old) <= set(notifier.cancelled)


@pytest.mark.asyncio
async def test_check_in_without_notifications_schedules_nothing(
    session: Session, notifier: InMemoryNotifier
) -> None:
    await session.load()
    await session.update_notification_preferences(notifications_enabled=False)

    await session.check_in()

    assert notifier.scheduled == {}


@pytest.mark.asyncio
async def test_check_in_does_not_clear_alert(session: Session, clock: Clock) -> None:
    await session.load()
    await session.trigger_alert()
    clock.advance(timedelta(minutes=10))

    me = await session.check_in()

    assert me.manual_alert_active is True
    assert classify(me, clock.now) == ContactStatus.ALERTING

    me = await session.clear_alert()
    assert classify(me, clock.now) == ContactStatus.NORMAL


@pytest.mark.asyncio
async def test_invalid_interval_leaves_everything_unchanged(
    session: Session, db: InMemoryDocumentStore
) -> None:
    await session.load()
    before = session.me

    with pytest.raises(InvalidInterval):
        await session.set_interval(timedelta(0))

    assert session.me == before
    assert await db.get_record("alice-id", "alice-id") == before


@pytest.mark.asyncio
async def test_set_interval_persists(session: Session, db: InMemoryDocumentStore) -> None:
    await session.load()

    me = await session.set_interval(timedelta(hours=8))

    assert me.check_in_interval == timedelta(hours=8)
    stored = await db.get_record("alice-id", "alice-id")
    assert stored.check_in_interval == timedelta(hours=8)


@pytest.mark.asyncio
async def test_signed_out_user_cannot_act(
    session: Session, auth: InMemoryAuth
) -> None:
    await session.load()
    before = session.me
    auth.sign_out()

    with pytest.raises(NotAuthenticated):
        await session.check_in()
    assert session.me == before


@pytest.mark.asyncio
async def test_ping_dependent_and_clear(session: Session, db: InMemoryDocumentStore, clock: Clock) -> None:
    await _with_contacts(session)

    carol = await session.ping_dependent("carol-id")
    assert carol.outgoing_ping_timestamp == clock.now
    assert classify(carol, clock.now) == ContactStatus.PINGED_OUTGOING
    assert (await db.get_record("alice-id", "carol-id")).has_outgoing_ping

    carol = await session.clear_ping("carol-id")
    assert not carol.has_outgoing_ping


@pytest.mark.asyncio
async def test_ping_responder_is_rejected(session: Session) -> None:
    await _with_contacts(session)
    before = session.store.get("bob-id")

    with pytest.raises(RoleRequired):
        await session.ping_dependent("bob-id")

    assert session.store.get("bob-id") == before


@pytest.mark.asyncio
async def test_sync_failure_reverts_optimistic_ping(
    session: Session, db: InMemoryDocumentStore, monkeypatch
) -> None:
    await _with_contacts(session)
    monkeypatch.setattr(db, "update", AsyncMock(side_effect=SyncFailure()))

    with pytest.raises(SyncFailure) as excinfo:
        await session.ping_dependent("carol-id")

    assert excinfo.value.retryable is True
    carol = session.store.get("carol-id")
    assert carol.has_outgoing_ping is False
    assert carol == await db.get_record("alice-id", "carol-id")


@pytest.mark.asyncio
async def test_respond_to_all_pings(
    session: Session, db: InMemoryDocumentStore, clock: Clock
) -> None:
    await _with_contacts(session)
    await db.update(
        "alice-id",
        "bob-id",
        {"hasIncomingPing": True, "incomingPingTimestamp": clock.now},
    )
    session.apply_snapshot(await db.get_record("alice-id", "bob-id"))
    assert session.statuses()["bob-id"] == ContactStatus.PINGED_INCOMING

    answered = await session.respond_to_all_pings()

    assert [r.id for r in answered] == ["bob-id"]
    assert not session.store.get("bob-id").has_incoming_ping
    assert not (await db.get_record("alice-id", "bob-id")).has_incoming_ping

    assert await session.respond_to_all_pings() == []


@pytest.mark.asyncio
async def test_respond_to_all_pings_failure_shows_server_state(
    session: Session, db: InMemoryDocumentStore, clock: Clock, monkeypatch
) -> None:
    await session.load()
    await session.add_contact("qr-bob", is_responder=True, is_dependent=False)
    await session.add_contact("qr-carol", is_responder=True, is_dependent=False)
    for contact_id in ("bob-id", "carol-id"):
        await db.update(
            "alice-id",
            contact_id,
            {"hasIncomingPing": True, "incomingPingTimestamp": clock.now},
        )
    await session.load()

    monkeypatch.setattr(db, "update", AsyncMock(side_effect=[None, SyncFailure()]))

    with pytest.raises(SyncFailure):
        await session.respond_to_all_pings()

    # nothing was written, so both pings are still pending locally
    assert all(r.has_incoming_ping for r in session.store)


@pytest.mark.asyncio
async def test_respond_to_single_ping(session: Session, db: InMemoryDocumentStore, clock: Clock) -> None:
    await _with_contacts(session)
    await db.update(
        "alice-id",
        "bob-id",
        {"hasIncomingPing": True, "incomingPingTimestamp": clock.now},
    )
    await session.load()

    bob = await session.respond_to_ping("bob-id")

    assert bob.has_incoming_ping is False
    with pytest.raises(RoleRequired):
        await session.respond_to_ping("carol-id")


@pytest.mark.asyncio
async def test_update_contact_roles(session: Session, db: InMemoryDocumentStore) -> None:
    await _with_contacts(session)

    with pytest.raises(InvalidRoleState):
        await session.update_contact_roles("bob-id", is_responder=False, is_dependent=False)
    assert session.store.get("bob-id").is_responder

    bob = await session.update_contact_roles("bob-id", is_responder=True, is_dependent=True)
    assert bob in session.store.dependents()
    assert (await db.get_record("alice-id", "bob-id")).is_dependent


@pytest.mark.asyncio
async def test_remove_contact(session: Session, db: InMemoryDocumentStore) -> None:
    await _with_contacts(session)

    await session.remove_contact("bob-id")

    assert "bob-id" not in session.store
    assert [r.id for r in await db.list_contacts("bob-id")] == []
    with pytest.raises(NotFound):
        await session.remove_contact("bob-id")


@pytest.mark.asyncio
async def test_remove_contact_sync_failure_restores(
    session: Session, db: InMemoryDocumentStore, monkeypatch
) -> None:
    await _with_contacts(session)
    monkeypatch.setattr(db, "delete_relationship", AsyncMock(side_effect=SyncFailure()))

    with pytest.raises(SyncFailure):
        await session.remove_contact("bob-id")

    assert [r.id for r in session.store] == ["bob-id", "carol-id"]


@pytest.mark.asyncio
async def test_server_echo_is_absorbed(
    session: Session, db: InMemoryDocumentStore, notifier: InMemoryNotifier
) -> None:
    await session.load()
    me = await session.check_in()
    shown = list(notifier.shown)

    echo = await db.get_record("alice-id", "alice-id")
    session.apply_snapshot(echo)

    assert session.apply_snapshot(echo) is False
    assert session.me.last_checked_in == me.last_checked_in
    assert notifier.shown == shown


@pytest.mark.asyncio
async def test_watch_applies_snapshots_and_cancels_once(
    session: Session, db: InMemoryDocumentStore
) -> None:
    await session.load()

    subscription = await session.watch()
    await _settle()
    assert db.listener_count("alice-id", "alice-id") == 1

    await db.update("alice-id", "alice-id", {"name": "Alice O."})
    await _settle()
    assert session.me.name == "Alice O."

    assert subscription.cancel() is True
    assert subscription.cancel() is False
    await subscription.wait_closed()
    assert db.listener_count("alice-id", "alice-id") == 0

    again = await session.watch()
    await _settle()
    assert again is not subscription
    assert db.listener_count("alice-id", "alice-id") == 1

    await session.unwatch_all()
    assert db.listener_count("alice-id", "alice-id") == 0


@pytest.mark.asyncio
async def test_watch_contact_sees_their_check_in(
    session: Session, db: InMemoryDocumentStore, clock: Clock
) -> None:
    await _with_contacts(session)
    await session.watch("carol-id")
    await _settle()

    clock.advance(timedelta(hours=20))
    assert session.statuses()["carol-id"] == ContactStatus.NON_RESPONSIVE

    await db.update("carol-id", "carol-id", {"lastCheckedIn": clock.now})
    await _settle()

    assert session.store.get("carol-id").last_checked_in == clock.now
    assert session.statuses()["carol-id"] == ContactStatus.NORMAL
    await session.unwatch_all()


@pytest.mark.asyncio
async def test_watch_is_reused_while_active(session: Session) -> None:
    await session.load()

    first = await session.watch()
    second = await session.watch()

    assert first is second
    await session.unwatch_all()
    assert not first.active


@pytest.mark.asyncio
async def test_sorted_contacts(session: Session, clock: Clock) -> None:
    await _with_contacts(session)
    await session.ping_dependent("carol-id")

    assert [r.id for r in session.sorted_contacts()] == ["carol-id", "bob-id"]

    clock.advance(timedelta(hours=30))
    statuses = session.statuses()
    assert statuses == {
        "bob-id": ContactStatus.NON_RESPONSIVE,
        "carol-id": ContactStatus.NON_RESPONSIVE,
    }
    # carol's 12h window ran out before bob's 24h one
    assert [r.id for r in session.sorted_contacts()] == ["carol-id", "bob-id"]


@pytest.mark.asyncio
async def test_write_for_relationship_deleted_remotely_drops_contact(
    session: Session, db: InMemoryDocumentStore
) -> None:
    await _with_contacts(session)
    # carol removes alice from her side
    await db.delete_relationship("carol-id", "alice-id")

    with pytest.raises(NotFound):
        await session.ping_dependent("carol-id")

    assert "carol-id" not in session.store
    assert [r.id for r in session.store] == ["bob-id"]


@pytest.mark.asyncio
async def test_any_rejected_write_reverts_local_change(
    session: Session, db: InMemoryDocumentStore, monkeypatch
) -> None:
    await _with_contacts(session)
    monkeypatch.setattr(db, "update", AsyncMock(side_effect=NotAuthenticated()))

    with pytest.raises(NotAuthenticated):
        await session.ping_dependent("carol-id")

    assert session.store.get("carol-id").has_outgoing_ping is False


@pytest.mark.asyncio
async def test_respond_to_all_skips_contacts_no_longer_responders(
    session: Session, db: InMemoryDocumentStore, clock: Clock
) -> None:
    await _with_contacts(session)
    await db.update(
        "alice-id",
        "bob-id",
        {"hasIncomingPing": True, "incomingPingTimestamp": clock.now},
    )
    await session.load()
    await session.update_contact_roles("bob-id", is_responder=False, is_dependent=True)

    assert pending_ping_count(session.store.responders()) == 0
    assert await session.respond_to_all_pings() == []
    assert session.store.get("bob-id").has_incoming_ping is True


@pytest.mark.asyncio
async def test_ping_reaches_dependent_and_answer_clears_it(
    session: Session, db: InMemoryDocumentStore, clock: Clock
) -> None:
    bob = Session(
        auth=InMemoryAuth("bob-id"),
        sync=db,
        notifier=InMemoryNotifier(),
        lookup=InMemoryIdentifierLookup(db),
        now_fn=clock,
    )
    await session.load()
    await session.add_contact("qr-bob", is_responder=False, is_dependent=True)
    await bob.load()
    assert [r.id for r in bob.store.responders()] == ["alice-id"]

    await bob.watch("alice-id")
    await _settle()
    await session.ping_dependent("bob-id")
    await _settle()

    _p(f"bob sees alice as {bob.statuses()['alice-id']}")
    assert bob.statuses()["alice-id"] == ContactStatus.PINGED_INCOMING
    assert bob.store.get("alice-id").incoming_ping_timestamp == clock.now
    assert pending_ping_count(bob.store.responders()) == 1

    answered = await bob.respond_to_all_pings()

    assert [r.id for r in answered] == ["alice-id"]
    assert not (await db.get_record("alice-id", "bob-id")).has_outgoing_ping
    await session.load()
    assert session.statuses()["bob-id"] == ContactStatus.NORMAL
    await bob.unwatch_all()
