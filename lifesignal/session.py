"""
Signed-in session: the user's own record, their contacts, and the actions
they can take on both.

Every mutation follows the same path: validate, apply to local state, write
the changed fields to the document store, and if that write fails restore
the previous local state, reload the authoritative record and re-raise.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing
from datetime import datetime, timedelta

from lifesignal import operations as ops
from lifesignal.clients import (
    AuthClient,
    IdentifierLookup,
    NotificationClient,
    SyncClient,
)
from lifesignal.errors import (
    AlreadyExists,
    InvalidContact,
    InvalidRoleState,
    LifeSignalError,
    NotAuthenticated,
    NotFound,
    SyncFailure,
)
from lifesignal.models import AddContactResult, ContactStatus, PersonRecord, utcnow
from lifesignal.observability import get_logger
from lifesignal.status import classify, sort_by_status
from lifesignal.store import RelationshipStore
from lifesignal.timing import (
    REMINDER_LEAD_2_HOURS,
    REMINDER_LEAD_30_MIN,
    expiration_of,
    format_interval_full_units,
    reminder_id,
    reminder_times,
)

logger = get_logger(__name__)

NowFn = Callable[[], datetime]
Mutation = Callable[[PersonRecord], PersonRecord]


class Subscription:
    """Handle on one live record listener. ``cancel`` takes effect once."""

    def __init__(self, record_id: str, task: asyncio.Task) -> None:
        self.record_id = record_id
        self.task = task
        self._cancelled = False

    @property
    def active(self) -> bool:
        return not self._cancelled and not self.task.done()

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        self.task.cancel()
        return True

    async def wait_closed(self) -> None:
        await asyncio.gather(self.task, return_exceptions=True)


class Session:
    def __init__(
        self,
        auth: AuthClient,
        sync: SyncClient,
        notifier: NotificationClient,
        lookup: IdentifierLookup,
        *,
        now_fn: NowFn = utcnow,
    ) -> None:
        self.auth = auth
        self.sync = sync
        self.notifier = notifier
        self.lookup = lookup
        self.now_fn = now_fn

        self.user_id: str | None = None
        self.me: PersonRecord | None = None
        self.store = RelationshipStore()
        self._subscriptions: dict[str, Subscription] = {}

    # -- state access --------------------------------------------------------

    async def _resolve_user(self) -> str:
        user_id = await self.auth.current_user_id()
        if self.user_id is not None and user_id != self.user_id:
            # a different account signed in underneath us
            raise NotAuthenticated("Your session changed. Sign in again.")
        self.user_id = user_id
        return user_id

    def _local(self, record_id: str) -> PersonRecord:
        if record_id == self.user_id:
            if self.me is None:
                raise NotFound("Your profile has not been loaded yet.")
            return self.me
        record = self.store.get(record_id)
        if record is None:
            raise NotFound()
        return record

    def _put_local(self, record: PersonRecord) -> bool:
        if record.id == self.user_id:
            changed = self.me != record
            self.me = record
            return changed
        return self.store.replace(record)

    async def load(self) -> PersonRecord:
        user_id = await self._resolve_user()
        self.me = await self.sync.get_record(user_id, user_id)
        self.store.reset(await self.sync.list_contacts(user_id))
        logger.info("Session loaded", user_id=user_id, contacts=len(self.store))
        return self.me

    def apply_snapshot(self, record: PersonRecord) -> bool:
        """
        Take an authoritative snapshot from the document store. The stored
        record is replaced wholesale; an echo of a local change that is
        already applied reports False.
        """
        return self._put_local(record)

    # -- optimistic commit ---------------------------------------------------

    async def _commit(
        self, user_id: str, changes: list[tuple[PersonRecord, PersonRecord]]
    ) -> None:
        changes = [(before, after) for before, after in changes if before != after]
        for _, after in changes:
            self._put_local(after)

        try:
            for before, after in changes:
                await self.sync.update(user_id, after.id, ops.changed_fields(before, after))
        except LifeSignalError as exc:
            logger.warning(
                "Remote write failed, reverting local state",
                user_id=user_id,
                record_ids=[after.id for _, after in changes],
                error=str(exc),
            )
            for before, _ in changes:
                self._put_local(before)
            await self._reload(user_id, [before.id for before, _ in changes])
            raise

    async def _reload(self, user_id: str, record_ids: list[str]) -> None:
        for record_id in record_ids:
            try:
                self._put_local(await self.sync.get_record(user_id, record_id))
            except SyncFailure as exc:
                logger.warning("Reload failed", record_id=record_id, error=str(exc))
            except NotFound:
                if record_id != user_id and record_id in self.store:
                    self.store.remove(record_id)

    async def _mutate(
        self, mutation: Mutation, record_id: str | None = None
    ) -> tuple[PersonRecord, PersonRecord]:
        user_id = await self._resolve_user()
        before = self._local(record_id or user_id)
        after = mutation(before)
        await self._commit(user_id, [(before, after)])
        return before, after

    # -- notifications -------------------------------------------------------

    async def _notify(self, title: str, body: str) -> None:
        try:
            await self.notifier.show_local_notification(title, body)
        except Exception as exc:
            logger.warning("Local notification failed", title=title, error=str(exc))

    async def _reschedule_reminders(
        self, previous: PersonRecord, current: PersonRecord
    ) -> list[str]:
        old_expiration = expiration_of(previous)
        stale = [
            reminder_id(old_expiration, lead)
            for lead in (REMINDER_LEAD_30_MIN, REMINDER_LEAD_2_HOURS)
        ]
        scheduled = []
        try:
            await self.notifier.cancel_reminders(stale)
            for _, lead in reminder_times(current):
                scheduled.append(
                    await self.notifier.schedule_reminder(expiration_of(current), lead)
                )
        except Exception as exc:
            logger.warning("Reminder scheduling failed", error=str(exc))
        return scheduled

    # -- own record ----------------------------------------------------------

    async def check_in(self) -> PersonRecord:
        now = self.now_fn()
        before, after = await self._mutate(lambda r: ops.check_in(r, now))
        logger.info(
            "Checked in",
            user_id=self.user_id,
            expires_at=expiration_of(after).isoformat(),
        )
        if after.notifications_enabled:
            await self._reschedule_reminders(before, after)
        await self._notify(
            "Check-in Successful",
            "Your check-in has been recorded. Next check-in due in "
            f"{format_interval_full_units(after.check_in_interval)}.",
        )
        return after

    async def set_interval(self, interval: timedelta) -> PersonRecord:
        before, after = await self._mutate(lambda r: ops.set_interval(r, interval))
        if after.notifications_enabled:
            await self._reschedule_reminders(before, after)
        return after

    async def trigger_alert(self) -> PersonRecord:
        now = self.now_fn()
        _, after = await self._mutate(lambda r: ops.trigger_alert(r, now))
        logger.warning("Manual alert triggered", user_id=self.user_id)
        await self._notify("Alert Activated", "Your responders have been notified.")
        return after

    async def clear_alert(self) -> PersonRecord:
        _, after = await self._mutate(ops.clear_alert)
        logger.info("Manual alert cleared", user_id=self.user_id)
        await self._notify("Alert Canceled", "Your responders have been told you are safe.")
        return after

    async def update_notification_preferences(
        self,
        *,
        notifications_enabled: bool | None = None,
        notify_30_min_before: bool | None = None,
        notify_2_hours_before: bool | None = None,
    ) -> PersonRecord:
        before, after = await self._mutate(
            lambda r: ops.set_notification_preferences(
                r,
                notifications_enabled=notifications_enabled,
                notify_30_min_before=notify_30_min_before,
                notify_2_hours_before=notify_2_hours_before,
            )
        )
        if before != after:
            # reminder_times is empty when notifications are off
            await self._reschedule_reminders(before, after)
        return after

    # -- contacts ------------------------------------------------------------

    async def add_contact(
        self, qr_code_id: str, *, is_responder: bool, is_dependent: bool
    ) -> AddContactResult:
        if not (is_responder or is_dependent):
            raise InvalidRoleState()
        user_id = await self._resolve_user()

        other_id = await self.lookup.resolve(qr_code_id)
        if other_id == user_id:
            raise InvalidContact()

        already_existed = False
        try:
            contact_id = await self.sync.create_relationship(
                user_id, other_id, is_responder, is_dependent
            )
        except AlreadyExists:
            logger.info("Contact already exists", user_id=user_id, contact_id=other_id)
            contact_id = other_id
            already_existed = True

        contact = await self.sync.get_record(user_id, contact_id)
        if contact.id in self.store:
            self.store.replace(contact)
        else:
            self.store.add(contact)
        return AddContactResult(contact=contact, already_existed=already_existed)

    async def remove_contact(self, contact_id: str) -> None:
        user_id = await self._resolve_user()
        if contact_id not in self.store:
            raise NotFound()
        await self.sync.delete_relationship(user_id, contact_id)
        self.store.remove(contact_id)

        subscription = self._subscriptions.get(contact_id)
        if subscription is not None:
            subscription.cancel()
        logger.info("Contact removed", user_id=user_id, contact_id=contact_id)

    async def update_contact_roles(
        self, contact_id: str, *, is_responder: bool, is_dependent: bool
    ) -> PersonRecord:
        if not (is_responder or is_dependent):
            raise InvalidRoleState()
        _, after = await self._mutate(
            lambda r: ops.set_roles(r, is_responder, is_dependent), contact_id
        )
        return after

    async def ping_dependent(self, contact_id: str) -> PersonRecord:
        now = self.now_fn()
        _, after = await self._mutate(lambda r: ops.send_ping(r, now), contact_id)
        logger.info("Ping sent", user_id=self.user_id, contact_id=contact_id)
        return after

    async def clear_ping(self, contact_id: str) -> PersonRecord:
        _, after = await self._mutate(ops.clear_ping, contact_id)
        return after

    async def respond_to_ping(self, contact_id: str) -> PersonRecord:
        _, after = await self._mutate(ops.respond_to_ping, contact_id)
        logger.info("Ping answered", user_id=self.user_id, contact_id=contact_id)
        return after

    async def respond_to_all_pings(self) -> list[PersonRecord]:
        user_id = await self._resolve_user()
        # a contact no longer a responder keeps its ping until the role comes back
        pinged = [r for r in self.store if r.is_responder and r.has_incoming_ping]
        answered = ops.respond_to_all_pings(pinged)
        await self._commit(user_id, list(zip(pinged, answered)))
        logger.info("All pings answered", user_id=user_id, count=len(answered))
        return answered

    # -- views ---------------------------------------------------------------

    def sorted_contacts(self) -> list[PersonRecord]:
        return sort_by_status(self.store, self.now_fn())

    def statuses(self) -> dict[str, ContactStatus]:
        now = self.now_fn()
        return {r.id: classify(r, now) for r in self.store}

    # -- live listeners ------------------------------------------------------

    async def watch(self, record_id: str | None = None) -> Subscription:
        """
        Keep one record (own record by default) in sync with the document
        store until the returned subscription is cancelled.
        """
        user_id = await self._resolve_user()
        record_id = record_id or user_id

        existing = self._subscriptions.get(record_id)
        if existing is not None and existing.active:
            return existing

        stream = self.sync.subscribe(user_id, record_id)
        task = asyncio.create_task(self._consume(record_id, stream))
        subscription = Subscription(record_id, task)
        self._subscriptions[record_id] = subscription

        def _cleanup(_t: asyncio.Task) -> None:
            if self._subscriptions.get(record_id) is subscription:
                del self._subscriptions[record_id]

        task.add_done_callback(_cleanup)
        return subscription

    async def _consume(
        self, record_id: str, stream: AsyncIterator[PersonRecord]
    ) -> None:
        try:
            async with aclosing(stream):
                async for snapshot in stream:
                    self.apply_snapshot(snapshot)
        except SyncFailure as exc:
            logger.warning("Listener stopped", record_id=record_id, error=str(exc))

    async def unwatch_all(self) -> None:
        subscriptions = list(self._subscriptions.values())
        for subscription in subscriptions:
            subscription.cancel()
        await asyncio.gather(
            *(s.wait_closed() for s in subscriptions), return_exceptions=True
        )
