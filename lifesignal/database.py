import asyncio
from collections.abc import AsyncIterator, Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from lifesignal.errors import AlreadyExists, NotAuthenticated, NotFound
from lifesignal.models import PersonRecord, utcnow
from lifesignal.observability import get_logger
from lifesignal.timing import reminder_id

logger = get_logger(__name__)

NowFn = Callable[[], datetime]

# fields of a user's own record that every contact's view of them mirrors
SHARED_PROFILE_FIELDS = (
    "name",
    "phoneNumber",
    "note",
    "lastCheckedIn",
    "checkInInterval",
    "manualAlertActive",
    "manualAlertTimestamp",
)

# a ping written on A's view of B lands on B's view of A with the direction swapped
PING_MIRROR = {
    "hasOutgoingPing": "hasIncomingPing",
    "outgoingPingTimestamp": "incomingPingTimestamp",
    "hasIncomingPing": "hasOutgoingPing",
    "incomingPingTimestamp": "outgoingPingTimestamp",
}


class InMemoryDocumentStore:
    """
    In-memory stand-in for the document database.

    Holds each user's own record plus, per user, the view they keep of each
    contact. Writes to a user's own record are copied into every view other
    users hold of them and every write is pushed to live subscribers. A ping
    written on one side of a relationship shows up reversed on the other.
    """

    def __init__(self, now_fn: NowFn = utcnow) -> None:
        self._users: dict[str, PersonRecord] = {}
        self._contacts: dict[str, dict[str, PersonRecord]] = {}
        self._qr_index: dict[str, str] = {}
        self._listeners: dict[tuple[str, str], set[asyncio.Queue]] = {}
        self.now_fn = now_fn

    def put_user(self, record: PersonRecord) -> None:
        self._users[record.id] = record
        self._contacts.setdefault(record.id, {})
        if record.qr_code_id:
            self._qr_index[record.qr_code_id] = record.id
        self._publish(record.id, record.id, record)

    def user_for_qr_code(self, qr_code_id: str) -> str | None:
        return self._qr_index.get(qr_code_id)

    def listener_count(self, owner_id: str, record_id: str) -> int:
        return len(self._listeners.get((owner_id, record_id), ()))

    def _lookup(self, owner_id: str, record_id: str) -> PersonRecord:
        if record_id == owner_id:
            record = self._users.get(owner_id)
        else:
            record = self._contacts.get(owner_id, {}).get(record_id)
        if record is None:
            raise NotFound()
        return record

    def _store(self, owner_id: str, record: PersonRecord) -> None:
        if record.id == owner_id:
            self._users[owner_id] = record
        else:
            self._contacts[owner_id][record.id] = record
        self._publish(owner_id, record.id, record)

    def _publish(self, owner_id: str, record_id: str, record: PersonRecord) -> None:
        for queue in self._listeners.get((owner_id, record_id), ()):
            queue.put_nowait(record)

    async def get_record(self, owner_id: str, record_id: str) -> PersonRecord:
        return self._lookup(owner_id, record_id)

    async def list_contacts(self, owner_id: str) -> list[PersonRecord]:
        if owner_id not in self._users:
            raise NotFound("Your profile could not be found.")
        return list(self._contacts[owner_id].values())

    async def subscribe(
        self, owner_id: str, record_id: str
    ) -> AsyncIterator[PersonRecord]:
        key = (owner_id, record_id)
        queue: asyncio.Queue[PersonRecord] = asyncio.Queue()
        self._listeners.setdefault(key, set()).add(queue)
        logger.debug("Listener attached", owner_id=owner_id, record_id=record_id)
        try:
            current = self._users.get(owner_id) if record_id == owner_id else (
                self._contacts.get(owner_id, {}).get(record_id)
            )
            if current is not None:
                yield current
            while True:
                yield await queue.get()
        finally:
            listeners = self._listeners.get(key)
            if listeners is not None:
                listeners.discard(queue)
                if not listeners:
                    del self._listeners[key]
            logger.debug("Listener released", owner_id=owner_id, record_id=record_id)

    async def update(
        self, owner_id: str, record_id: str, fields: dict[str, Any]
    ) -> None:
        current = self._lookup(owner_id, record_id)
        document = {**current.to_document(), **fields, "lastUpdated": self.now_fn()}
        updated = PersonRecord.model_validate(document)
        self._store(owner_id, updated)

        if record_id != owner_id:
            self._mirror_ping(owner_id, record_id, fields)
            return

        shared = {k: v for k, v in fields.items() if k in SHARED_PROFILE_FIELDS}
        if not shared:
            return
        for other_id in self._contacts[owner_id]:
            view = self._contacts.get(other_id, {}).get(owner_id)
            if view is None:
                continue
            mirrored = PersonRecord.model_validate(
                {**view.to_document(), **shared, "lastUpdated": self.now_fn()}
            )
            self._store(other_id, mirrored)

    def _mirror_ping(
        self, owner_id: str, contact_id: str, fields: dict[str, Any]
    ) -> None:
        swapped = {PING_MIRROR[k]: v for k, v in fields.items() if k in PING_MIRROR}
        view = self._contacts.get(contact_id, {}).get(owner_id)
        if not swapped or view is None:
            return
        self._store(
            contact_id,
            PersonRecord.model_validate(
                {**view.to_document(), **swapped, "lastUpdated": self.now_fn()}
            ),
        )
        logger.debug(
            "Ping mirrored", owner_id=owner_id, contact_id=contact_id, fields=sorted(swapped)
        )

    def _view_of(
        self, user: PersonRecord, is_responder: bool, is_dependent: bool
    ) -> PersonRecord:
        profile = {k: v for k, v in user.to_document().items() if k in SHARED_PROFILE_FIELDS}
        return PersonRecord.model_validate(
            {
                **profile,
                "id": user.id,
                "qrCodeId": user.qr_code_id,
                "isResponder": is_responder,
                "isDependent": is_dependent,
                "addedAt": self.now_fn(),
            }
        )

    async def create_relationship(
        self,
        self_id: str,
        other_id: str,
        is_responder: bool,
        is_dependent: bool,
    ) -> str:
        me = self._users.get(self_id)
        other = self._users.get(other_id)
        if me is None or other is None:
            raise NotFound()
        if other_id in self._contacts[self_id]:
            raise AlreadyExists()

        # the other side sees the roles swapped
        self._store(self_id, self._view_of(other, is_responder, is_dependent))
        self._store(other_id, self._view_of(me, is_dependent, is_responder))
        logger.info(
            "Relationship created",
            self_id=self_id,
            other_id=other_id,
            is_responder=is_responder,
            is_dependent=is_dependent,
        )
        return other_id

    async def delete_relationship(self, self_id: str, other_id: str) -> None:
        mine = self._contacts.get(self_id, {})
        if other_id not in mine:
            raise NotFound()
        del mine[other_id]
        self._contacts.get(other_id, {}).pop(self_id, None)
        logger.info("Relationship deleted", self_id=self_id, other_id=other_id)


class InMemoryAuth:
    def __init__(self, user_id: str | None = None) -> None:
        self.user_id = user_id

    def sign_in(self, user_id: str) -> None:
        self.user_id = user_id

    def sign_out(self) -> None:
        self.user_id = None

    async def current_user_id(self) -> str:
        if self.user_id is None:
            raise NotAuthenticated()
        return self.user_id


class InMemoryIdentifierLookup:
    def __init__(self, db: InMemoryDocumentStore) -> None:
        self.db = db

    async def resolve(self, qr_code_id: str) -> str:
        user_id = self.db.user_for_qr_code(qr_code_id)
        if user_id is None:
            raise NotFound("No LifeSignal user matches that QR code.")
        return user_id


class InMemoryNotifier:
    """Records what would have been delivered."""

    def __init__(self) -> None:
        self.scheduled: dict[str, datetime] = {}
        self.cancelled: list[str] = []
        self.shown: list[tuple[str, str]] = []

    async def schedule_reminder(self, expiration: datetime, lead: timedelta) -> str:
        rid = reminder_id(expiration, lead)
        self.scheduled[rid] = expiration - lead
        return rid

    async def cancel_reminders(self, reminder_ids: Iterable[str]) -> None:
        for rid in reminder_ids:
            if self.scheduled.pop(rid, None) is not None:
                self.cancelled.append(rid)

    async def show_local_notification(self, title: str, body: str) -> None:
        self.shown.append((title, body))
