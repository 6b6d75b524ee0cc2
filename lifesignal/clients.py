"""
Interfaces of the external collaborators the session talks to.

Implemented by the in-memory backends in ``lifesignal.database`` and, in
production, by adapters over the real auth/document/notification services.
"""

from collections.abc import AsyncIterator, Iterable
from datetime import datetime, timedelta
from typing import Any, Protocol

from lifesignal.models import PersonRecord


class AuthClient(Protocol):
    async def current_user_id(self) -> str:
        """Id of the signed-in user. Raises NotAuthenticated when signed out."""
        ...


class SyncClient(Protocol):
    """
    Document store holding each user's own record and the view they hold of
    each contact. ``record_id == owner_id`` addresses the user's own record.
    Failures surface as SyncFailure.
    """

    async def get_record(self, owner_id: str, record_id: str) -> PersonRecord: ...

    async def list_contacts(self, owner_id: str) -> list[PersonRecord]: ...

    def subscribe(self, owner_id: str, record_id: str) -> AsyncIterator[PersonRecord]:
        """Full snapshots of one record, current value first."""
        ...

    async def update(
        self, owner_id: str, record_id: str, fields: dict[str, Any]
    ) -> None: ...

    async def create_relationship(
        self,
        self_id: str,
        other_id: str,
        is_responder: bool,
        is_dependent: bool,
    ) -> str:
        """Returns the new contact id. Raises AlreadyExists or NotFound."""
        ...

    async def delete_relationship(self, self_id: str, other_id: str) -> None: ...


class NotificationClient(Protocol):
    async def schedule_reminder(self, expiration: datetime, lead: timedelta) -> str: ...

    async def cancel_reminders(self, reminder_ids: Iterable[str]) -> None: ...

    async def show_local_notification(self, title: str, body: str) -> None: ...


class IdentifierLookup(Protocol):
    async def resolve(self, qr_code_id: str) -> str:
        """User id behind a scanned QR code. Raises NotFound."""
        ...
