from collections.abc import Iterable, Iterator

from lifesignal.errors import DuplicateContact, InvalidRoleState, NotFound
from lifesignal.models import PersonRecord
from lifesignal.operations import set_roles


class RelationshipStore:
    """
    In-memory contact collection for one signed-in user.

    A single insertion-ordered dict is both the list and the id index, so the
    two can never disagree. ``responders()`` and ``dependents()`` are computed
    from it on every call.
    """

    def __init__(self, records: Iterable[PersonRecord] = ()) -> None:
        self._records: dict[str, PersonRecord] = {}
        self.reset(records)

    def add(self, record: PersonRecord) -> None:
        if record.id in self._records:
            raise DuplicateContact(contact_message(record))
        if not record.has_role:
            raise InvalidRoleState()
        self._records[record.id] = record

    def remove(self, contact_id: str) -> PersonRecord:
        try:
            return self._records.pop(contact_id)
        except KeyError:
            raise NotFound() from None

    def update_roles(
        self, contact_id: str, is_responder: bool, is_dependent: bool
    ) -> PersonRecord:
        if not (is_responder or is_dependent):
            raise InvalidRoleState()
        record = self._records.get(contact_id)
        if record is None:
            raise NotFound()

        updated = set_roles(record, is_responder, is_dependent)
        self._records[contact_id] = updated
        return updated

    def get(self, contact_id: str) -> PersonRecord | None:
        return self._records.get(contact_id)

    def replace(self, record: PersonRecord) -> bool:
        """
        Store an authoritative snapshot in place of whatever is held for its
        id. Returns False when the snapshot matches what is already stored.
        """
        if self._records.get(record.id) == record:
            return False
        self._records[record.id] = record
        return True

    def reset(self, records: Iterable[PersonRecord]) -> None:
        fresh: dict[str, PersonRecord] = {}
        for record in records:
            if record.id in fresh:
                raise DuplicateContact(contact_message(record))
            fresh[record.id] = record
        self._records = fresh

    def responders(self) -> list[PersonRecord]:
        return [r for r in self._records.values() if r.is_responder]

    def dependents(self) -> list[PersonRecord]:
        return [r for r in self._records.values() if r.is_dependent]

    def all(self) -> list[PersonRecord]:
        return list(self._records.values())

    def __iter__(self) -> Iterator[PersonRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, contact_id: object) -> bool:
        return contact_id in self._records


def contact_message(record: PersonRecord) -> str:
    name = record.name or "This person"
    return f"{name} is already one of your contacts."
