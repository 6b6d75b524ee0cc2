"""
Error taxonomy shared by the model, the session and the HTTP surface.

Every error carries a short ``user_message`` suitable for an alert and a
``retryable`` flag telling the UI whether to offer a retry button.
"""


class LifeSignalError(Exception):
    default_message = "Something went wrong."
    retryable = False

    def __init__(self, message: str | None = None, *, retryable: bool | None = None):
        super().__init__(message or self.default_message)
        if retryable is not None:
            self.retryable = retryable

    @property
    def user_message(self) -> str:
        return str(self)

    @property
    def code(self) -> str:
        return type(self).__name__


class NotAuthenticated(LifeSignalError):
    default_message = "You are signed out. Sign in and try again."


class NotFound(LifeSignalError):
    default_message = "That contact could not be found."


class DuplicateContact(LifeSignalError):
    default_message = "This person is already one of your contacts."


# relationship creation reports the same condition under this name
AlreadyExists = DuplicateContact


class InvalidRoleState(LifeSignalError):
    default_message = "Choose at least one role: responder or dependent."


class InvalidInterval(LifeSignalError):
    default_message = "The check-in interval must be longer than zero."


class RoleRequired(LifeSignalError):
    def __init__(self, role: str, contact_id: str | None = None):
        self.role = role
        self.contact_id = contact_id
        super().__init__(f"This action is only available for a {role}.")


class InvalidContact(LifeSignalError):
    default_message = "You cannot add yourself as a contact."


class SyncFailure(LifeSignalError):
    default_message = "Could not reach the server. Check your connection and retry."
    retryable = True
