"""Error taxonomy shared by the backend functions and device clients.

Each error carries a machine-readable ``code`` (matching the callable
function error codes the mobile apps understand) and a ``user_message``
suitable for direct display.
"""


class WatchWiseError(Exception):
    code = "internal"
    user_message = "Something went wrong. Please try again."

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.user_message)
        self.detail = detail


class Unauthenticated(WatchWiseError):
    code = "unauthenticated"
    user_message = "You must be signed in to do this."


class InvalidFormat(WatchWiseError):
    code = "invalid-argument"
    user_message = "The request was not formatted correctly."


class InvalidCodeFormat(InvalidFormat):
    user_message = "Please enter a valid 6-digit pairing code."


class NotFound(WatchWiseError):
    code = "not-found"
    user_message = "The requested item could not be found."


class CodeNotFound(NotFound):
    user_message = "Invalid pairing code. Please check the code and try again."


class RelationshipNotFound(NotFound):
    user_message = "This device is no longer linked."


class RestrictionNotFound(NotFound):
    user_message = "App restriction not found."


class CodeExpired(WatchWiseError):
    code = "deadline-exceeded"
    user_message = "This pairing code has expired. Please generate a new code."


class AlreadyExists(WatchWiseError):
    code = "already-exists"
    user_message = "This item already exists."


class AlreadyPaired(AlreadyExists):
    user_message = "This device is already paired with your account."


class PermissionDenied(WatchWiseError):
    code = "permission-denied"
    user_message = "You are not allowed to change this device."


class TransientStoreFailure(WatchWiseError):
    code = "unavailable"
    user_message = "Network error. Please check your connection and try again."


class MalformedDocument(TransientStoreFailure):
    """A stored document failed schema validation."""
