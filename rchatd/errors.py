"""Error taxonomy shared by the hub components.

Each error carries a short ``code`` that is sent to clients inside ERROR
events, so the wire contract does not depend on exception class names.
"""

from __future__ import annotations


class ChatError(Exception):
    code = "error"


class AuthError(ChatError):
    """Invalid, tampered or expired credential. The connection is refused."""

    code = "auth"


class PermissionDeniedError(ChatError):
    """Sender is not a member, or a ban applies."""

    code = "forbidden"


class NotFoundError(ChatError):
    """Unknown target user, group or partition."""

    code = "not_found"


class StorageError(ChatError):
    """Message log I/O failed; nothing was persisted."""

    code = "storage"


class TransportError(ChatError):
    """The peer went away while work was in flight."""

    code = "transport"


class InvalidRequestError(ChatError, ValueError):
    code = "invalid"
