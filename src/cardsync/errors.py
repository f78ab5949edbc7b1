"""Error types shared across the sync core.

Remote failures carry a `kind` so callers can decide between retrying on the
next tick (transient), skipping the entity (protocol) or surfacing the failure
to the user (authn). Local failures are plain exception classes.
"""

from __future__ import annotations

from enum import Enum

__all__ = [
    "CardDAVError",
    "ClientCreateError",
    "ContactNotFound",
    "ContextCancelled",
    "DeadlineExceeded",
    "ErrorKind",
    "InvalidCiphertext",
    "InvalidVCard",
    "RemoteAuthError",
    "RemoteNetworkError",
    "RemoteProtocolError",
    "SubscriptionNotFound",
    "SyncError",
    "UnreachableCollection",
]


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PROTOCOL = "protocol"
    AUTHN = "authn"


class SyncError(Exception):
    """Base class for every error raised by cardsync."""


class SubscriptionNotFound(SyncError):
    def __init__(self, subscription_id: str = "") -> None:
        super().__init__(f"subscription not found: {subscription_id}" if subscription_id else "subscription not found")
        self.subscription_id = subscription_id


class ContactNotFound(SyncError):
    def __init__(self, contact_id: str = "") -> None:
        super().__init__(f"contact not found: {contact_id}" if contact_id else "contact not found")
        self.contact_id = contact_id


class InvalidCiphertext(SyncError):
    """Password blob was sealed under another key or is malformed."""


class ClientCreateError(SyncError):
    pass


class InvalidVCard(SyncError):
    pass


class ContextCancelled(SyncError):
    pass


class DeadlineExceeded(ContextCancelled):
    pass


class CardDAVError(SyncError):
    kind: ErrorKind = ErrorKind.PROTOCOL

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RemoteNetworkError(CardDAVError):
    kind = ErrorKind.TRANSIENT


class RemoteProtocolError(CardDAVError):
    kind = ErrorKind.PROTOCOL


class RemoteAuthError(CardDAVError):
    kind = ErrorKind.AUTHN


class UnreachableCollection(RemoteProtocolError):
    """The server does not advertise the requested collection."""
