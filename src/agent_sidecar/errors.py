"""Exception types raised inside the sidecar.

Every error here is caught at the boundary of the unit of work that raised it
(one request or one session turn) and turned into an `error` message followed
by `request_complete`. None of them escape to the broker loop.
"""

from __future__ import annotations


class SidecarError(Exception):
    """Base class for sidecar failures."""


class ProtocolError(SidecarError):
    """An inbound line could not be turned into a control message."""

    def __init__(self, message: str, *, request_id: str | None = None) -> None:
        super().__init__(message)
        self.request_id = request_id


class InvalidConfigError(ProtocolError):
    """The request configuration failed validation."""


class SessionStateError(SidecarError):
    """A stream session was asked to do something its state forbids."""


class ConversationNotFoundError(SidecarError):
    """The engine has no conversation for the id being resumed."""


class ConversationClosedError(SidecarError):
    """A conversation handle was used after being closed."""


__all__ = [
    "ConversationClosedError",
    "ConversationNotFoundError",
    "InvalidConfigError",
    "ProtocolError",
    "SessionStateError",
    "SidecarError",
]
