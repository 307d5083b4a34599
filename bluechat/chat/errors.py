"""Exceptions raised by the chat core.

All of these are local, synchronous validation failures. None of them are
retried internally; retry policy belongs to the caller.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for chat core errors."""


class UnknownDeviceError(ChatError):
    """An operation referenced a device ID absent from the registry."""

    def __init__(self, device_id: str):
        super().__init__(f"unknown device: {device_id!r}")
        self.device_id = device_id


class NotConnectedError(ChatError):
    """An operation required a connection that does not exist."""

    def __init__(self, device_id: str | None):
        if device_id is None:
            msg = "no active device selected"
        else:
            msg = f"device {device_id!r} is not connected"
        super().__init__(msg)
        self.device_id = device_id


class ConnectFailedError(ChatError):
    """The peer transport could not open a link; the device stays discovered."""

    def __init__(self, device_id: str, reason: str = ""):
        detail = f": {reason}" if reason else ""
        super().__init__(f"could not connect to {device_id!r}{detail}")
        self.device_id = device_id
        self.reason = reason


class InvalidMessageError(ChatError):
    """Message content is empty or exceeds the length limit."""


class PersistenceError(Exception):
    """A snapshot backend failed to load or save.

    Raised by backends only; ``ConversationStore`` catches it and keeps
    operating in memory.
    """
