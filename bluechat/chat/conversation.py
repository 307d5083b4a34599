"""Per-device conversation threads and snapshot persistence.

Storage model
-------------
A single append-only log of immutable ``Message`` objects, plus a
per-device index so a thread can be read without scanning the whole log.
Entries are never edited or deleted.

Persistence
-----------
The full log is a *snapshot*: a last-write-wins projection of the
in-memory state, written through a ``SnapshotBackend``. With autosave on
(the default) every append writes the snapshot; callers that want to
coalesce writes turn autosave off and call ``save_snapshot()`` themselves.

Backend failures never propagate out of the store. They are logged,
recorded in ``ConversationStore.persistence_error`` and reported to the
``on_persistence_error`` hook, and the store keeps working in memory.
"""

from __future__ import annotations

import abc
import json
import os
import threading
import time
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping

from loguru import logger

from bluechat.chat.errors import InvalidMessageError, PersistenceError

MAX_CONTENT_LENGTH = 500
DEFAULT_NAMESPACE = "bluetooth-chat-messages"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class Direction(str, Enum):
    """Who authored a message."""
    OUTBOUND = "outbound"   # written locally
    INBOUND = "inbound"     # attributed to the peer


def _parse_timestamp(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    # Browser snapshots store ISO-8601 strings, often with a trailing "Z"
    text = str(value).replace("Z", "+00:00")
    return datetime.fromisoformat(text).timestamp()


@dataclass(frozen=True)
class Message:
    """One chat message. Immutable once created.

    ``id`` and ``timestamp`` may be left unset; ``ConversationStore.append``
    fills them in.
    """

    device_id: str
    device_name: str
    content: str
    direction: Direction
    id: str = ""
    timestamp: float | None = None

    @property
    def outbound(self) -> bool:
        return self.direction == Direction.OUTBOUND

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "device_id": self.device_id,
            "device_name": self.device_name,
            "content": self.content,
            "timestamp": self.timestamp,
            "direction": self.direction.value,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> Message:
        """Rebuild a message from ``to_dict()`` output.

        The legacy browser shape (``deviceId``, ``deviceName``, ISO
        timestamp, boolean ``sent``) is accepted as well.
        """
        if "direction" in d:
            direction = Direction(d["direction"])
        else:
            direction = Direction.OUTBOUND if d.get("sent") else Direction.INBOUND
        return cls(
            id=str(d.get("id") or ""),
            device_id=str(d["device_id"] if "device_id" in d else d["deviceId"]),
            device_name=str(d.get("device_name", d.get("deviceName", ""))),
            content=str(d["content"]),
            timestamp=_parse_timestamp(d.get("timestamp")),
            direction=direction,
        )


def validate_content(content: str) -> None:
    """Raise ``InvalidMessageError`` unless *content* is sendable."""
    if not isinstance(content, str) or not content.strip():
        raise InvalidMessageError("message content must not be empty")
    if len(content) > MAX_CONTENT_LENGTH:
        raise InvalidMessageError(
            f"message content is {len(content)} characters "
            f"(max {MAX_CONTENT_LENGTH})"
        )


# ---------------------------------------------------------------------------
# Snapshot backends
# ---------------------------------------------------------------------------

class SnapshotBackend(abc.ABC):
    """Load/save contract for the full message log.

    Absence of prior data is not an error: ``load()`` returns ``[]``.
    Other failures raise ``PersistenceError``.
    """

    @abc.abstractmethod
    def load(self) -> list[Message]:
        ...

    @abc.abstractmethod
    def save(self, messages: Iterable[Message]) -> None:
        ...


class MemorySnapshotBackend(SnapshotBackend):
    """Keeps the last saved snapshot in memory. Useful for tests."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self.saved: list[Message] = list(messages)
        self.save_count = 0

    def load(self) -> list[Message]:
        return list(self.saved)

    def save(self, messages: Iterable[Message]) -> None:
        self.saved = list(messages)
        self.save_count += 1


class JsonSnapshotBackend(SnapshotBackend):
    """Stores the snapshot as ``<directory>/<namespace>.json``.

    Writes go to a temporary file first and are moved into place with
    ``os.replace`` so a crash never leaves a half-written snapshot.
    """

    def __init__(self, directory: str | Path, namespace: str = DEFAULT_NAMESPACE):
        self.path = Path(directory).expanduser() / f"{namespace}.json"

    def load(self) -> list[Message]:
        if not self.path.exists():
            logger.debug(f"[Conversation] no snapshot at {self.path}, starting fresh")
            return []
        try:
            text = self.path.read_text(encoding="utf-8").strip()
            if not text:
                return []
            data = json.loads(text)
        except (json.JSONDecodeError, OSError) as exc:
            raise PersistenceError(f"failed to read {self.path}: {exc}") from exc

        # A bare list is the browser's localStorage layout
        if isinstance(data, list):
            entries = data
        elif isinstance(data, dict) and isinstance(data.get("messages", []), list):
            entries = data.get("messages", [])
        else:
            raise PersistenceError(f"unrecognised snapshot layout in {self.path}")
        messages: list[Message] = []
        for entry in entries:
            try:
                messages.append(Message.from_dict(entry))
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning(f"[Conversation] skipping malformed message entry: {exc}")
        return messages

    def save(self, messages: Iterable[Message]) -> None:
        data = {
            "version": 1,
            "updated_at": time.time(),
            "messages": [m.to_dict() for m in messages],
        }
        tmp = self.path.with_suffix(".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(str(tmp), str(self.path))
        except OSError as exc:
            raise PersistenceError(f"failed to write {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ConversationStore:
    """Append-only message log keyed by device ID.

    Thread / async safety
    ---------------------
    ``append`` runs under a re-entrant lock, so deferred callbacks firing
    from a timer thread can never interleave a partial append or produce
    duplicate IDs.
    """

    def __init__(
        self,
        backend: SnapshotBackend | None = None,
        *,
        autosave: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend or MemorySnapshotBackend()
        self.autosave = autosave
        self._clock = clock
        self._lock = threading.RLock()
        self._messages: list[Message] = []
        self._by_id: dict[str, Message] = {}
        self._threads: dict[str, list[Message]] = {}
        self.persistence_error: str | None = None
        self.on_persistence_error: Callable[[str], Any] | None = None
        self._append_callbacks: list[Callable[[Message], Any]] = []

    def on_append(self, callback: Callable[[Message], Any]) -> None:
        """Register a callback invoked with each newly stored message."""
        self._append_callbacks.append(callback)

    # -- mutation ------------------------------------------------------------

    def append(self, message: Message) -> Message:
        """Validate, complete and store *message*; return the stored copy.

        Re-appending a message whose ID is already stored is a no-op that
        returns the stored entry. Reusing a stored ID for a different
        message raises ``InvalidMessageError``.
        """
        validate_content(message.content)
        with self._lock:
            if message.id and message.id in self._by_id:
                existing = self._by_id[message.id]
                if replace(existing, timestamp=message.timestamp) != message:
                    raise InvalidMessageError(
                        f"message id {message.id!r} is already used by another message"
                    )
                logger.debug(f"[Conversation] message {message.id} already stored")
                return existing

            thread = self._threads.setdefault(message.device_id, [])
            ts = message.timestamp if message.timestamp is not None else self._clock()
            if thread and thread[-1].timestamp is not None and ts < thread[-1].timestamp:
                ts = thread[-1].timestamp
            stored = replace(message, id=message.id or uuid.uuid4().hex, timestamp=ts)

            self._messages.append(stored)
            self._by_id[stored.id] = stored
            thread.append(stored)
            logger.debug(
                f"[Conversation] {stored.direction.value} message on "
                f"{stored.device_id} ({len(stored.content)} chars)"
            )
            if self.autosave:
                self.save_snapshot()
        for cb in self._append_callbacks:
            try:
                cb(stored)
            except Exception as exc:
                logger.error(f"[Conversation] append callback error: {exc}")
        return stored

    # -- queries -------------------------------------------------------------

    def thread_for(self, device_id: str) -> Iterator[Message]:
        """Iterate the thread for *device_id* in append order.

        Each call starts a fresh iteration over the thread as it stood at
        call time; nothing is consumed.
        """
        with self._lock:
            snapshot = tuple(self._threads.get(device_id, ()))
        return iter(snapshot)

    def messages(self) -> list[Message]:
        """Return the whole log in append order."""
        with self._lock:
            return list(self._messages)

    def count(self, device_id: str) -> int:
        with self._lock:
            return len(self._threads.get(device_id, ()))

    def device_ids(self) -> list[str]:
        """IDs of every device that has at least one message."""
        with self._lock:
            return list(self._threads)

    def __len__(self) -> int:
        return len(self._messages)

    # -- persistence ---------------------------------------------------------

    def load_snapshot(self) -> list[Message]:
        """Replace the in-memory log with the backend's snapshot.

        Returns the loaded messages. A failing backend leaves the current
        log in place and returns it unchanged.
        """
        try:
            loaded = self.backend.load()
        except PersistenceError as exc:
            self._report_persistence_error(str(exc))
            return self.messages()

        with self._lock:
            self._messages = []
            self._by_id = {}
            self._threads = {}
            for m in loaded:
                if not m.id or m.id in self._by_id:
                    m = replace(m, id=uuid.uuid4().hex)
                if m.timestamp is None:
                    m = replace(m, timestamp=self._clock())
                self._messages.append(m)
                self._by_id[m.id] = m
                self._threads.setdefault(m.device_id, []).append(m)
            self.persistence_error = None
        logger.info(f"[Conversation] loaded {len(loaded)} messages from snapshot")
        return self.messages()

    def save_snapshot(self) -> bool:
        """Write the full log through the backend. Returns True on success."""
        with self._lock:
            snapshot = list(self._messages)
        try:
            self.backend.save(snapshot)
        except PersistenceError as exc:
            self._report_persistence_error(str(exc))
            return False
        self.persistence_error = None
        return True

    def _report_persistence_error(self, error: str) -> None:
        self.persistence_error = error
        logger.warning(f"[Conversation] persistence failed, continuing in memory: {error}")
        if self.on_persistence_error is not None:
            try:
                self.on_persistence_error(error)
            except Exception as exc:
                logger.error(f"[Conversation] persistence hook error: {exc}")
