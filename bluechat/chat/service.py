"""ChatService — composes the chat core into one coordinating object.

Each component keeps its own mutation rights:

- ``DeviceRegistry``    — discovery only
- ``SessionManager``    — connected set and active device
- ``ConversationStore`` — message log
- ``ResponseSimulator`` — deferred replies

``ChatService`` wires them together, exposes the operations a
presentation layer needs, and re-publishes component activity as a single
event stream (``on_event``).

Usage
-----
>>> service = ChatService(scheduler=ManualScheduler())
>>> service.start()
>>> device = service.discover({"id": "d1", "name": "Alice"})
>>> device = service.connect("d1")
>>> device = service.select("d1")
>>> sent = service.send_message("hi")
"""

from __future__ import annotations

import random
import time
from typing import Any, Callable, Mapping

from loguru import logger

from bluechat.chat.conversation import (
    ConversationStore,
    Direction,
    JsonSnapshotBackend,
    Message,
    SnapshotBackend,
    validate_content,
)
from bluechat.chat.discovery import BleakDiscovery, DiscoveryAdapter, SimulatedDiscovery
from bluechat.chat.errors import NotConnectedError, UnknownDeviceError
from bluechat.chat.registry import Device, DeviceRegistry, DiscoveryRecord
from bluechat.chat.responder import ResponseSimulator
from bluechat.chat.scheduler import AsyncioScheduler, Scheduler
from bluechat.chat.session import PeerTransport, SessionManager
from bluechat.config.schema import ChatConfig

# Callback type for service events: (event_type, payload)
ServiceEventCallback = Callable[[str, dict[str, Any]], Any]
# event types: "discovered", "connected", "disconnected", "selected",
#              "message", "scan_complete", "persistence_failed"


class ChatService:
    """Device sessions plus per-device conversation threads.

    Parameters
    ----------
    config:
        Full configuration; defaults to ``ChatConfig()``.
    scheduler:
        Deferred-callback runner. Defaults to ``AsyncioScheduler`` (needs a
        running loop when the first callback is scheduled).
    backend:
        Snapshot backend. Defaults to a JSON file under
        ``config.storage.data_dir``.
    rng:
        Random source for the reply simulator. Defaults to
        ``random.Random(config.responder.seed)``.
    transport:
        Peer transport for the session manager (simulated by default).
    adapter:
        Default discovery adapter for ``scan()``.
    """

    def __init__(
        self,
        config: ChatConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
        backend: SnapshotBackend | None = None,
        rng: random.Random | None = None,
        transport: PeerTransport | None = None,
        adapter: DiscoveryAdapter | None = None,
    ) -> None:
        self.config = config or ChatConfig()
        cfg = self.config
        self.scheduler = scheduler or AsyncioScheduler()
        self.adapter = adapter or (
            SimulatedDiscovery() if cfg.discovery.simulated_devices else BleakDiscovery()
        )

        self.registry = DeviceRegistry(
            refresh_on_rediscovery=cfg.discovery.refresh_on_rediscovery,
        )
        self.store = ConversationStore(
            backend or JsonSnapshotBackend(cfg.storage.data_path, cfg.storage.namespace),
            autosave=cfg.storage.autosave,
        )
        self.session = SessionManager(
            self.registry,
            self.store,
            self.scheduler,
            transport=transport,
            welcome_delay=cfg.session.welcome_delay,
            welcome_text=cfg.session.welcome_text,
            deliver_after_disconnect=cfg.session.deliver_after_disconnect,
        )
        self.responder = ResponseSimulator(
            self.store,
            self.scheduler,
            replies=[r for r in cfg.responder.replies if r.strip()],
            min_delay=cfg.responder.min_delay,
            max_delay=cfg.responder.max_delay,
            rng=rng or random.Random(cfg.responder.seed),
            is_connected=self.session.is_connected,
            deliver_after_disconnect=cfg.responder.deliver_after_disconnect,
        )

        self._event_callbacks: list[ServiceEventCallback] = []
        self._started = False
        self._scanning = False
        self._start_time = time.time()

        self.registry.on_event(self._on_registry_event)
        self.session.on_event(self._on_session_event)
        self.store.on_persistence_error = self._on_persistence_error
        self.store.on_append(self._on_message)

    # -- event system --------------------------------------------------------

    def on_event(self, callback: ServiceEventCallback) -> None:
        """Register a callback receiving ``(event_type, payload)``."""
        self._event_callbacks.append(callback)

    def _emit(self, event: str, payload: dict[str, Any]) -> None:
        for cb in self._event_callbacks:
            try:
                cb(event, payload)
            except Exception as exc:
                logger.error(f"[ChatService] event callback error: {exc}")

    def _on_registry_event(self, device: Device, event: str) -> None:
        if event == "discovered":
            self._emit("discovered", device.to_dict())

    def _on_session_event(self, device: Device, event: str) -> None:
        self._emit(event, device.to_dict())

    def _on_persistence_error(self, error: str) -> None:
        self._emit("persistence_failed", {"error": error})

    def _on_message(self, message: Message) -> None:
        self._emit("message", message.to_dict())

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Load the persisted message history."""
        if self._started:
            return
        self._start_time = time.time()
        self.store.load_snapshot()
        self._started = True
        logger.info(
            f"[ChatService] started with {len(self.store)} messages "
            f"across {len(self.store.device_ids())} threads"
        )

    def shutdown(self) -> None:
        """Save the snapshot and abandon pending simulated messages."""
        pending = self.scheduler.pending
        self.scheduler.shutdown()
        self.store.save_snapshot()
        self._started = False
        logger.info(f"[ChatService] stopped ({pending} pending callbacks abandoned)")

    # -- discovery -----------------------------------------------------------

    def discover(self, record: DiscoveryRecord | Mapping[str, Any]) -> Device:
        """Feed one discovery record into the registry."""
        return self.registry.upsert_discovered(record)

    async def scan(
        self,
        adapter: DiscoveryAdapter | None = None,
        duration: float | None = None,
    ) -> int:
        """Run one discovery scan. Returns the number of new devices."""
        adapter = adapter or self.adapter
        duration = self.config.discovery.scan_duration if duration is None else duration
        known_before = len(self.registry)
        self._scanning = True
        try:
            async for record in adapter.discover(duration):
                self.registry.upsert_discovered(record)
        finally:
            self._scanning = False
        new = len(self.registry) - known_before
        logger.info(
            f"[ChatService] scan complete: {len(self.registry)} nearby devices "
            f"({new} new)"
        )
        self._emit("scan_complete", {"found": len(self.registry), "new": new})
        return new

    @property
    def scanning(self) -> bool:
        return self._scanning

    # -- session -------------------------------------------------------------

    def connect(self, device_id: str) -> Device:
        return self.session.connect(device_id)

    def disconnect(self, device_id: str) -> Device:
        return self.session.disconnect(device_id)

    def select(self, device_id: str | None) -> Device | None:
        """Make *device_id* the active conversation (``None`` clears)."""
        return self.session.set_active(device_id)

    @property
    def active_device(self) -> Device | None:
        return self.session.active_device

    def devices(self) -> list[Device]:
        return self.registry.list()

    def connected_devices(self) -> list[Device]:
        return self.session.connected_devices()

    # -- messaging -----------------------------------------------------------

    def send_message(self, content: str, device_id: str | None = None) -> Message:
        """Send *content* to *device_id* (default: the active device).

        The content is trimmed before validation. Raises
        ``UnknownDeviceError`` for an ID not in the registry,
        ``NotConnectedError`` when there is no connected target and
        ``InvalidMessageError`` for empty or oversized content.
        """
        target = device_id if device_id is not None else self.session.active_device_id
        if target is None:
            raise NotConnectedError(None)
        device = self.registry.get(target)
        if device is None:
            raise UnknownDeviceError(target)
        if not self.session.is_connected(target):
            raise NotConnectedError(target)

        message = Message(
            device_id=device.id,
            device_name=device.name,
            content=(content or "").strip(),
            direction=Direction.OUTBOUND,
        )
        validate_content(message.content)
        # Reply is scheduled first so a scheduler failure leaves nothing stored
        self.responder.on_outbound_sent(message)
        return self.store.append(message)

    def thread(self, device_id: str) -> list[Message]:
        return list(self.store.thread_for(device_id))

    def message_count(self, device_id: str) -> int:
        return self.store.count(device_id)

    # -- status --------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        active = self.session.active_device_id
        return {
            "uptime_seconds": round(time.time() - self._start_time, 1),
            "device_count": len(self.registry),
            "connected_count": len(self.session.connected_ids()),
            "active_device": active,
            "message_count": len(self.store),
            "pending_callbacks": self.scheduler.pending,
            "scanning": self._scanning,
            "persistence_error": self.store.persistence_error,
        }
