"""Session state: which devices are connected and which one is active.

State machine per device ID::

    Discovered --connect()--> Connected --disconnect()--> Discovered

``SessionManager`` is the single source of truth for the connected set;
``DeviceRegistry.connected`` is only a projection kept in step with it.

Connecting is immediate. The peer's acknowledgement (a welcome message on
the device's thread) arrives later through the scheduler, which simulates
handshake latency without blocking the caller.
"""

from __future__ import annotations

import abc
from typing import Any, Callable

from loguru import logger

from bluechat.chat.conversation import ConversationStore, Direction, Message
from bluechat.chat.errors import ConnectFailedError, NotConnectedError, UnknownDeviceError
from bluechat.chat.registry import Device, DeviceRegistry
from bluechat.chat.scheduler import Scheduler

DEFAULT_WELCOME_TEXT = "Hello! I'm connected via Bluetooth."
DEFAULT_WELCOME_DELAY = 1.0


# ---------------------------------------------------------------------------
# Peer transport
# ---------------------------------------------------------------------------

class PeerTransport(abc.ABC):
    """Opens and closes the link to a peer.

    ``open`` returns False (or raises) when the link cannot be made; the
    session then reports ``ConnectFailedError`` and the device stays in
    the discovered state.
    """

    @abc.abstractmethod
    def open(self, device: Device) -> bool:
        ...

    def close(self, device: Device) -> None:
        """Release the link (best-effort)."""


class SimulatedTransport(PeerTransport):
    """Transport whose connections always succeed."""

    def open(self, device: Device) -> bool:
        return True


# ---------------------------------------------------------------------------
# Session manager
# ---------------------------------------------------------------------------

SessionEventCallback = Callable[["Device", str], Any]
# event types: "connected", "disconnected", "selected"


class SessionManager:
    """Owns the connected set and the active (foreground) device.

    Parameters
    ----------
    registry:
        Known devices; ``connect`` only accepts IDs present here.
    store:
        Receives the welcome message once the handshake delay elapses.
    scheduler:
        Runs the deferred welcome message.
    transport:
        Link opener, ``SimulatedTransport`` by default.
    welcome_delay / welcome_text:
        Timing and text of the synthetic welcome message.
    deliver_after_disconnect:
        When False, a welcome whose device disconnected before the timer
        fired is dropped instead of appended.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        store: ConversationStore,
        scheduler: Scheduler,
        *,
        transport: PeerTransport | None = None,
        welcome_delay: float = DEFAULT_WELCOME_DELAY,
        welcome_text: str = DEFAULT_WELCOME_TEXT,
        deliver_after_disconnect: bool = True,
    ) -> None:
        self.registry = registry
        self.store = store
        self.scheduler = scheduler
        self.transport = transport or SimulatedTransport()
        self.welcome_delay = welcome_delay
        self.welcome_text = welcome_text
        self.deliver_after_disconnect = deliver_after_disconnect
        self._connected: dict[str, None] = {}  # ordered set, connection order
        self._active: str | None = None
        self._event_callbacks: list[SessionEventCallback] = []

    # -- event system --------------------------------------------------------

    def on_event(self, callback: SessionEventCallback) -> None:
        self._event_callbacks.append(callback)

    def _fire_event(self, device: Device, event: str) -> None:
        for cb in self._event_callbacks:
            try:
                cb(device, event)
            except Exception as exc:
                logger.error(f"[Session] event callback error: {exc}")

    # -- transitions ---------------------------------------------------------

    def _require_device(self, device_id: str) -> Device:
        device = self.registry.get(device_id)
        if device is None:
            raise UnknownDeviceError(device_id)
        return device

    def connect(self, device_id: str) -> Device:
        """Discovered → Connected.

        Raises ``UnknownDeviceError`` for IDs not in the registry and
        ``ConnectFailedError`` when the transport refuses the link. In both
        cases, and when the welcome cannot be scheduled, the connected set is
        left unchanged. Connecting a device that is already connected does
        nothing.
        """
        device = self._require_device(device_id)
        if device_id in self._connected:
            logger.debug(f"[Session] {device_id} already connected")
            return device

        try:
            opened = self.transport.open(device)
        except Exception as exc:
            logger.warning(f"[Session] transport error connecting {device_id}: {exc}")
            raise ConnectFailedError(device_id, str(exc)) from exc
        if not opened:
            logger.warning(f"[Session] transport refused connection to {device_id}")
            raise ConnectFailedError(device_id, "transport refused the connection")

        name_at_connect = device.name
        try:
            self.scheduler.call_later(
                self.welcome_delay,
                lambda: self._deliver_welcome(device_id, name_at_connect),
                label=f"welcome-{device_id}",
            )
        except Exception:
            # Nothing is committed yet; release the link and let the error out
            try:
                self.transport.close(device)
            except Exception as exc:
                logger.warning(f"[Session] transport error closing {device_id}: {exc}")
            raise

        self._connected[device_id] = None
        self.registry.mark_connected(device_id)
        logger.info(f"[Session] connected to {device.name!r} ({device_id})")
        self._fire_event(device, "connected")
        return device

    def _deliver_welcome(self, device_id: str, device_name: str) -> None:
        if device_id not in self._connected and not self.deliver_after_disconnect:
            logger.debug(f"[Session] dropping welcome for disconnected {device_id}")
            return
        self.store.append(Message(
            device_id=device_id,
            device_name=device_name,
            content=self.welcome_text,
            direction=Direction.INBOUND,
        ))

    def disconnect(self, device_id: str) -> Device:
        """Connected → Discovered. Idempotent for known devices."""
        device = self._require_device(device_id)
        if device_id not in self._connected:
            return device

        del self._connected[device_id]
        if self._active == device_id:
            self._active = None
            logger.debug(f"[Session] cleared active selection ({device_id})")
        self.registry.mark_disconnected(device_id)
        try:
            self.transport.close(device)
        except Exception as exc:
            logger.warning(f"[Session] transport error closing {device_id}: {exc}")
        logger.info(f"[Session] disconnected from {device.name!r} ({device_id})")
        self._fire_event(device, "disconnected")
        return device

    # -- selection -----------------------------------------------------------

    def set_active(self, device_id: str | None) -> Device | None:
        """Select the foreground device; ``None`` clears the selection."""
        if device_id is None:
            self._active = None
            return None
        if device_id not in self._connected:
            raise NotConnectedError(device_id)
        self._active = device_id
        device = self.registry.get(device_id)
        self._fire_event(device, "selected")
        return device

    @property
    def active_device(self) -> Device | None:
        if self._active is None:
            return None
        return self.registry.get(self._active)

    @property
    def active_device_id(self) -> str | None:
        return self._active

    # -- queries -------------------------------------------------------------

    def is_connected(self, device_id: str) -> bool:
        return device_id in self._connected

    def connected_devices(self) -> list[Device]:
        """Connected devices in the order they were connected."""
        return [self.registry.get(device_id) for device_id in self._connected]

    def connected_ids(self) -> list[str]:
        return list(self._connected)
