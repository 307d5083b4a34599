"""Device registry for discovered peers.

Tracks every device seen by discovery along with its metadata (display
name, inferred kind, signal strength).

Architecture
------------
- ``DiscoveryRecord`` is the input shape produced by a discovery adapter.
- ``Device`` is the registry entry for one peer.
- ``DeviceRegistry`` holds entries in discovery order:
  - ``upsert_discovered()`` is idempotent by device ID
  - ``mark_connected()`` / ``mark_disconnected()`` maintain an
    observational projection of the session's connected set
  - ``on_event()`` subscribes to registry events

Devices are never removed: disconnecting only clears the ``connected``
projection. Which devices are *really* connected is owned by
``SessionManager``.

Usage
-----
>>> registry = DeviceRegistry()
>>> device = registry.upsert_discovered({"id": "1", "name": "Alice's iPhone", "rssi": -45})
>>> [d.kind for d in registry.list()]
[<DeviceKind.PHONE: 'phone'>]
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Mapping

from loguru import logger


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

class DeviceKind(str, Enum):
    """Classification hint for a device. Never used for protocol decisions."""
    PHONE = "phone"
    LAPTOP = "laptop"
    HEADPHONES = "headphones"
    UNKNOWN = "unknown"


# Keyword → kind; first match wins, so order matters ("buds" before "phone").
_KIND_KEYWORDS: list[tuple[str, DeviceKind]] = [
    ("airpods", DeviceKind.HEADPHONES),
    ("buds", DeviceKind.HEADPHONES),
    ("headphone", DeviceKind.HEADPHONES),
    ("headset", DeviceKind.HEADPHONES),
    ("macbook", DeviceKind.LAPTOP),
    ("laptop", DeviceKind.LAPTOP),
    ("thinkpad", DeviceKind.LAPTOP),
    ("notebook", DeviceKind.LAPTOP),
    ("iphone", DeviceKind.PHONE),
    ("android", DeviceKind.PHONE),
    ("pixel", DeviceKind.PHONE),
    ("galaxy", DeviceKind.PHONE),
    ("phone", DeviceKind.PHONE),
]


def infer_kind(name: str) -> DeviceKind:
    """Guess a device kind from its advertised name."""
    lowered = (name or "").lower()
    for keyword, kind in _KIND_KEYWORDS:
        if keyword in lowered:
            return kind
    return DeviceKind.UNKNOWN


def _coerce_kind(value: Any) -> DeviceKind | None:
    if value is None or value == "":
        return None
    if isinstance(value, DeviceKind):
        return value
    try:
        return DeviceKind(str(value).lower())
    except ValueError:
        return DeviceKind.UNKNOWN


@dataclass
class DiscoveryRecord:
    """One discovery result as reported by an adapter."""

    id: str
    name: str = ""
    kind: DeviceKind | None = None         # None → inferred from name
    signal_strength: int = 0               # dBm-like, lower magnitude = stronger

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> DiscoveryRecord:
        """Build a record from a loose mapping.

        Accepts ``signalStrength`` / ``signal_strength`` / ``rssi`` for the
        signal field and ``kind`` / ``type`` for the kind hint.
        """
        signal = d.get("signal_strength", d.get("signalStrength", d.get("rssi", 0)))
        return cls(
            id=str(d["id"]),
            name=str(d.get("name") or ""),
            kind=_coerce_kind(d.get("kind", d.get("type"))),
            signal_strength=int(signal or 0),
        )


@dataclass
class Device:
    """Registry entry for one discovered peer."""
    id: str
    name: str
    kind: DeviceKind = DeviceKind.UNKNOWN
    signal_strength: int = 0
    connected: bool = False                # projection of SessionManager state
    discovered_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "signal_strength": self.signal_strength,
            "connected": self.connected,
            "discovered_at": self.discovered_at,
        }


# Callback type for registry events
RegistryEventCallback = Callable[["Device", str], Any]
# event types: "discovered", "refreshed", "connected", "disconnected"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class DeviceRegistry:
    """Known devices in discovery order.

    Re-discovery policy
    -------------------
    By default a record for an already-known ID is ignored: the existing
    entry is returned untouched. With ``refresh_on_rediscovery=True`` the
    entry's signal strength is updated, along with its name (when the new
    record carries one) and its kind (when the record states one).
    """

    def __init__(self, *, refresh_on_rediscovery: bool = False):
        self.refresh_on_rediscovery = refresh_on_rediscovery
        self._devices: dict[str, Device] = {}  # id → Device, insertion-ordered
        self._event_callbacks: list[RegistryEventCallback] = []

    # -- event system --------------------------------------------------------

    def on_event(self, callback: RegistryEventCallback) -> None:
        """Register a callback receiving ``(device, event_type)``."""
        self._event_callbacks.append(callback)

    def _fire_event(self, device: Device, event: str) -> None:
        for cb in self._event_callbacks:
            try:
                cb(device, event)
            except Exception as exc:
                logger.error(f"[DeviceRegistry] event callback error: {exc}")

    # -- discovery -----------------------------------------------------------

    def upsert_discovered(self, record: DiscoveryRecord | Mapping[str, Any]) -> Device:
        """Insert a discovered device, or return the existing entry."""
        if not isinstance(record, DiscoveryRecord):
            record = DiscoveryRecord.from_dict(record)

        existing = self._devices.get(record.id)
        if existing is not None:
            if self.refresh_on_rediscovery:
                existing.signal_strength = record.signal_strength
                if record.name:
                    existing.name = record.name
                if record.kind is not None:
                    existing.kind = record.kind
                self._fire_event(existing, "refreshed")
                logger.debug(
                    f"[DeviceRegistry] refreshed {record.id} "
                    f"(signal {record.signal_strength})"
                )
            return existing

        device = Device(
            id=record.id,
            name=record.name,
            kind=record.kind or infer_kind(record.name),
            signal_strength=record.signal_strength,
        )
        self._devices[device.id] = device
        self._fire_event(device, "discovered")
        logger.info(
            f"[DeviceRegistry] discovered {device.name!r} ({device.id}, "
            f"{device.kind.value}, {device.signal_strength} dBm)"
        )
        return device

    # -- queries -------------------------------------------------------------

    def list(self) -> list[Device]:
        """Return all known devices in discovery order."""
        return list(self._devices.values())

    def get(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[Device]:
        return iter(list(self._devices.values()))

    # -- connection projection -----------------------------------------------

    def mark_connected(self, device_id: str) -> None:
        """Flag a device as connected (observational only)."""
        device = self._devices.get(device_id)
        if device is None or device.connected:
            return
        device.connected = True
        self._fire_event(device, "connected")

    def mark_disconnected(self, device_id: str) -> None:
        """Clear a device's connected flag (observational only)."""
        device = self._devices.get(device_id)
        if device is None or not device.connected:
            return
        device.connected = False
        self._fire_event(device, "disconnected")
