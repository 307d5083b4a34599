"""Discovery adapters — sources of nearby-device records.

The chat core does not care how devices are found. An adapter yields
``DiscoveryRecord`` objects asynchronously, in any order and possibly with
duplicates; ``DeviceRegistry.upsert_discovered`` makes ingestion
idempotent.

Key classes
-----------
- ``DiscoveryAdapter``   — Abstract adapter interface.
- ``BleakDiscovery``     — Real BLE advertisement scan via ``bleak``.
- ``SimulatedDiscovery`` — Demo adapter returning a fixed set of
  nearby devices (plus anything added by tests).
"""

from __future__ import annotations

import abc
from typing import AsyncIterator, Iterable

from bleak import BleakScanner
from loguru import logger

from bluechat.chat.registry import DeviceKind, DiscoveryRecord

# Nearby devices shown by the demo when no radio is available
DEMO_DEVICES: tuple[DiscoveryRecord, ...] = (
    DiscoveryRecord(id="1", name="Alice's iPhone", kind=DeviceKind.PHONE, signal_strength=-45),
    DiscoveryRecord(id="2", name="Bob's MacBook", kind=DeviceKind.LAPTOP, signal_strength=-62),
    DiscoveryRecord(id="3", name="Charlie's Android", kind=DeviceKind.PHONE, signal_strength=-38),
    DiscoveryRecord(id="4", name="AirPods Pro", kind=DeviceKind.HEADPHONES, signal_strength=-55),
)


# ---------------------------------------------------------------------------
# Adapter interface
# ---------------------------------------------------------------------------

class DiscoveryAdapter(abc.ABC):
    """Produces discovery records for nearby devices."""

    @abc.abstractmethod
    def discover(self, duration: float) -> AsyncIterator[DiscoveryRecord]:
        """Scan for up to *duration* seconds, yielding records as found."""

    async def stop(self) -> None:
        """Stop any in-progress scan (best-effort)."""


# ---------------------------------------------------------------------------
# Bleak-based adapter (real hardware)
# ---------------------------------------------------------------------------

class BleakDiscovery(DiscoveryAdapter):
    """BLE discovery using the ``bleak`` library.

    Only advertisements carrying a device name are reported. The BLE
    address is used as the device ID. On Linux this requires BlueZ.
    """

    async def discover(self, duration: float) -> AsyncIterator[DiscoveryRecord]:
        try:
            found = await BleakScanner.discover(timeout=duration, return_adv=True)
        except Exception as exc:
            logger.error("[Discovery] bleak scan failed: {}", exc)
            return
        for device, adv in found.values():
            name = device.name or adv.local_name or ""
            if not name:
                continue
            yield DiscoveryRecord(
                id=device.address,
                name=name,
                signal_strength=adv.rssi,
            )


# ---------------------------------------------------------------------------
# Simulated adapter (demo / testing)
# ---------------------------------------------------------------------------

class SimulatedDiscovery(DiscoveryAdapter):
    """Returns a configured list of records on every scan."""

    def __init__(self, records: Iterable[DiscoveryRecord] = DEMO_DEVICES) -> None:
        self.records: list[DiscoveryRecord] = list(records)

    async def discover(self, duration: float) -> AsyncIterator[DiscoveryRecord]:
        for record in list(self.records):
            yield record

    def add_record(self, record: DiscoveryRecord) -> None:
        """Add a fake device to be returned by the next scan."""
        self.records.append(record)

    def clear(self) -> None:
        self.records.clear()
