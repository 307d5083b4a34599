"""End-to-end tests for ChatService on a virtual clock.

Covers:
- Full discover → connect → select → send → reply flow
- Message routing to the active device vs an explicit device
- Thread isolation across devices
- Sending without a connection, to unknown devices, empty and oversized content
- Scheduler failures leave no half-committed state
- Scanning through adapters
- Persistence across restarts and backend failure
- Event stream and status counters
"""

from __future__ import annotations

import random

import pytest

from bluechat.chat.conversation import (
    JsonSnapshotBackend,
    MemorySnapshotBackend,
    SnapshotBackend,
)
from bluechat.chat.discovery import SimulatedDiscovery
from bluechat.chat.errors import (
    InvalidMessageError,
    NotConnectedError,
    PersistenceError,
    UnknownDeviceError,
)
from bluechat.chat.registry import DiscoveryRecord
from bluechat.chat.responder import DEFAULT_REPLIES
from bluechat.chat.scheduler import AsyncioScheduler, ManualScheduler
from bluechat.chat.service import ChatService
from bluechat.chat.session import DEFAULT_WELCOME_TEXT
from bluechat.config.schema import ChatConfig


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class BrokenBackend(SnapshotBackend):
    def load(self):
        return []

    def save(self, messages):
        raise PersistenceError("quota exceeded")


class FlakyScheduler(ManualScheduler):
    """Virtual-clock scheduler that can be told to refuse new callbacks."""

    def __init__(self):
        super().__init__()
        self.failing = False

    def call_later(self, delay, callback, *, label=""):
        if self.failing:
            raise RuntimeError("no running event loop")
        super().call_later(delay, callback, label=label)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def backend():
    return MemorySnapshotBackend()


@pytest.fixture
def service(scheduler, backend):
    svc = ChatService(
        ChatConfig(),
        scheduler=scheduler,
        backend=backend,
        rng=random.Random(1),
        adapter=SimulatedDiscovery(),
    )
    svc.start()
    return svc


def _contents(service: ChatService, device_id: str) -> list[str]:
    return [m.content for m in service.thread(device_id)]


# ===================================================================
# Test: the main conversation flow
# ===================================================================

class TestConversationFlow:

    def test_discover_connect_send_reply(self, service, scheduler):
        service.discover(DiscoveryRecord(id="d1", name="Alice"))
        service.connect("d1")
        service.select("d1")
        assert service.thread("d1") == []

        scheduler.advance(1.0)
        service.send_message("hi")
        assert _contents(service, "d1") == [DEFAULT_WELCOME_TEXT, "hi"]

        scheduler.advance(4.0)
        thread = service.thread("d1")
        assert len(thread) == 3
        assert [m.outbound for m in thread] == [False, True, False]
        assert thread[0].content == DEFAULT_WELCOME_TEXT
        assert thread[1].content == "hi"
        assert thread[2].content in DEFAULT_REPLIES
        assert all(m.device_name == "Alice" for m in thread)

    def test_send_returns_stored_message(self, service):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        sent = service.send_message("  hello there  ")
        assert sent.content == "hello there"
        assert sent.outbound
        assert sent.id
        assert service.thread("d1")[-1] == sent

    def test_send_to_explicit_device(self, service, scheduler):
        for i, name in (("d1", "Alice"), ("d2", "Bob")):
            service.discover({"id": i, "name": name})
            service.connect(i)
        service.select("d1")

        service.send_message("for bob", device_id="d2")
        scheduler.run_all()
        assert "for bob" in _contents(service, "d2")
        assert "for bob" not in _contents(service, "d1")

    def test_threads_isolated(self, service, scheduler):
        for i, name in (("d1", "Alice"), ("d2", "Bob")):
            service.discover({"id": i, "name": name})
            service.connect(i)
        service.select("d1")
        service.send_message("a1")
        service.select("d2")
        service.send_message("b1")
        scheduler.run_all()

        assert {m.device_id for m in service.thread("d1")} == {"d1"}
        assert {m.device_id for m in service.thread("d2")} == {"d2"}
        assert service.message_count("d1") == 3
        assert service.message_count("d2") == 3

    def test_each_send_gets_one_reply(self, service, scheduler):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        for i in range(5):
            service.send_message(f"m{i}")
        scheduler.run_all()
        thread = service.thread("d1")
        assert sum(1 for m in thread if m.outbound) == 5
        # 5 replies plus the welcome
        assert sum(1 for m in thread if not m.outbound) == 6


# ===================================================================
# Test: error cases
# ===================================================================

class TestSendErrors:

    def test_no_active_device(self, service):
        with pytest.raises(NotConnectedError, match="no active device"):
            service.send_message("hi")

    def test_not_connected_target(self, service):
        service.discover({"id": "d1", "name": "Alice"})
        with pytest.raises(NotConnectedError):
            service.send_message("hi", device_id="d1")
        assert service.thread("d1") == []

    def test_send_after_disconnect(self, service):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        service.disconnect("d1")
        assert service.active_device is None
        with pytest.raises(NotConnectedError):
            service.send_message("hi")

    @pytest.mark.parametrize("content", ["", "    "])
    def test_empty_content(self, service, scheduler, content):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        with pytest.raises(InvalidMessageError):
            service.send_message(content)
        assert scheduler.pending == 1  # only the welcome

    def test_oversized_content(self, service):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        with pytest.raises(InvalidMessageError):
            service.send_message("x" * 501)
        # Surrounding whitespace does not count towards the limit
        service.send_message("  " + "x" * 500 + "  ")

    def test_connect_unknown(self, service):
        with pytest.raises(UnknownDeviceError):
            service.connect("ghost")

    def test_unknown_explicit_device(self, service, scheduler):
        with pytest.raises(UnknownDeviceError):
            service.send_message("hi", device_id="ghost")
        assert service.thread("ghost") == []
        assert scheduler.pending == 0

    def test_scheduler_failure_stores_nothing(self, backend):
        scheduler = FlakyScheduler()
        svc = ChatService(ChatConfig(), scheduler=scheduler, backend=backend,
                          rng=random.Random(1), adapter=SimulatedDiscovery())
        svc.start()
        svc.discover({"id": "d1", "name": "Alice"})
        svc.connect("d1")
        scheduler.failing = True
        with pytest.raises(RuntimeError):
            svc.send_message("hi", device_id="d1")
        assert svc.thread("d1") == []
        assert backend.saved == []

    def test_connect_without_loop_stays_disconnected(self, backend):
        svc = ChatService(ChatConfig(), scheduler=AsyncioScheduler(), backend=backend,
                          adapter=SimulatedDiscovery())
        svc.start()
        svc.discover({"id": "d1", "name": "Alice"})
        with pytest.raises(RuntimeError):
            svc.connect("d1")
        assert svc.connected_devices() == []
        assert svc.registry.get("d1").connected is False

    def test_reply_after_disconnect_still_delivered(self, service, scheduler):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        service.send_message("bye")
        service.disconnect("d1")
        scheduler.run_all()
        assert service.message_count("d1") == 3

    def test_welcome_dropped_after_disconnect_when_configured(self, backend):
        scheduler = ManualScheduler()
        config = ChatConfig.model_validate({"session": {"deliver_after_disconnect": False}})
        svc = ChatService(config, scheduler=scheduler, backend=backend,
                          rng=random.Random(1), adapter=SimulatedDiscovery())
        svc.start()
        svc.discover({"id": "d1", "name": "Alice"})
        svc.connect("d1")
        svc.select("d1")
        svc.send_message("bye")
        svc.disconnect("d1")
        scheduler.run_all()
        # Only the welcome is dropped; the reply has its own setting
        assert DEFAULT_WELCOME_TEXT not in _contents(svc, "d1")
        assert svc.message_count("d1") == 2


# ===================================================================
# Test: scanning
# ===================================================================

class TestScan:

    @pytest.mark.asyncio
    async def test_scan_populates_registry(self, service):
        new = await service.scan()
        assert new == 4
        assert [d.name for d in service.devices()][:2] == ["Alice's iPhone", "Bob's MacBook"]
        assert not service.scanning

    @pytest.mark.asyncio
    async def test_rescan_adds_nothing(self, service):
        await service.scan()
        assert await service.scan() == 0
        assert len(service.devices()) == 4

    @pytest.mark.asyncio
    async def test_scan_with_explicit_adapter(self, service):
        adapter = SimulatedDiscovery([DiscoveryRecord(id="z", name="Zed's Pixel")])
        assert await service.scan(adapter) == 1
        assert service.registry.get("z") is not None


# ===================================================================
# Test: persistence
# ===================================================================

class TestPersistence:

    def test_history_survives_restart(self, tmp_path):
        def build(scheduler):
            svc = ChatService(
                ChatConfig(),
                scheduler=scheduler,
                backend=JsonSnapshotBackend(tmp_path),
                rng=random.Random(3),
                adapter=SimulatedDiscovery(),
            )
            svc.start()
            return svc

        scheduler = ManualScheduler()
        first = build(scheduler)
        first.discover({"id": "d1", "name": "Alice"})
        first.connect("d1")
        first.select("d1")
        first.send_message("remember me")
        scheduler.run_all()
        before = first.thread("d1")
        first.shutdown()

        second = build(ManualScheduler())
        assert second.thread("d1") == before
        # Sessions are not persisted
        assert second.connected_devices() == []

    def test_backend_failure_is_surfaced(self, scheduler):
        svc = ChatService(ChatConfig(), scheduler=scheduler, backend=BrokenBackend(),
                          rng=random.Random(0), adapter=SimulatedDiscovery())
        events = []
        svc.on_event(lambda e, p: events.append((e, p)))
        svc.start()
        svc.discover({"id": "d1", "name": "Alice"})
        svc.connect("d1")
        svc.select("d1")
        sent = svc.send_message("still works")

        assert svc.thread("d1") == [sent]
        assert svc.status()["persistence_error"] == "quota exceeded"
        assert ("persistence_failed", {"error": "quota exceeded"}) in events

    def test_shutdown_abandons_pending(self, service, scheduler, backend):
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.shutdown()
        scheduler.advance(10.0)
        assert service.thread("d1") == []
        assert backend.save_count >= 1

    def test_start_is_idempotent(self, scheduler):
        svc = ChatService(ChatConfig(), scheduler=scheduler, backend=MemorySnapshotBackend(),
                          adapter=SimulatedDiscovery())
        svc.start()
        svc.discover({"id": "d1", "name": "Alice"})
        svc.connect("d1")
        svc.store.autosave = False
        svc.send_message("kept", device_id="d1")
        # A second start must not reload and drop in-memory state
        svc.start()
        assert [m.content for m in svc.thread("d1")] == ["kept"]


# ===================================================================
# Test: events + status
# ===================================================================

class TestEventsAndStatus:

    def test_event_stream(self, service, scheduler):
        events = []
        service.on_event(lambda e, p: events.append(e))
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        scheduler.advance(1.0)
        service.send_message("hi")
        service.disconnect("d1")
        assert events == [
            "discovered", "connected", "selected", "message", "message", "disconnected",
        ]

    def test_message_event_payload(self, service):
        payloads = []
        service.on_event(lambda e, p: payloads.append(p) if e == "message" else None)
        service.discover({"id": "d1", "name": "Alice"})
        service.connect("d1")
        service.select("d1")
        sent = service.send_message("hi")
        assert payloads == [sent.to_dict()]

    def test_bad_event_callback_ignored(self, service):
        def boom(event, payload):
            raise RuntimeError("listener crashed")

        service.on_event(boom)
        device = service.discover({"id": "d1", "name": "Alice"})
        assert device.id == "d1"

    def test_status(self, service, scheduler):
        service.discover({"id": "d1", "name": "Alice"})
        service.discover({"id": "d2", "name": "Bob"})
        service.connect("d1")
        service.select("d1")
        service.send_message("hi")

        status = service.status()
        assert status["device_count"] == 2
        assert status["connected_count"] == 1
        assert status["active_device"] == "d1"
        assert status["message_count"] == 1
        assert status["pending_callbacks"] == 2
        assert status["scanning"] is False
        assert status["persistence_error"] is None
