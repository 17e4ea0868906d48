import asyncio
import socket

import pytest

from halive.discovery import DiscoveryService, ServiceChange, display_name, probe_endpoint
from halive.models import DiscoveredInstance

SERVICE = "_home-assistant._tcp.local."


def service_name(label: str) -> str:
    return f"{label}.{SERVICE}"


def change(kind: str, label: str, host: str | None = None, port: int = 8123) -> ServiceChange:
    instance = None if host is None else DiscoveredInstance(name=label, host=host, port=port)
    return ServiceChange(kind=kind, name=service_name(label), instance=instance)


class FakeZeroconf:
    def __init__(self) -> None:
        self.zeroconf = object()
        self.closed = False

    async def async_close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self, zc, service_type: str, listener=None) -> None:
        self.zc = zc
        self.service_type = service_type
        self.listener = listener
        self.cancelled = False

    async def async_cancel(self) -> None:
        self.cancelled = True


def make_service(**kwargs):
    created = {}

    def zeroconf_factory():
        created["zeroconf"] = FakeZeroconf()
        return created["zeroconf"]

    def browser_factory(*args, **factory_kwargs):
        created["browser"] = FakeBrowser(*args, **factory_kwargs)
        return created["browser"]

    service = DiscoveryService(
        zeroconf_factory=zeroconf_factory,
        browser_factory=browser_factory,
        **kwargs,
    )
    return service, created


def test_display_name_strips_service_type() -> None:
    assert display_name(service_name("Home")) == "Home"
    assert display_name("other.local.") == "other.local"


@pytest.mark.asyncio
async def test_batch_is_deduplicated_and_sorted() -> None:
    service = DiscoveryService()

    published = await service.apply_changes(
        [
            change("added", "Zeta", "192.168.1.30"),
            change("added", "alpha", "192.168.1.10"),
            change("added", "Alpha mirror", "192.168.1.10"),
            change("added", "Beta", "192.168.1.10", port=8124),
        ]
    )

    assert [(item.host, item.port) for item in published] == [
        ("192.168.1.10", 8123),
        ("192.168.1.10", 8124),
        ("192.168.1.30", 8123),
    ]
    assert [item.name.lower() for item in published] == sorted(item.name.lower() for item in published)
    assert service.instances == published


@pytest.mark.asyncio
async def test_uncached_changes_are_resolved() -> None:
    seen = []

    async def resolver(change: ServiceChange):
        seen.append(change.name)
        if change.name == service_name("Broken"):
            raise OSError("unreachable")
        if change.name == service_name("Silent"):
            return None
        return DiscoveredInstance(name="Home", host="10.0.0.5", port=8123)

    service = DiscoveryService(resolver=resolver)

    published = await service.apply_changes(
        [change("added", "Home"), change("added", "Broken"), change("added", "Silent")]
    )

    assert sorted(seen) == sorted(service_name(label) for label in ("Home", "Broken", "Silent"))
    assert published == [DiscoveredInstance(name="Home", host="10.0.0.5", port=8123)]


@pytest.mark.asyncio
async def test_removal_of_known_instance() -> None:
    service = DiscoveryService()
    await service.apply_changes(
        [change("added", "Home", "10.0.0.5"), change("added", "Office", "10.0.0.6")]
    )

    published = await service.apply_changes([change("removed", "Home")])

    assert [item.host for item in published] == ["10.0.0.6"]


@pytest.mark.asyncio
async def test_removal_falls_back_to_display_name() -> None:
    service = DiscoveryService()
    service._working["stale-key"] = DiscoveredInstance(name="Home", host="10.0.0.5")

    published = await service.apply_changes([change("removed", "Home")])

    assert published == []


@pytest.mark.asyncio
async def test_removal_keeps_other_port_on_same_host() -> None:
    service = DiscoveryService()
    await service.apply_changes(
        [
            change("added", "Home", "10.0.0.5", port=8123),
            change("added", "Staging", "10.0.0.5", port=8124),
        ]
    )

    published = await service.apply_changes([change("removed", "Home")])

    assert [(item.name, item.port) for item in published] == [("Staging", 8124)]


@pytest.mark.asyncio
async def test_update_replaces_previous_entry() -> None:
    service = DiscoveryService()
    await service.apply_changes([change("added", "Home", "10.0.0.5")])

    published = await service.apply_changes([change("updated", "Home", "10.0.0.9")])

    assert [item.host for item in published] == ["10.0.0.9"]


@pytest.mark.asyncio
async def test_browse_events_are_debounced_into_one_publish() -> None:
    updates = []
    service, created = make_service(debounce=0.02, on_update=updates.append)

    await service.start_discovery()
    assert service.is_browsing
    assert created["browser"].service_type == SERVICE

    service._submit(change("added", "Home", "10.0.0.5"))
    service._submit(change("added", "Office", "10.0.0.6"))
    service._submit(change("removed", "Office"))
    await asyncio.sleep(0.1)

    assert len(updates) == 1
    assert [item.name for item in updates[0]] == ["Home"]

    await service.stop_discovery()


@pytest.mark.asyncio
async def test_start_twice_is_a_noop() -> None:
    calls = []
    service, created = make_service()
    original = service._zeroconf_factory

    def counting_factory():
        calls.append(1)
        return original()

    service._zeroconf_factory = counting_factory

    await service.start_discovery()
    await service.start_discovery()

    assert len(calls) == 1
    await service.stop_discovery()


@pytest.mark.asyncio
async def test_stop_discovery_is_idempotent_and_cancels_work() -> None:
    updates = []
    started = asyncio.Event()

    async def slow_resolver(change: ServiceChange):
        started.set()
        await asyncio.sleep(10)
        return DiscoveredInstance(name="Home", host="10.0.0.5")

    service, created = make_service(debounce=0.01, resolver=slow_resolver, on_update=updates.append)
    await service.start_discovery()

    service._submit(change("added", "Home"))
    await asyncio.wait_for(started.wait(), timeout=1)

    await service.stop_discovery()
    await service.stop_discovery()

    assert not service.is_browsing
    assert created["browser"].cancelled
    assert created["zeroconf"].closed
    assert service._tasks == set()
    assert updates == []


@pytest.mark.asyncio
async def test_removal_waits_for_batch_still_resolving() -> None:
    updates = []

    async def slow_resolver(change: ServiceChange):
        await asyncio.sleep(0.2)
        return DiscoveredInstance(name="Home", host="10.0.0.5", port=8123)

    service, _ = make_service(debounce=0.01, resolver=slow_resolver, on_update=updates.append)
    await service.start_discovery()

    service._submit(change("added", "Home"))
    await asyncio.sleep(0.05)
    service._submit(change("removed", "Home"))
    await asyncio.sleep(0.4)

    assert service.instances == []
    assert updates[-1] == []
    assert len(updates) == 2

    await service.stop_discovery()


@pytest.mark.asyncio
async def test_start_failure_leaves_service_stopped() -> None:
    def broken_factory():
        raise OSError("no multicast")

    service = DiscoveryService(zeroconf_factory=broken_factory, browser_factory=FakeBrowser)

    await service.start_discovery()

    assert not service.is_browsing


@pytest.mark.asyncio
async def test_events_after_stop_are_ignored() -> None:
    updates = []
    service, _ = make_service(debounce=0.01, on_update=updates.append)
    await service.start_discovery()
    await service.stop_discovery()

    service._submit(change("added", "Home", "10.0.0.5"))
    await asyncio.sleep(0.05)

    assert updates == []


@pytest.mark.asyncio
async def test_probe_endpoint_reports_peer() -> None:
    async def handle(reader, writer) -> None:
        writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        assert await probe_endpoint("127.0.0.1", port) == ("127.0.0.1", port)
    finally:
        server.close()
        await server.wait_closed()


@pytest.mark.asyncio
async def test_probe_endpoint_unreachable() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    assert await probe_endpoint("127.0.0.1", port, timeout=1.0) is None
