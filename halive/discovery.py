from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Awaitable, Callable, Literal

from zeroconf import ServiceInfo, ServiceListener, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from .constants import DEFAULT_DEBOUNCE_SECONDS, LOGGER, SERVICE_TYPE
from .models import DiscoveredInstance

ChangeKind = Literal["added", "updated", "removed"]


@dataclass
class ServiceChange:
    kind: ChangeKind
    name: str
    service_type: str = SERVICE_TYPE
    # Set when the advertisement was already resolved in the mDNS cache.
    instance: DiscoveredInstance | None = None


ResolveFn = Callable[[ServiceChange], Awaitable["DiscoveredInstance | None"]]
UpdateFn = Callable[[list[DiscoveredInstance]], None]


def display_name(name: str, service_type: str = SERVICE_TYPE) -> str:
    suffix = f".{service_type}"
    if name.endswith(suffix):
        return name[: -len(suffix)]
    return name.rstrip(".")


def instance_from_info(info: ServiceInfo, service_type: str = SERVICE_TYPE) -> DiscoveredInstance | None:
    addresses = info.parsed_addresses()
    if not addresses or not info.port:
        return None
    return DiscoveredInstance(
        name=display_name(info.name, service_type),
        host=addresses[0],
        port=info.port,
    )


class HomeAssistantListener(ServiceListener):
    """Forwards browse events to the discovery service without touching its state."""

    def __init__(self, sink: Callable[[ServiceChange], None]) -> None:
        self._sink = sink

    def _change(self, zc: Zeroconf, kind: ChangeKind, type_: str, name: str) -> ServiceChange:
        instance = None
        if kind != "removed":
            info = ServiceInfo(type_, name)
            if info.load_from_cache(zc):
                instance = instance_from_info(info, type_)
        return ServiceChange(kind=kind, name=name, service_type=type_, instance=instance)

    def add_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        LOGGER.debug("Service added: %s", name)
        self._sink(self._change(zc, "added", type_, name))

    def update_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        LOGGER.debug("Service updated: %s", name)
        self._sink(self._change(zc, "updated", type_, name))

    def remove_service(self, zc: Zeroconf, type_: str, name: str) -> None:
        LOGGER.debug("Service removed: %s", name)
        self._sink(self._change(zc, "removed", type_, name))


async def probe_endpoint(host: str, port: int, *, timeout: float = 3.0) -> tuple[str, int] | None:
    """Open a TCP connection to learn the concrete peer address, then close it."""
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except (OSError, asyncio.TimeoutError) as error:
        LOGGER.warning("Failed to resolve %s:%s: %s", host, port, error)
        return None

    try:
        peer = writer.get_extra_info("peername")
    finally:
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()

    if not peer:
        return host, port
    return peer[0], peer[1]


class DiscoveryService:
    """Browses the local network for Home Assistant instances.

    Browse events are collected for ``debounce`` seconds and then applied as one
    batch. Advertisements missing from the mDNS cache are resolved in tasks
    whose results are gathered back into the batch; only the batch touches the
    working set, and it publishes once when every change has been applied.
    Discovery is best effort: resolution failures are logged and dropped.
    """

    def __init__(
        self,
        *,
        service_type: str = SERVICE_TYPE,
        debounce: float = DEFAULT_DEBOUNCE_SECONDS,
        probe_timeout: float = 3.0,
        resolve_timeout_ms: int = 3000,
        resolver: ResolveFn | None = None,
        on_update: UpdateFn | None = None,
        zeroconf_factory: Callable[[], AsyncZeroconf] = AsyncZeroconf,
        browser_factory: Callable[..., AsyncServiceBrowser] = AsyncServiceBrowser,
    ) -> None:
        self.service_type = service_type
        self.debounce = debounce
        self.probe_timeout = probe_timeout
        self.resolve_timeout_ms = resolve_timeout_ms
        self.on_update = on_update

        self._resolver = resolver or self._resolve
        self._zeroconf_factory = zeroconf_factory
        self._browser_factory = browser_factory

        self._zeroconf: AsyncZeroconf | None = None
        self._browser: AsyncServiceBrowser | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._pending_changes: list[ServiceChange] = []
        self._tasks: set[asyncio.Task] = set()
        self._batch_lock = asyncio.Lock()

        self._working: dict[str, DiscoveredInstance] = {}
        self._instances: list[DiscoveredInstance] = []

    @property
    def is_browsing(self) -> bool:
        return self._browser is not None

    @property
    def instances(self) -> list[DiscoveredInstance]:
        return list(self._instances)

    async def start_discovery(self) -> None:
        if self._browser is not None:
            return

        self._loop = asyncio.get_running_loop()
        try:
            self._zeroconf = self._zeroconf_factory()
            self._browser = self._browser_factory(
                self._zeroconf.zeroconf,
                self.service_type,
                listener=HomeAssistantListener(self._submit),
            )
        except OSError as error:
            LOGGER.warning("Home Assistant discovery could not start: %s", error)
            await self.stop_discovery()
            return
        LOGGER.info("Home Assistant discovery started.")

    async def stop_discovery(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        self._pending_changes.clear()

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

        browser, self._browser = self._browser, None
        if browser is not None:
            await browser.async_cancel()
        zeroconf, self._zeroconf = self._zeroconf, None
        if zeroconf is not None:
            await zeroconf.async_close()
            LOGGER.info("Home Assistant discovery stopped.")

    # -- event intake ----------------------------------------------------------

    def _submit(self, change: ServiceChange) -> None:
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._enqueue, change)

    def _enqueue(self, change: ServiceChange) -> None:
        if self._browser is None:
            return
        self._pending_changes.append(change)
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        self._debounce_handle = asyncio.get_running_loop().call_later(self.debounce, self._flush)

    def _flush(self) -> None:
        self._debounce_handle = None
        changes, self._pending_changes = self._pending_changes, []
        if changes:
            self._track(self.apply_changes(changes))

    def _track(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # -- batch coordinator -----------------------------------------------------

    async def apply_changes(self, changes: list[ServiceChange]) -> list[DiscoveredInstance]:
        """Apply one batch of browse changes and publish the resulting list.

        Batches run one at a time, so a batch never starts while an earlier one
        is still resolving.
        """
        async with self._batch_lock:
            return await self._apply_batch(changes)

    async def _apply_batch(self, changes: list[ServiceChange]) -> list[DiscoveredInstance]:
        resolving: list[tuple[str, asyncio.Task]] = []
        for change in changes:
            if change.kind == "removed":
                self._remove(change)
                continue
            if change.kind == "updated":
                self._working.pop(change.name, None)
            if change.instance is not None:
                self._working[change.name] = change.instance
            else:
                resolving.append((change.name, self._track(self._resolver(change))))

        if resolving:
            results = await asyncio.gather(
                *(task for _, task in resolving), return_exceptions=True
            )
            for (name, _), result in zip(resolving, results):
                if isinstance(result, DiscoveredInstance):
                    self._working[name] = result
                elif isinstance(result, BaseException):
                    LOGGER.warning("Failed to resolve %s: %s", name, result)

        return self._publish()

    def _remove(self, change: ServiceChange) -> None:
        known = self._working.pop(change.name, None)
        if known is not None:
            # Instances compare by host and port.
            self._working = {
                name: instance
                for name, instance in self._working.items()
                if instance != known
            }
            return

        label = display_name(change.name, change.service_type)
        self._working = {
            name: instance for name, instance in self._working.items() if instance.name != label
        }

    def _publish(self) -> list[DiscoveredInstance]:
        unique: dict[DiscoveredInstance, DiscoveredInstance] = {}
        for instance in self._working.values():
            unique.setdefault(instance, instance)
        self._instances = sorted(
            unique.values(), key=lambda item: (item.name.lower(), item.host, item.port)
        )
        if self.on_update is not None:
            self.on_update(self.instances)
        return self.instances

    # -- resolution ------------------------------------------------------------

    async def _resolve(self, change: ServiceChange) -> DiscoveredInstance | None:
        if self._zeroconf is None:
            return None

        info = AsyncServiceInfo(change.service_type, change.name)
        if not await info.async_request(self._zeroconf.zeroconf, self.resolve_timeout_ms):
            LOGGER.warning("No answer resolving %s", change.name)
            return None

        advertised = instance_from_info(info, change.service_type)
        if advertised is None:
            return None

        peer = await probe_endpoint(advertised.host, advertised.port, timeout=self.probe_timeout)
        if peer is None:
            return None
        return DiscoveredInstance(name=advertised.name, host=peer[0], port=peer[1])
