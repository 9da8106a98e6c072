"""Keeps NAT translations in the infra manager in step with cluster services."""

from __future__ import annotations

import collections
import ipaddress
import logging
import threading
from collections.abc import Hashable
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Union

from infraoffload.nat_translation import (
    SERVICE_TYPE_NODE_PORT,
    KubeEndpoints,
    KubeService,
    NatTranslation,
    NatTranslationBuilder,
    ServicePort,
)
from infraoffload.types import ServerStatus

log = logging.getLogger(__name__)

_IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

DEFAULT_WORKERS = 2


class ResourceNotFoundError(LookupError):
    """Raised by a lister when the requested object does not exist."""


class _NatSettingsHandler(Protocol):
    def nat_translation_add(self, translation: NatTranslation) -> None: ...

    def nat_translation_delete(self, translation: NatTranslation) -> None: ...


class _Lister(Protocol):
    def get_service(self, namespace: str, name: str) -> KubeService: ...

    def get_endpoints(self, namespace: str, name: str) -> KubeEndpoints: ...


@dataclass
class ServiceEntries:
    """The translations installed for one service."""

    entries: list[NatTranslation] = field(default_factory=list)
    service_id: str = ""


def meta_namespace_key(obj: Any) -> str:
    """Return the ``namespace/name`` key of an object, or ``name`` without a namespace."""
    name = getattr(obj, "name", None)
    if not isinstance(name, str):
        raise TypeError(f"object has no meta: {obj!r}")
    namespace = getattr(obj, "namespace", "") or ""
    return f"{namespace}/{name}" if namespace else name


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a key made by :func:`meta_namespace_key` into namespace and name."""
    parts = key.split("/")
    if len(parts) == 1:
        return "", parts[0]
    if len(parts) == 2:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def _parse_ip(value: str) -> Optional[_IPAddress]:
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    return None if address.is_unspecified else address


def _entries_for_ips(
    builder: NatTranslationBuilder, port: ServicePort, ips: list[str]
) -> list[NatTranslation]:
    entries = []
    for raw in ips:
        address = _parse_ip(raw)
        if address is not None:
            entries.append(
                builder.for_service_port(port).with_service_ip(address).with_is_node_port(False).build()
            )
    return entries


def build_nat_translations(
    service: KubeService, endpoints: KubeEndpoints, node_ip: str, node_name: str = ""
) -> list[NatTranslation]:
    """Return every translation a service needs: cluster IP, external IPs,
    load-balancer ingress and, for node-port services, the node address."""
    entries: list[NatTranslation] = []
    cluster_ip = _parse_ip(service.spec.cluster_ip)
    builder = NatTranslationBuilder(service, endpoints, node_name)
    for port in service.spec.ports:
        if cluster_ip is not None:
            entries.append(
                builder.for_service_port(port).with_service_ip(cluster_ip).with_is_node_port(False).build()
            )
        entries.extend(_entries_for_ips(builder, port, service.spec.external_ips))
        entries.extend(_entries_for_ips(builder, port, service.load_balancer_ingress))
        if service.spec.type == SERVICE_TYPE_NODE_PORT:
            node_address = _parse_ip(node_ip)
            if node_address is not None:
                entries.append(
                    builder.for_service_port(port)
                    .with_service_ip(node_address)
                    .with_is_node_port(True)
                    .build()
                )
    return entries


class _RateLimitingQueue:
    """A de-duplicating work queue with per-item exponential back-off."""

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: collections.deque[Hashable] = collections.deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: list[threading.Timer] = []
        self._shutting_down = False

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def get(self) -> tuple[Optional[Hashable], bool]:
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def add_rate_limited(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down:
                return
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
            delay = min(self._base_delay * (2**failures), self._max_delay)
            timer = threading.Timer(delay, self.add, args=(item,))
            timer.daemon = True
            self._timers = [t for t in self._timers if t.is_alive()]
            self._timers.append(timer)
        timer.start()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers, self._timers = self._timers, []
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()


class ServiceServer:
    """Watches services and endpoints and converges the manager's NAT state.

    ``lister`` returns the current Service and Endpoints objects and raises
    :class:`ResourceNotFoundError` for ones that no longer exist.
    """

    name = "services-server"

    def __init__(
        self,
        handler: _NatSettingsHandler,
        lister: _Lister,
        node_address: str,
        node_name: str = "",
    ) -> None:
        self.handler = handler
        self.lister = lister
        self.node_address = node_address
        self.node_name = node_name
        self.state_map: dict[str, ServiceEntries] = {}
        self.status = ServerStatus.UNKNOWN
        self._mutex = threading.Lock()
        self._queue = _RateLimitingQueue()
        self._internal_stop = threading.Event()
        self._runner: Optional[threading.Thread] = None

    def enqueue(self, obj: Any) -> None:
        """Queue the service or endpoints object for syncing under its key."""
        try:
            key = meta_namespace_key(obj)
        except TypeError as exc:
            log.error("%s", exc)
            return
        self._queue.add(key)

    def process_next_work_item(self) -> bool:
        """Take one key off the queue and sync it; return False once shut down."""
        obj, shutdown = self._queue.get()
        if shutdown:
            return False
        try:
            if not isinstance(obj, str):
                self._queue.forget(obj)
                log.error("expected string in workqueue but got %r", obj)
                return True
            try:
                self.sync_handler(obj)
            except Exception as exc:
                self._queue.add_rate_limited(obj)
                log.error("error syncing '%s': %s, requeuing", obj, exc)
                return True
            self._queue.forget(obj)
            log.info("Successfully synced '%s'", obj)
            return True
        finally:
            self._queue.done(obj)

    def sync_handler(self, key: str) -> None:
        """Bring the installed translations for ``key`` in line with the cluster."""
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError:
            log.error("invalid resource key: %s", key)
            return

        service: Optional[KubeService] = None
        endpoints: Optional[KubeEndpoints] = None
        try:
            service = self.lister.get_service(namespace, name)
        except ResourceNotFoundError:
            log.error("service '%s' in work queue no longer exists", key)
        try:
            endpoints = self.lister.get_endpoints(namespace, name)
        except ResourceNotFoundError:
            log.error("endpoints '%s' in work queue no longer exists", key)

        with self._mutex:
            if service is None or endpoints is None:
                self._del_service_port(key)
            else:
                self._update_service_port(key, service, endpoints)

    def _del_service_port(self, service_id: str) -> None:
        log.info("Del: service NamespaceName %s", service_id)
        entry = self.state_map.get(service_id)
        if entry is None:
            log.error("Entry %s does not exist in state map", service_id)
            return
        for translation in entry.entries:
            log.info(
                "Delete NAT translation endpoint %s backends %s",
                translation.endpoint,
                translation.backends,
            )
            try:
                self.handler.nat_translation_delete(translation)
            except Exception:
                log.exception("Failed to delete translation entry for %s", translation)
                raise
        del self.state_map[entry.service_id]

    def _update_service_port(
        self, service_id: str, service: KubeService, endpoints: KubeEndpoints
    ) -> None:
        log.info("Update: service NamespaceName %s", service_id)
        new = ServiceEntries(
            entries=build_nat_translations(service, endpoints, self.node_address, self.node_name),
            service_id=service_id,
        )
        old = self.state_map.get(service_id)
        if old is not None:
            if old.entries == new.entries:
                log.info("No change in entry %s, do not update anything", service_id)
                return
            # translations without backends were never sent to the manager
            for translation in old.entries:
                if translation.backends:
                    try:
                        self.handler.nat_translation_delete(translation)
                    except Exception:
                        log.exception("Failed to delete entry for %s", translation)
                        raise
            del self.state_map[service_id]
        for translation in new.entries:
            if translation.backends:
                try:
                    self.handler.nat_translation_add(translation)
                except Exception:
                    log.exception("Failed to add entry for %s", translation)
                    raise
        self.state_map[service_id] = new

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Run ``workers`` worker threads until ``stop_event`` is set."""
        log.info("Running service workers")
        threads = [
            threading.Thread(target=self._run_worker, name=f"service-worker-{i}", daemon=True)
            for i in range(workers)
        ]
        try:
            for thread in threads:
                thread.start()
            log.info("%d service workers are running", workers)
            stop_event.wait()
            log.info("Shutting down service workers")
        finally:
            self._queue.shut_down()
            for thread in threads:
                thread.join()

    def _run_worker(self) -> None:
        while self.process_next_work_item():
            pass

    def start(self, stop_event: threading.Event) -> None:
        """Serve until ``stop_event`` is set, then stop."""
        self._internal_stop.clear()
        self._runner = threading.Thread(
            target=self.run, args=(DEFAULT_WORKERS, self._internal_stop), daemon=True
        )
        self._runner.start()
        self.status = ServerStatus.OK
        log.info("Service server has started serving")
        stop_event.wait()
        log.info("Received kill signal from agent, stopping")
        self.stop_server()

    def stop_server(self) -> None:
        """Stop the worker threads and mark the server stopped."""
        log.info("Service server is stopping its workers")
        self.status = ServerStatus.STOPPED
        self._internal_stop.set()
        self._queue.shut_down()
        runner, self._runner = self._runner, None
        if runner is not None and runner is not threading.current_thread():
            runner.join()