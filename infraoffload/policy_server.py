"""Receives policy updates from Felix and forwards them to the infra manager."""

from __future__ import annotations

import contextlib
import logging
import os
import socket
import threading
from collections.abc import Callable
from typing import Any, Optional, Union

from infraoffload.messages import FelixChannel, InboundKind
from infraoffload.types import FELIX_DATAPLANE_SOCKET

log = logging.getLogger(__name__)

_ACCEPT_POLL_SECONDS = 0.1
_JOIN_SECONDS = 2.0

# kind -> (manager client method, handler label used in error messages)
_FORWARDED: dict[InboundKind, tuple[str, str]] = {
    InboundKind.IPSET_UPDATE: ("update_ip_set", "handleIpsetUpdate"),
    InboundKind.IPSET_DELTA_UPDATE: ("update_ip_set_delta", "handleIpsetDeltaUpdate"),
    InboundKind.IPSET_REMOVE: ("remove_ip_set", "handleIpsetRemove"),
    InboundKind.ACTIVE_POLICY_UPDATE: ("active_policy_update", "handleActivePolicyUpdate"),
    InboundKind.ACTIVE_POLICY_REMOVE: ("active_policy_remove", "handleActivePolicyRemove"),
    InboundKind.ACTIVE_PROFILE_UPDATE: ("update_active_profile", "handleActiveProfileUpdate"),
    InboundKind.ACTIVE_PROFILE_REMOVE: ("remove_active_profile", "handleActiveProfileRemove"),
    InboundKind.HOST_ENDPOINT_UPDATE: ("update_host_endpoint", "handleHostEndpointUpdate"),
    InboundKind.HOST_ENDPOINT_REMOVE: ("remove_host_endpoint", "handleHostEndpointRemove"),
    InboundKind.WORKLOAD_ENDPOINT_UPDATE: (
        "update_local_endpoint",
        "handleWorkloadEndpointUpdate",
    ),
    InboundKind.WORKLOAD_ENDPOINT_REMOVE: (
        "remove_local_endpoint",
        "handleWorkloadEndpointRemove",
    ),
    InboundKind.HOST_METADATA_UPDATE: ("update_host_meta_data", "handleHostMetadataUpdate"),
    InboundKind.HOST_METADATA_REMOVE: ("remove_host_meta_data", "handleHostMetadataRemove"),
    InboundKind.SERVICE_ACCOUNT_UPDATE: (
        "update_service_account",
        "handleServiceAccountUpdate",
    ),
    InboundKind.SERVICE_ACCOUNT_REMOVE: (
        "remove_service_account",
        "handleServiceAccountRemove",
    ),
    InboundKind.NAMESPACE_UPDATE: ("update_namespace", "handleNamespaceUpdate"),
    InboundKind.NAMESPACE_REMOVE: ("remove_namespace", "handleNamespaceRemove"),
    InboundKind.ROUTE_UPDATE: ("update_route", "handleRouteUpdate"),
    InboundKind.ROUTE_REMOVE: ("remove_route", "handleRouteRemove"),
    InboundKind.VTEP_UPDATE: (
        "update_vxlan_tunnel_endpoint",
        "handleVXLANTunnelEndpointUpdate",
    ),
    InboundKind.VTEP_REMOVE: (
        "remove_vxlan_tunnel_endpoint",
        "handleVXLANTunnelEndpointRemove",
    ),
}

# Kinds that are acknowledged but need nothing from the manager.
_LOGGED_ONLY = frozenset(
    {
        InboundKind.CONFIG_UPDATE,
        InboundKind.IN_SYNC,
        InboundKind.IPAM_POOL_UPDATE,
        InboundKind.IPAM_POOL_REMOVE,
        InboundKind.WIREGUARD_ENDPOINT_UPDATE,
        InboundKind.WIREGUARD_ENDPOINT_REMOVE,
        InboundKind.GLOBAL_BGP_CONFIG_UPDATE,
    }
)


class PolicyError(RuntimeError):
    """Raised when a policy update cannot be delivered to the infra manager."""


def _close_conn(conn: Any) -> None:
    # shutdown first so that a thread blocked reading the socket wakes up
    shutdown = getattr(conn, "shutdown", None)
    if shutdown is not None:
        with contextlib.suppress(OSError):
            shutdown(socket.SHUT_RDWR)
    with contextlib.suppress(OSError):
        conn.close()


class PolicyServer:
    """Serves the Felix dataplane socket and relays updates to the manager.

    ``dial_manager`` opens a manager client for each forwarded update; the
    client is closed once the update has been sent.
    """

    name = "felix-policy-server"

    def __init__(
        self,
        channel: FelixChannel,
        dial_manager: Callable[[], Any],
        socket_path: str = FELIX_DATAPLANE_SOCKET,
    ) -> None:
        self.channel = channel
        self.socket_path = socket_path
        self.listening = threading.Event()
        self._dial_manager = dial_manager
        self._conns: set[Any] = set()
        self._conns_lock = threading.Lock()
        self._workers: list[threading.Thread] = []

    def sync_policy(self, conn: Any) -> None:
        """Process messages from ``conn`` until it fails or an update cannot be handled."""
        with self._conns_lock:
            self._conns.add(conn)
        try:
            while True:
                try:
                    kind, msg = self.channel.recv_message(conn)
                except Exception as exc:
                    log.warning("error communicating with felix: %s", exc)
                    return
                log.info("Got message from felix %s", kind.value if kind else None)
                try:
                    self.handle_message(kind, msg, False)
                except Exception as exc:
                    log.warning("Error processing update from felix, restarting: %s", exc)
                    return
        finally:
            with self._conns_lock:
                self._conns.discard(conn)
            _close_conn(conn)

    def handle_message(
        self, kind: Union[InboundKind, str, None], msg: Any, pending: bool = False
    ) -> None:
        """Handle one update, forwarding it to the manager where needed."""
        try:
            kind = InboundKind(kind) if kind is not None else None
        except ValueError:
            kind = None
        if kind is None:
            log.warning("Unhandled message from felix: %r", msg)
            return
        if kind in _LOGGED_ONLY:
            log.info("Got %s %r pending %s", kind.value, msg, pending)
            return
        method, label = _FORWARDED[kind]
        log.info("Got %s %r pending %s", kind.value, msg, pending)
        self._forward(method, label, msg)

    def _forward(self, method: str, label: str, msg: Any) -> None:
        try:
            client = self._dial_manager()
        except Exception as exc:
            log.error("unable to dial Infra Manager. err %s", exc)
            raise PolicyError(f"cannot process {label}: cannot dial manager: {exc}") from exc
        try:
            reply = getattr(client, method)(msg)
        except Exception as exc:
            raise PolicyError(f"cannot process {label}: {exc}") from exc
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                with contextlib.suppress(Exception):
                    close()
        if reply is None or not reply.successful:
            detail = getattr(reply, "error_message", "") if reply is not None else ""
            raise PolicyError(f"cannot process {label}" + (f": {detail}" if detail else ""))

    def _remove_socket(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            os.remove(self.socket_path)

    def start(self, stop_event: threading.Event) -> None:
        """Listen on the dataplane socket until ``stop_event`` is set."""
        log.info("Starting policy server")
        self._remove_socket()
        listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            listener.bind(self.socket_path)
            listener.listen()
        except OSError:
            log.exception("Could not bind to %s", self.socket_path)
            listener.close()
            raise
        listener.settimeout(_ACCEPT_POLL_SECONDS)
        self.listening.set()
        try:
            while not stop_event.is_set():
                try:
                    conn, _ = listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    log.warning("cannot accept policy connection: %s", exc)
                    stop_event.wait()
                    break
                conn.settimeout(None)
                worker = threading.Thread(
                    target=self.sync_policy, args=(conn,), name="felix-sync", daemon=True
                )
                self._workers = [w for w in self._workers if w.is_alive()]
                self._workers.append(worker)
                worker.start()
        finally:
            log.info("Closing server...")
            self.listening.clear()
            self.stop_server()
            listener.close()
            self._remove_socket()
            for worker in self._workers:
                worker.join(_JOIN_SECONDS)
            self._workers = []
            log.info("Policy server exited.")

    def stop_server(self) -> None:
        """Close every open connection to Felix."""
        with self._conns_lock:
            conns, self._conns = self._conns, set()
        for conn in conns:
            _close_conn(conn)