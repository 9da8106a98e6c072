"""Framing and envelope handling for the Felix dataplane channel.

Every message on the channel is a frame: an 8-byte little-endian length
followed by that many bytes of a serialised envelope. Envelopes sent to the
dataplane carry one of the :class:`InboundKind` payloads; envelopes sent back
carry a sequence number and one of the :class:`OutboundKind` payloads.
"""

from __future__ import annotations

import enum
import logging
import struct
import threading
from typing import Any, Optional, Protocol, Union

log = logging.getLogger(__name__)

_LENGTH = struct.Struct("<Q")


class FrameError(EOFError):
    """Raised when a frame cannot be read in full."""


class InboundKind(str, enum.Enum):
    """Payload kinds Felix sends to the dataplane, named by envelope field."""

    CONFIG_UPDATE = "config_update"
    IN_SYNC = "in_sync"
    IPSET_UPDATE = "ipset_update"
    IPSET_DELTA_UPDATE = "ipset_delta_update"
    IPSET_REMOVE = "ipset_remove"
    ACTIVE_POLICY_UPDATE = "active_policy_update"
    ACTIVE_POLICY_REMOVE = "active_policy_remove"
    ACTIVE_PROFILE_UPDATE = "active_profile_update"
    ACTIVE_PROFILE_REMOVE = "active_profile_remove"
    HOST_ENDPOINT_UPDATE = "host_endpoint_update"
    HOST_ENDPOINT_REMOVE = "host_endpoint_remove"
    WORKLOAD_ENDPOINT_UPDATE = "workload_endpoint_update"
    WORKLOAD_ENDPOINT_REMOVE = "workload_endpoint_remove"
    HOST_METADATA_UPDATE = "host_metadata_update"
    HOST_METADATA_REMOVE = "host_metadata_remove"
    IPAM_POOL_UPDATE = "ipam_pool_update"
    IPAM_POOL_REMOVE = "ipam_pool_remove"
    SERVICE_ACCOUNT_UPDATE = "service_account_update"
    SERVICE_ACCOUNT_REMOVE = "service_account_remove"
    NAMESPACE_UPDATE = "namespace_update"
    NAMESPACE_REMOVE = "namespace_remove"
    ROUTE_UPDATE = "route_update"
    ROUTE_REMOVE = "route_remove"
    VTEP_REMOVE = "vtep_remove"
    VTEP_UPDATE = "vtep_update"
    WIREGUARD_ENDPOINT_UPDATE = "wireguard_endpoint_update"
    WIREGUARD_ENDPOINT_REMOVE = "wireguard_endpoint_remove"
    GLOBAL_BGP_CONFIG_UPDATE = "global_bgp_config_update"


class OutboundKind(str, enum.Enum):
    """Payload kinds the dataplane reports back to Felix."""

    PROCESS_STATUS_UPDATE = "process_status_update"
    WORKLOAD_ENDPOINT_STATUS_UPDATE = "workload_endpoint_status_update"
    WORKLOAD_ENDPOINT_STATUS_REMOVE = "workload_endpoint_status_remove"
    HOST_ENDPOINT_STATUS_UPDATE = "host_endpoint_status_update"
    HOST_ENDPOINT_STATUS_REMOVE = "host_endpoint_status_remove"
    WIREGUARD_STATUS_UPDATE = "wireguard_status_update"


class _Codec(Protocol):
    """Serialises envelopes.

    ``decode`` turns an inbound envelope into ``(field name, payload)``;
    ``encode`` builds an outbound envelope from a sequence number, a field
    name and a payload.
    """

    def decode(self, data: bytes) -> tuple[str, Any]: ...

    def encode(self, sequence_number: int, kind: str, payload: Any) -> bytes: ...


def _read_exact(stream: Any, size: int) -> bytes:
    chunks = bytearray()
    reader = getattr(stream, "read", None) or stream.recv
    while len(chunks) < size:
        chunk = reader(size - len(chunks))
        if not chunk:
            break
        chunks += chunk
    return bytes(chunks)


def read_frame(stream: Any) -> bytes:
    """Read one length-prefixed frame from a binary stream or socket."""
    header = _read_exact(stream, _LENGTH.size)
    if not header:
        raise FrameError("connection closed")
    if len(header) < _LENGTH.size:
        raise FrameError("truncated frame header")
    (length,) = _LENGTH.unpack(header)
    data = _read_exact(stream, length)
    if len(data) < length:
        raise FrameError(f"truncated frame: expected {length} bytes, got {len(data)}")
    return data


def write_frame(stream: Any, data: bytes) -> None:
    """Write ``data`` as one length-prefixed frame, retrying short writes."""
    message = _LENGTH.pack(len(data)) + bytes(data)
    sendall = getattr(stream, "sendall", None)
    if sendall is not None:
        sendall(message)
        return
    view = memoryview(message)
    while view:
        written = stream.write(view)
        if written is None:
            written = len(view)
        elif written < len(view):
            log.warning("Short write to felix; buffer full?")
        view = view[written:]
    flush = getattr(stream, "flush", None)
    if flush is not None:
        flush()


class FelixChannel:
    """Reads inbound envelopes and writes numbered outbound ones."""

    def __init__(self, codec: _Codec) -> None:
        self.codec = codec
        self.next_sequence_number = 0
        self._lock = threading.Lock()

    def recv_message(self, stream: Any) -> tuple[Optional[InboundKind], Any]:
        """Read one envelope and return its kind and payload.

        Unknown payload kinds are logged and come back as ``(None, None)``.
        """
        field, payload = self.codec.decode(read_frame(stream))
        log.debug("Received message from dataplane: %s %r", field, payload)
        try:
            kind = InboundKind(field)
        except ValueError:
            log.warning("Ignoring unknown message from felix: %r", field)
            return None, None
        return kind, payload

    def send_message(
        self, stream: Any, kind: Union[OutboundKind, str], payload: Any
    ) -> None:
        """Wrap ``payload`` in an envelope with the next sequence number and send it."""
        try:
            kind = OutboundKind(kind)
        except ValueError:
            raise ValueError(f"Unknown message type: {kind!r}") from None
        with self._lock:
            sequence_number = self.next_sequence_number
            self.next_sequence_number += 1
        log.debug("Writing msg (%d) to felix: %r", sequence_number, payload)
        data = self.codec.encode(sequence_number, kind.value, payload)
        write_frame(stream, data)
        log.debug("Wrote message to felix")