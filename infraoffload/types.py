"""Shared constants and data types used across the agent."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

SERVER_NET_PROTO = "tcp"
INFRA_AGENT_ADDR = "127.0.0.1"
INFRA_AGENT_PORT = "50001"
INFRA_MANAGER_ADDR = "127.0.0.1"
INFRA_MANAGER_PORT = "50002"
CONNECTION_SOCKET = "/var/run/calico/connection.sock"
FELIX_DATAPLANE_SOCKET = "/var/run/calico/felix-dataplane.sock"
DATA_DIR = "/var/lib/cni/infraagent"
INFRA_HOST = "infra_host"
SRIOV_POD_INTERFACE = "sriov"
IPVLAN_POD_INTERFACE = "ipvlan"
TAP_INTERFACE = "tap"
TAP_INTERFACE_PREFIX = "P4TAP_"
INFRA_HOST_DUMMY_CONTAINER_ID = "60e2aea2_2d40_44ac_b9b1_ace4ceda528e"
INFRA_DUMMY_NETNS = "/var/run/netns/cni-60e2aea2-2d40-44ac-b9b1-ace4ceda528e"
DEFAULT_CNI_BIN_PATH = "/opt/cni/bin"
DEFAULT_CALICO_CONFIG = "/etc/cni/net.d/10-calico.conflist"
DEFAULT_HEALTH_SERVER_PORT = "50096"
CNI_SERVER_SOCKET = "/var/run/calico/cni-server.sock"
SERVICE_REFRESH_TIME_IN_SECONDS = 60
INFRA_AGENT_LOG_DIR = "/var/log/infraagent"
INFRA_AGENT_CLI_NAME = "infraagent"
HOST_INTERFACE_REF_ID = "hostInterface"
DEFAULT_ROUTE = "169.254.1.1/32"
HOST_INTERFACE_ADDR = "200.1.1.2/32"
HOST_INTERFACE_MTU = 1280
ARP_PROXY_DEFAULT_PORT = 0
AGENT_DEFAULT_CLIENT_CERT = "/tmp/infraagent/cert/client/tls.crt"
AGENT_DEFAULT_CLIENT_KEY = "/tmp/infraagent/cert/client/tls.key"
AGENT_DEFAULT_CA_CERT = "/tmp/infraagent/cert/client/ca.crt"
MANAGER_DEFAULT_CLIENT_CERT = "/tmp/inframanager/cert/client/tls.crt"
MANAGER_DEFAULT_CLIENT_KEY = "/tmp/inframanager/cert/client/tls.key"
MANAGER_DEFAULT_SERVER_CERT = "/tmp/inframanager/cert/server/tls.crt"
MANAGER_DEFAULT_SERVER_KEY = "/tmp/inframanager/cert/server/tls.key"
MANAGER_DEFAULT_CA_CERT = "/tmp/inframanager/cert/client/ca.crt"


class ServerStatus(str, enum.Enum):
    """Serving state reported by the agent's servers."""

    UNKNOWN = ""
    OK = "SERVING"
    STOPPED = "STOPPED"


# (wire key, attribute name, expected type)
_INTERFACE_FIELDS = (
    ("pciaddr", "pci_addr", str),
    ("interfacename", "interface_name", str),
    ("vfid", "vf_id", int),
    ("macaddr", "mac_addr", str),
)


@dataclass
class InterfaceInfo:
    """A network interface handed to a pod."""

    pci_addr: str = ""
    interface_name: str = ""
    vf_id: int = 0
    mac_addr: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON representation used in cache files."""
        return {key: getattr(self, attr) for key, attr, _ in _INTERFACE_FIELDS}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InterfaceInfo:
        """Build an instance from its JSON representation.

        Missing or null fields keep their defaults; unknown keys are ignored.
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"interface info must be an object, got {type(data).__name__}")
        values: dict[str, Any] = {}
        for key, attr, kind in _INTERFACE_FIELDS:
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, kind):
                raise ValueError(f"field {key!r} must be of type {kind.__name__}, got {value!r}")
            values[attr] = value
        return cls(**values)


@dataclass(frozen=True)
class Reply:
    """Outcome of a call to the infra manager."""

    successful: bool = False
    error_message: str = ""