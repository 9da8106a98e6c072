"""Node, interface, environment and IPAM helpers used by the agent."""

from __future__ import annotations

import contextlib
import ipaddress
import json
import logging
import os
import posixpath
import re
import socket
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

import grpc
import psutil

from infraoffload.types import (
    DATA_DIR,
    DEFAULT_CNI_BIN_PATH,
    INFRA_DUMMY_NETNS,
    INFRA_HOST_DUMMY_CONTAINER_ID,
    InterfaceInfo,
    ServerStatus,
)

log = logging.getLogger(__name__)

SYS_CLASS_NET = "/sys/class/net"

SERVICE_SUBNET_PATTERN = r"(--service-cluster-ip-range=)(?:[0-9]{1,3}\.){3}[0-9]{1,3}\/[0-9]{1,2}"
POD_SUBNET_PATTERN = r"(--cluster-cidr=)(?:[0-9]{1,3}\.){3}[0-9]{1,3}\/[0-9]{1,2}"

KUBE_CONTROLLER_MANAGER_NAME = "kube-controller-manager"

IPAM_PLUGIN = "host-local"

ENV_VARIABLES: dict[str, str] = {
    "CNI_PATH": DEFAULT_CNI_BIN_PATH,
    "CNI_IFNAME": "eth0",
    "CNI_NETNS": INFRA_DUMMY_NETNS,
    "CNI_CONTAINERID": INFRA_HOST_DUMMY_CONTAINER_ID,
}

_VF_ID_RE = re.compile(r"(\d+)$", re.MULTILINE)

_HEALTH_CHECK_METHOD = "/grpc.health.v1.Health/Check"
_HEALTH_STATUSES = {0: "UNKNOWN", 1: "SERVING", 2: "NOT_SERVING", 3: "SERVICE_UNKNOWN"}


class _KubeClient(Protocol):
    """The part of a Kubernetes API client these helpers need.

    Objects are returned as mappings in the API's JSON form.
    """

    def list_nodes(self, field_selector: str) -> Iterable[Mapping[str, Any]]: ...

    def list_pods(self, namespace: str, label_selector: str) -> Iterable[Mapping[str, Any]]: ...


# -- environment ----------------------------------------------------------------


def get_node_ip_from_env() -> str:
    """Return the node IP from the NODE_IP environment variable."""
    ip_addr = os.environ.get("NODE_IP", "")
    if not ip_addr:
        raise ValueError("NODE_IP env variable is not set")
    return ip_addr


def get_node_name() -> str:
    """Return the node name from the NODE_NAME environment variable."""
    node_name = os.environ.get("NODE_NAME", "")
    if not node_name:
        raise ValueError("unable to get K8s node name from ENV var NODE_NAME")
    return node_name


# -- interface cache --------------------------------------------------------------


def _conf_path(data_dir: str | os.PathLike[str], refid: str, pod_iface: str) -> str:
    return os.path.normpath(os.path.join(os.fspath(data_dir), f"{refid}-{pod_iface}"))


def save_interface_conf(
    data_dir: str | os.PathLike[str], refid: str, pod_iface: str, conf: InterfaceInfo
) -> None:
    """Store an interface description in the cache directory."""
    payload = json.dumps(conf.to_dict(), separators=(",", ":"))
    os.makedirs(data_dir, mode=0o700, exist_ok=True)
    path = verified_file_path(_conf_path(data_dir, refid, pod_iface), os.fspath(data_dir))
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(payload)


def read_interface_conf(
    data_dir: str | os.PathLike[str], refid: str, pod_iface: str
) -> InterfaceInfo:
    """Read an interface description from the cache directory."""
    path = verified_file_path(_conf_path(data_dir, refid, pod_iface), os.fspath(data_dir))
    with open(path, "rb") as handle:
        data = json.loads(handle.read())
    return InterfaceInfo.from_dict(data)


def clean_intf_conf_cache(data_dir: str | os.PathLike[str], refid: str, pod_iface: str) -> None:
    """Remove a cached interface description."""
    os.remove(_conf_path(data_dir, refid, pod_iface))


def get_data_dir_path(kind: str) -> str:
    """Return the cache directory for the given interface type."""
    return posixpath.join(DATA_DIR, kind)


def verified_file_path(file_name: str | os.PathLike[str], allowed_dir: str) -> str:
    """Return the real path of a file, ensuring it lies under ``allowed_dir``."""
    path = os.path.normpath(os.fspath(file_name))
    if os.path.lexists(path):
        try:
            path = os.path.realpath(path, strict=True)
        except OSError as exc:
            raise ValueError(f"Unsafe or invalid path specified. {exc}") from exc

    current = path
    while current != "/":
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
        if current == allowed_dir:
            return path
    raise ValueError(
        "Unsafe or invalid path specified. "
        f"path: {path} is outside of permissible directory: {allowed_dir}"
    )


# -- cluster queries --------------------------------------------------------------


def _list_node(client: _KubeClient, node_name: str) -> list[Mapping[str, Any]]:
    return list(client.list_nodes(field_selector=f"metadata.name={node_name}"))


def get_node_ip(client: _KubeClient, node_name: str) -> str:
    """Return the InternalIP address of a node."""
    nodes = _list_node(client, node_name)
    if not nodes:
        raise LookupError("unable to get K8s node from API")
    internal_ip = ""
    for address in (nodes[0].get("status") or {}).get("addresses") or []:
        if address.get("type") == "InternalIP":
            internal_ip = address.get("address", "")
    if not internal_ip:
        raise ValueError("empty node InternalIP")
    return internal_ip


def get_node_pods_cidr(client: _KubeClient, node_name: str) -> str:
    """Return the pod CIDR assigned to a node."""
    nodes = _list_node(client, node_name)
    if not nodes:
        raise LookupError(f"empty node list for {node_name}")
    return (nodes[0].get("spec") or {}).get("podCIDR", "")


def get_ip_from_command(pattern: str, command: Iterable[str]) -> str:
    """Return the value of the first argument matching ``pattern``, or ''."""
    regex = re.compile(pattern)
    for arg in command:
        match = regex.search(arg)
        if match is None or not match.group(0):
            continue
        parts = match.group(0).split("=")
        if len(parts) != 2:
            continue
        return parts[1]
    return ""


def _command_from_pod(
    pods: Iterable[Mapping[str, Any]], pod_name: str, container_name: str
) -> list[str] | None:
    for pod in pods:
        if pod_name in (pod.get("metadata") or {}).get("name", ""):
            for container in (pod.get("spec") or {}).get("containers") or []:
                if container_name in container.get("name", ""):
                    return container.get("command")
    return None


def get_subnets(client: _KubeClient) -> tuple[str, str]:
    """Return the cluster's service subnet and pod CIDR, in that order."""
    pods = list(
        client.list_pods(
            namespace="", label_selector=f"component={KUBE_CONTROLLER_MANAGER_NAME}"
        )
    )
    if not pods:
        raise LookupError(f"unable to find {KUBE_CONTROLLER_MANAGER_NAME} pod")
    command = _command_from_pod(pods, KUBE_CONTROLLER_MANAGER_NAME, KUBE_CONTROLLER_MANAGER_NAME)
    if not command or command[0] == "":
        raise ValueError(f"unable to get command from {KUBE_CONTROLLER_MANAGER_NAME} pod")
    services_subnet = get_ip_from_command(SERVICE_SUBNET_PATTERN, command)
    pods_cidr = get_ip_from_command(POD_SUBNET_PATTERN, command)
    if not services_subnet or not pods_cidr:
        raise ValueError(
            "failed to get cluster pods cidr or service subnet from cluster configuration"
        )
    return services_subnet, pods_cidr


# -- host interfaces --------------------------------------------------------------


def _psutil_addresses(name: str) -> list[str]:
    addrs = psutil.net_if_addrs().get(name)
    if addrs is None:
        raise OSError(f"no such interface: {name}")
    return [a.address for a in addrs if a.family in (socket.AF_INET, socket.AF_INET6)]


def get_interface(
    interfaces: Iterable[str],
    internal_ip: str,
    address_getter: Callable[[str], Iterable[Any]] = _psutil_addresses,
) -> str:
    """Return the name of the interface carrying ``internal_ip`` (the last one that does)."""
    found = ""
    for name in interfaces:
        try:
            addrs = list(address_getter(name))
        except OSError as exc:
            log.info("Unable to get Addrs for interface %s err:%s", name, exc)
            continue
        for addr in addrs:
            if str(addr).startswith(internal_ip):
                found = name
    if not found:
        raise LookupError("master interface not found")
    return found


def get_node_net_interface(
    client: _KubeClient,
    node_name: str,
    address_getter: Callable[[str], Iterable[Any]] = _psutil_addresses,
) -> str:
    """Return the host interface that holds the node's InternalIP."""
    internal_ip = get_node_ip(client, node_name)
    interfaces = list(psutil.net_if_addrs())
    return get_interface(interfaces, internal_ip, address_getter)


def get_vf_list(pf: str, prefix: str = SYS_CLASS_NET) -> list[InterfaceInfo]:
    """Return the SR-IOV virtual functions of ``pf``, ordered by VF id."""
    device_path = os.path.join(prefix, pf, "device")
    with os.scandir(device_path) as iterator:
        names = sorted(entry.name for entry in iterator)

    found: list[InterfaceInfo] = []
    for name in names:
        if "virtfn" not in name:
            continue
        link_path = os.path.join(device_path, name)
        try:
            real_path = os.readlink(link_path)
        except OSError:
            continue
        match = _VF_ID_RE.search(name)
        if match is None:
            continue
        vf_id = int(match.group(1))
        net_path = os.path.join(link_path, "net")
        try:
            net_entries = sorted(os.listdir(net_path))
        except OSError:
            continue
        if not net_entries:
            # the VF is probably not in the root network namespace
            continue
        iface_name = net_entries[0]
        try:
            with open(os.path.join(net_path, iface_name, "address"), encoding="utf-8") as handle:
                mac = handle.read().strip("\n")
        except OSError:
            continue
        found.append(
            InterfaceInfo(
                pci_addr=posixpath.basename(real_path.rstrip("/")),
                vf_id=vf_id,
                interface_name=iface_name,
                mac_addr=mac,
            )
        )
    found.sort(key=lambda info: info.vf_id)
    return found


def get_tap_interfaces(prefix: str) -> list[InterfaceInfo]:
    """Return host interfaces whose names start with ``prefix``."""
    try:
        links = psutil.net_if_addrs()
    except OSError as exc:
        raise OSError(f"unable to get interface list: {exc}") from exc
    result: list[InterfaceInfo] = []
    for name, addrs in links.items():
        if not name.startswith(prefix):
            continue
        mac = next((a.address for a in addrs if a.family == psutil.AF_LINK), "")
        result.append(InterfaceInfo(interface_name=name, mac_addr=mac))
    return result


# -- environment configuration for IPAM -------------------------------------------


class OsVariableConfigurer:
    """Reads and writes variables in the process environment."""

    def getenv(self, key: str) -> str:
        return os.environ.get(key, "")

    def setenv(self, key: str, value: str) -> None:
        os.environ[key] = value

    def unsetenv(self, key: str) -> None:
        os.environ.pop(key, None)


class EnvConfigurer:
    """Prepares the environment and network config for calling the IPAM plugin."""

    def __init__(self, var_conf: Any, calico_config: str, pods_cidr: str = "") -> None:
        self.var_conf = var_conf
        self.calico_config = calico_config
        self.pods_cidr = pods_cidr

    def setup_env_variables(self, variables: Mapping[str, str]) -> None:
        """Set each variable that is not already set."""
        for key, value in variables.items():
            if not self.var_conf.getenv(key):
                self.var_conf.setenv(key, value)

    def unset_env_variables(self, variables: Iterable[str]) -> None:
        """Remove each variable from the environment."""
        for key in variables:
            self.var_conf.unsetenv(key)

    def read_calico_config(self) -> bytes:
        """Build the IPAM network config from the Calico conflist."""
        with open(self.calico_config, "rb") as handle:
            data = json.loads(handle.read())
        if not isinstance(data, Mapping):
            raise ValueError("calico config must be a JSON object")
        plugins = data.get("plugins")
        if not isinstance(plugins, list):
            raise ValueError("calico config has no plugin list")
        new_conf: dict[str, Any] = {"name": data.get("name"), "cniVersion": data.get("cniVersion")}
        for plugin in plugins:
            if not isinstance(plugin, Mapping):
                raise ValueError("calico plugin entry must be an object")
            if plugin.get("type") != "calico":
                continue
            ipam = plugin.get("ipam")
            if not isinstance(ipam, Mapping):
                raise ValueError("calico plugin has no ipam section")
            ipam = dict(ipam)
            if ipam.get("subnet") == "usePodCidr":
                ipam["subnet"] = self.pods_cidr
            new_conf["ipam"] = ipam
        return json.dumps(new_conf, sort_keys=True, separators=(",", ":")).encode()


@contextlib.contextmanager
def _ipam_environment(configurer: EnvConfigurer):
    try:
        configurer.setup_env_variables(ENV_VARIABLES)
        yield configurer.read_calico_config()
    finally:
        with contextlib.suppress(OSError):
            configurer.unset_env_variables(ENV_VARIABLES)


def _first_address(result: Mapping[str, Any]) -> str | None:
    ips = result.get("ips")
    if ips:
        return ips[0].get("address")
    for legacy in ("ip4", "ip6"):
        entry = result.get(legacy)
        if entry and entry.get("ip"):
            return entry["ip"]
    return None


def get_ip_from_ipam(
    configurer: EnvConfigurer, ipam_exec_add: Callable[[str, bytes], Mapping[str, Any]]
) -> ipaddress.IPv4Interface | ipaddress.IPv6Interface:
    """Request an address for the infra host interface from host-local IPAM."""
    with _ipam_environment(configurer) as conf:
        result = ipam_exec_add(IPAM_PLUGIN, conf)
        address = _first_address(result)
        if not address:
            raise ValueError("failed to request IP from IPAM, IP not allocated")
        return ipaddress.ip_interface(address)


def release_ip_from_ipam(
    configurer: EnvConfigurer, ipam_exec_del: Callable[[str, bytes], None]
) -> None:
    """Release the address held by the infra host interface."""
    with _ipam_environment(configurer) as conf:
        ipam_exec_del(IPAM_PLUGIN, conf)


# -- gRPC health ------------------------------------------------------------------


def _read_varint(data: bytes, pos: int) -> tuple[int, int]:
    value = 0
    shift = 0
    while True:
        if pos >= len(data):
            raise ValueError("truncated varint")
        byte = data[pos]
        pos += 1
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, pos
        shift += 7


def _decode_health_status(data: bytes) -> str:
    status = 0
    pos = 0
    while pos < len(data):
        key, pos = _read_varint(data, pos)
        field, wire_type = key >> 3, key & 7
        if wire_type == 0:
            value, pos = _read_varint(data, pos)
            if field == 1:
                status = value
        elif wire_type == 2:
            length, pos = _read_varint(data, pos)
            pos += length
        elif wire_type == 1:
            pos += 8
        elif wire_type == 5:
            pos += 4
        else:
            raise ValueError(f"unsupported wire type {wire_type}")
    return _HEALTH_STATUSES.get(status, "UNKNOWN")


def _grpc_health_check(channel: Any) -> str:
    check = channel.unary_unary(
        _HEALTH_CHECK_METHOD,
        request_serializer=bytes,
        response_deserializer=_decode_health_status,
    )
    return check(b"")


def check_grpc_server_status(
    target: str,
    dial: Callable[[str], Any] = grpc.insecure_channel,
    health_check: Callable[[Any], str] = _grpc_health_check,
) -> bool:
    """Return True if the gRPC server at ``target`` reports SERVING."""
    channel = dial(target)
    try:
        return health_check(channel) == ServerStatus.OK.value
    finally:
        if channel is not None:
            try:
                channel.close()
            except Exception:
                log.exception("failed to close connection")