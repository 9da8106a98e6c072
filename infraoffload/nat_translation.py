"""Kubernetes service objects and the NAT translations derived from them."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import Union

SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
SERVICE_TYPE_NODE_PORT = "NodePort"
EXTERNAL_TRAFFIC_POLICY_CLUSTER = "Cluster"
EXTERNAL_TRAFFIC_POLICY_LOCAL = "Local"


@dataclass
class ServicePort:
    """One port exposed by a service; a string target port names an endpoint port."""

    name: str = ""
    protocol: str = "TCP"
    port: int = 0
    target_port: Union[int, str] = 0
    node_port: int = 0


@dataclass
class ServiceSpec:
    """The parts of a service spec relevant to NAT."""

    cluster_ip: str = ""
    ports: list[ServicePort] = field(default_factory=list)
    external_ips: list[str] = field(default_factory=list)
    type: str = SERVICE_TYPE_CLUSTER_IP
    external_traffic_policy: str = EXTERNAL_TRAFFIC_POLICY_CLUSTER


@dataclass
class KubeService:
    """A Kubernetes Service; ``load_balancer_ingress`` lists ingress IPs."""

    name: str = ""
    namespace: str = ""
    spec: ServiceSpec = field(default_factory=ServiceSpec)
    load_balancer_ingress: list[str] = field(default_factory=list)
    resource_version: str = ""


@dataclass
class EndpointAddress:
    """A backend address, optionally tied to the node it runs on."""

    ip: str = ""
    node_name: str | None = None


@dataclass
class EndpointPort:
    """A named port on the backends of a subset."""

    name: str = ""
    port: int = 0
    protocol: str = "TCP"


@dataclass
class EndpointSubset:
    """Addresses that share the same set of ports."""

    addresses: list[EndpointAddress] = field(default_factory=list)
    ports: list[EndpointPort] = field(default_factory=list)


@dataclass
class KubeEndpoints:
    """A Kubernetes Endpoints object."""

    name: str = ""
    namespace: str = ""
    subsets: list[EndpointSubset] = field(default_factory=list)
    resource_version: str = ""


@dataclass
class NatEndpoint:
    """An address and port on either side of a translation."""

    ipv4_addr: str = ""
    port: int = 0


@dataclass
class NatEndpointTuple:
    """A backend: where traffic goes, and the source to rewrite it to if any."""

    dst_ep: NatEndpoint | None = None
    src_ep: NatEndpoint | None = None


@dataclass
class NatTranslation:
    """A virtual address and port load-balanced over a set of backends."""

    proto: str = ""
    endpoint: NatEndpoint | None = None
    backends: list[NatEndpointTuple] = field(default_factory=list)
    is_real_ip: bool = False


def _is_local_only(service: KubeService) -> bool:
    return service.spec.external_traffic_policy == EXTERNAL_TRAFFIC_POLICY_LOCAL


def _is_address_local(address: EndpointAddress, node_name: str) -> bool:
    return address.node_name is None or address.node_name == node_name


def _dst_port(service_port: ServicePort, endpoint_port: EndpointPort) -> int:
    target = service_port.target_port
    if isinstance(target, str):
        return endpoint_port.port
    # an unset target port means the service port itself
    return service_port.port if target == 0 else target


def _vip_dst_port(service_port: ServicePort, is_node_port: bool) -> int:
    return service_port.node_port if is_node_port else service_port.port


class NatTranslationBuilder:
    """Builds the NAT translation for one port and address of a service."""

    def __init__(
        self, service: KubeService, endpoints: KubeEndpoints, node_name: str = ""
    ) -> None:
        self.service = service
        self.endpoints = endpoints
        self.node_name = node_name
        self._service_port: ServicePort | None = None
        self._service_ip = ""
        self._is_node_port = False

    def for_service_port(self, service_port: ServicePort) -> NatTranslationBuilder:
        self._service_port = service_port
        return self

    def with_service_ip(
        self, service_ip: str | ipaddress.IPv4Address | ipaddress.IPv6Address
    ) -> NatTranslationBuilder:
        self._service_ip = str(ipaddress.ip_address(service_ip))
        return self

    def with_is_node_port(self, is_node_port: bool) -> NatTranslationBuilder:
        self._is_node_port = is_node_port
        return self

    def build(self) -> NatTranslation:
        """Return the translation for the configured port and address."""
        service_port = self._service_port
        if service_port is None:
            raise ValueError("no service port set")
        # node ports are reachable from any node, so every backend counts
        local_only = _is_local_only(self.service) and not self._is_node_port
        backends = []
        for subset in self.endpoints.subsets:
            for endpoint_port in subset.ports:
                if endpoint_port.name != service_port.name:
                    continue
                for address in subset.addresses:
                    if local_only and not _is_address_local(address, self.node_name):
                        continue
                    backend = NatEndpointTuple(
                        dst_ep=NatEndpoint(
                            ipv4_addr=address.ip, port=_dst_port(service_port, endpoint_port)
                        )
                    )
                    if self._is_node_port:
                        backend.src_ep = NatEndpoint(ipv4_addr=self._service_ip)
                    backends.append(backend)
        return NatTranslation(
            proto=service_port.protocol,
            endpoint=NatEndpoint(
                ipv4_addr=self._service_ip,
                port=_vip_dst_port(service_port, self._is_node_port),
            ),
            backends=backends,
            is_real_ip=self._is_node_port,
        )