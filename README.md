# infraoffload

Building blocks for a node agent that hands pod interfaces out of a pool,
keeps NAT translations for Kubernetes Services in step with the cluster,
and relays Calico Felix policy updates to an infrastructure manager.

The package is a library. It has no command of its own; you wire its
pieces together in the process that runs on each node.

## Modules

| Module | Purpose |
| --- | --- |
| `infraoffload.types` | Shared constants, `InterfaceInfo`, `ServerStatus` and the `Reply` a manager call returns |
| `infraoffload.pool` | `ResourcePool`: hands out free interfaces and remembers which are taken |
| `infraoffload.watcher` | `wait_for` with `CalicoWatcher` (a file appearing) and `GrpcWatcher` (a gRPC server becoming healthy) |
| `infraoffload.utils` | Node and interface discovery, the interface config cache, IPAM helpers, path checks, gRPC health checks |
| `infraoffload.nat_translation` | Service/Endpoints data classes and `NatTranslationBuilder` |
| `infraoffload.nat_handler` | `NatServiceHandler`: sends NAT translations and SNAT settings to the manager |
| `infraoffload.services` | `build_nat_translations` and `ServiceServer`, a work-queue controller for NAT state |
| `infraoffload.messages` | Length-prefixed framing and `FelixChannel` for the Felix dataplane socket |
| `infraoffload.policy_server` | `PolicyServer`: serves the Felix socket and forwards updates to the manager |

## Interface pool

A `ResourcePool` is built from the interfaces on the node. Every interface
whose description is already cached as a JSON file in `cache_path` starts
out in use, so a restarted agent does not hand it out twice.

```python
from infraoffload.pool import NoFreeResourcesError, ResourcePool, load
from infraoffload.types import InterfaceInfo

interfaces = [
    InterfaceInfo(pci_addr="0000:00:00.1", interface_name="vf0", vf_id=0, mac_addr="02:00:00:00:00:01"),
    InterfaceInfo(pci_addr="0000:00:00.2", interface_name="vf1", vf_id=1, mac_addr="02:00:00:00:00:02"),
]

pool = ResourcePool.from_interfaces(interfaces, "/var/lib/cni/infraagent/sriov")

try:
    resource = pool.get()          # first free resource, now marked in use
except NoFreeResourcesError:
    ...

pool.release("vf0")
pool.save("/tmp/pool.json")
restored = load("/tmp/pool.json")
```

`infraoffload.utils` keeps the per-pod cache that `from_interfaces` reads:
`save_interface_conf`, `read_interface_conf` and `clean_intf_conf_cache`.
Reads and writes go through `verified_file_path`, which raises
`ValueError` for a path that resolves outside the cache directory.
`get_vf_list(pf, prefix)` lists the SR-IOV virtual functions of a physical
function under `/sys/class/net`, ordered by VF id; `get_tap_interfaces`
lists host interfaces by name prefix.

## Waiting for a resource

`wait_for` returns once the resource is there and raises `WatcherError`
on failure or timeout. Timeouts are in seconds; zero or less waits forever.

```python
from infraoffload.utils import check_grpc_server_status
from infraoffload.watcher import CalicoWatcher, GrpcWatcher, wait_for

wait_for(CalicoWatcher(30, "/etc/cni/net.d/10-calico.conflist"))

wait_for(GrpcWatcher(30, 0.5, "127.0.0.1:50002", None,
                     lambda target, dial: check_grpc_server_status(target)))
```

`CalicoWatcher` uses a watchdog observer by default; pass
`observer_factory` to supply another.

## Cluster queries

`get_node_ip`, `get_node_pods_cidr`, `get_node_net_interface` and
`get_subnets` take a client object with two methods that return
Kubernetes objects as mappings in their JSON form:

- `list_nodes(field_selector=...)`
- `list_pods(namespace=..., label_selector=...)`

`get_subnets` returns `(service_subnet, pods_cidr)` read from the
`kube-controller-manager` pod's command line.

## NAT for Services

```python
from infraoffload.nat_translation import NatTranslationBuilder

translation = (
    NatTranslationBuilder(service, endpoints, node_name)
    .for_service_port(port)
    .with_service_ip("10.96.0.10")
    .with_is_node_port(False)
    .build()
)
```

`build_nat_translations(service, endpoints, node_ip, node_name)` builds
the translations for every port of a Service: its cluster IP, external
IPs, load-balancer ingress IPs and, for `NodePort` services, the node
address (with source NAT to that address on each backend).

`ServiceServer(handler, lister, node_address, node_name)` keeps them
installed. Call `enqueue(obj)` with a Service or Endpoints object whenever
one changes; worker threads started by `start(stop_event)` sync each
`namespace/name` key. The `lister` provides `get_service(namespace, name)`
and `get_endpoints(namespace, name)` and raises `ResourceNotFoundError`
for objects that are gone, in which case the service's translations are
deleted. Failed syncs are retried with back-off.

`NatServiceHandler(dial_manager)` is a handler for `ServiceServer`.
`dial_manager()` returns a client with `nat_translation_add`,
`nat_translation_delete`, `set_snat_address(snat_ipv4=, snat_ipv6=)` and
`add_del_snat_prefix(is_add=, prefix=)`, each returning a `Reply`; an
unsuccessful reply raises `NatHandlerError`.

## Felix policy

Frames on the Felix socket are an 8-byte little-endian length followed by
the envelope bytes (`read_frame`, `write_frame`). `FelixChannel(codec)`
turns frames into `(InboundKind, payload)` pairs and numbers outgoing
messages; the codec provides `decode(data) -> (field_name, payload)` and
`encode(sequence_number, field_name, payload) -> bytes`.

`PolicyServer(channel, dial_manager, socket_path)` listens on the Unix
socket until `stop_event` is set. IP set, policy, profile, endpoint, host
metadata, service account, namespace, route and VXLAN endpoint updates are
forwarded to the manager client returned by `dial_manager()`; config,
in-sync, IPAM pool, WireGuard and BGP messages are only logged. A failed
forward raises `PolicyError` and closes that connection.

## What the package does not do

- It does not set up TLS or mutual-TLS credentials for gRPC; callers
  create channels and manager clients themselves.
- It has no Kubernetes API client or informers: the caller supplies the
  client, the lister and the change notifications.
- It does not define the Felix or manager protobuf messages; the envelope
  codec and manager client are passed in.
- It provides no command line program or daemon entry point.

## Running the tests

Install the `test` extra and run `pytest` from the project root.