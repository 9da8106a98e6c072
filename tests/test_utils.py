import ipaddress
import json
import os
from types import SimpleNamespace

import psutil
import pytest

from infraoffload import utils
from infraoffload.types import DATA_DIR, InterfaceInfo


class FakeClient:
    def __init__(self, nodes=(), pods=()):
        self.nodes = list(nodes)
        self.pods = list(pods)
        self.field_selectors = []
        self.pod_queries = []

    def list_nodes(self, field_selector):
        self.field_selectors.append(field_selector)
        return list(self.nodes)

    def list_pods(self, namespace, label_selector):
        self.pod_queries.append((namespace, label_selector))
        return list(self.pods)


class DictVars:
    def __init__(self, initial=None):
        self.values = dict(initial or {})

    def getenv(self, key):
        return self.values.get(key, "")

    def setenv(self, key, value):
        self.values[key] = value

    def unsetenv(self, key):
        self.values.pop(key, None)


def node(addresses, pod_cidr=""):
    return {"status": {"addresses": addresses}, "spec": {"podCIDR": pod_cidr}}


def kcm_pod(command):
    return {
        "metadata": {"name": "kube-controller-manager-master"},
        "spec": {"containers": [{"name": "kube-controller-manager", "command": command}]},
    }


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path.resolve() / "cache")


def test_node_ip_from_env(monkeypatch):
    monkeypatch.setenv("NODE_IP", "10.0.0.7")
    assert utils.get_node_ip_from_env() == "10.0.0.7"
    monkeypatch.delenv("NODE_IP")
    with pytest.raises(ValueError, match="NODE_IP env variable is not set"):
        utils.get_node_ip_from_env()


def test_node_name(monkeypatch):
    monkeypatch.setenv("NODE_NAME", "worker-1")
    assert utils.get_node_name() == "worker-1"
    monkeypatch.setenv("NODE_NAME", "")
    with pytest.raises(ValueError, match="NODE_NAME"):
        utils.get_node_name()


def test_interface_conf_round_trip(data_dir):
    conf = InterfaceInfo(pci_addr="0000:af:00.2", interface_name="ens1v0", vf_id=3, mac_addr="02:00:00:00:00:01")
    utils.save_interface_conf(data_dir, "ref", "eth0", conf)
    assert os.path.isfile(os.path.join(data_dir, "ref-eth0"))
    assert utils.read_interface_conf(data_dir, "ref", "eth0") == conf


def test_interface_conf_file_format(data_dir):
    conf = InterfaceInfo(interface_name="ens1v0", vf_id=2)
    utils.save_interface_conf(data_dir, "ref", "eth0", conf)
    with open(os.path.join(data_dir, "ref-eth0"), encoding="utf-8") as handle:
        stored = json.load(handle)
    assert stored == {"pciaddr": "", "interfacename": "ens1v0", "vfid": 2, "macaddr": ""}


def test_clean_intf_conf_cache(data_dir):
    utils.save_interface_conf(data_dir, "ref", "eth0", InterfaceInfo(interface_name="x"))
    utils.clean_intf_conf_cache(data_dir, "ref", "eth0")
    assert not os.path.exists(os.path.join(data_dir, "ref-eth0"))
    with pytest.raises(FileNotFoundError):
        utils.clean_intf_conf_cache(data_dir, "ref", "eth0")


def test_read_interface_conf_missing(data_dir):
    os.makedirs(data_dir)
    with pytest.raises(FileNotFoundError):
        utils.read_interface_conf(data_dir, "ref", "eth0")


def test_read_interface_conf_rejects_symlink_outside(tmp_path, data_dir):
    os.makedirs(data_dir)
    outside = tmp_path / "outside.json"
    outside.write_text(json.dumps({"interfacename": "evil"}))
    os.symlink(outside, os.path.join(data_dir, "ref-eth0"))
    with pytest.raises(ValueError, match="Unsafe or invalid path"):
        utils.read_interface_conf(data_dir, "ref", "eth0")


def test_verified_file_path_inside(data_dir):
    target = os.path.join(data_dir, "sub", "file")
    assert utils.verified_file_path(target, data_dir) == target


def test_verified_file_path_outside(data_dir):
    with pytest.raises(ValueError, match="outside of permissible directory"):
        utils.verified_file_path(os.path.join(data_dir, "..", "other"), data_dir)


def test_verified_file_path_broken_symlink(data_dir):
    os.makedirs(data_dir)
    link = os.path.join(data_dir, "dangling")
    os.symlink(os.path.join(data_dir, "missing"), link)
    with pytest.raises(ValueError, match="Unsafe or invalid path"):
        utils.verified_file_path(link, data_dir)


def test_get_data_dir_path():
    assert utils.get_data_dir_path("sriov") == DATA_DIR + "/sriov"


def test_get_node_ip_uses_last_internal_address():
    client = FakeClient(
        nodes=[
            node(
                [
                    {"type": "Hostname", "address": "worker-1"},
                    {"type": "InternalIP", "address": "10.0.0.1"},
                    {"type": "InternalIP", "address": "10.0.0.2"},
                ]
            )
        ]
    )
    assert utils.get_node_ip(client, "worker-1") == "10.0.0.2"
    assert client.field_selectors == ["metadata.name=worker-1"]


def test_get_node_ip_errors():
    with pytest.raises(LookupError, match="unable to get K8s node from API"):
        utils.get_node_ip(FakeClient(), "worker-1")
    client = FakeClient(nodes=[node([{"type": "Hostname", "address": "worker-1"}])])
    with pytest.raises(ValueError, match="empty node InternalIP"):
        utils.get_node_ip(client, "worker-1")


def test_get_node_pods_cidr():
    client = FakeClient(nodes=[node([], pod_cidr="10.244.1.0/24")])
    assert utils.get_node_pods_cidr(client, "worker-1") == "10.244.1.0/24"
    with pytest.raises(LookupError, match="empty node list for worker-1"):
        utils.get_node_pods_cidr(FakeClient(), "worker-1")


def test_get_interface_matches_prefix():
    addresses = {"lo": ["127.0.0.1/8"], "eth0": ["10.0.0.5/24"], "eth1": ["192.168.1.1/24"]}
    assert utils.get_interface(addresses, "10.0.0.5", addresses.__getitem__) == "eth0"


def test_get_interface_skips_failing_interfaces():
    def getter(name):
        if name == "bad":
            raise OSError("gone")
        return ["10.0.0.5/24"]

    assert utils.get_interface(["bad", "good"], "10.0.0.5", getter) == "good"


def test_get_interface_not_found():
    with pytest.raises(LookupError, match="master interface not found"):
        utils.get_interface(["eth0"], "10.0.0.5", lambda name: ["192.168.0.1/24"])


def test_get_node_net_interface(monkeypatch):
    monkeypatch.setattr(psutil, "net_if_addrs", lambda: {"lo": [], "ens3": []})
    client = FakeClient(nodes=[node([{"type": "InternalIP", "address": "10.1.1.9"}])])
    getter = {"lo": ["127.0.0.1"], "ens3": ["10.1.1.9/16"]}.__getitem__
    assert utils.get_node_net_interface(client, "worker-1", getter) == "ens3"


def _make_vf(tmp_path, device, link_name, pci, iface, mac):
    pci_dir = tmp_path / "pci" / pci
    net_dir = pci_dir / "net"
    net_dir.mkdir(parents=True)
    if iface is not None:
        (net_dir / iface).mkdir()
        (net_dir / iface / "address").write_text(mac + "\n")
    os.symlink(pci_dir, device / link_name)


def test_get_vf_list(tmp_path):
    prefix = tmp_path / "sys"
    device = prefix / "ens1" / "device"
    device.mkdir(parents=True)
    (device / "vendor").write_text("0x8086\n")
    _make_vf(tmp_path, device, "virtfn10", "0000:af:00.10", "ens1v10", "02:00:00:00:00:0a")
    _make_vf(tmp_path, device, "virtfn2", "0000:af:00.2", "ens1v2", "02:00:00:00:00:02")
    _make_vf(tmp_path, device, "virtfn3", "0000:af:00.3", None, "")

    vfs = utils.get_vf_list("ens1", str(prefix))

    assert [vf.vf_id for vf in vfs] == [2, 10]
    assert vfs[0] == InterfaceInfo(
        pci_addr="0000:af:00.2", interface_name="ens1v2", vf_id=2, mac_addr="02:00:00:00:00:02"
    )
    assert vfs[1].pci_addr == "0000:af:00.10"


def test_get_vf_list_missing_device(tmp_path):
    with pytest.raises(FileNotFoundError):
        utils.get_vf_list("nope", str(tmp_path))


def test_get_tap_interfaces(monkeypatch):
    links = {
        "P4TAP_0": [SimpleNamespace(family=psutil.AF_LINK, address="02:00:00:00:00:05")],
        "P4TAP_1": [],
        "eth0": [SimpleNamespace(family=psutil.AF_LINK, address="02:00:00:00:00:06")],
    }
    monkeypatch.setattr(psutil, "net_if_addrs", lambda: links)
    taps = utils.get_tap_interfaces("P4TAP_")
    assert taps == [
        InterfaceInfo(interface_name="P4TAP_0", mac_addr="02:00:00:00:00:05"),
        InterfaceInfo(interface_name="P4TAP_1", mac_addr=""),
    ]


def test_get_ip_from_command():
    command = ["kube-controller-manager", "--service-cluster-ip-range=10.96.0.0/12"]
    assert utils.get_ip_from_command(utils.SERVICE_SUBNET_PATTERN, command) == "10.96.0.0/12"
    assert utils.get_ip_from_command(utils.POD_SUBNET_PATTERN, command) == ""


def test_get_subnets():
    command = [
        "kube-controller-manager",
        "--cluster-cidr=10.244.0.0/16",
        "--service-cluster-ip-range=10.96.0.0/12",
    ]
    client = FakeClient(pods=[kcm_pod(command)])
    assert utils.get_subnets(client) == ("10.96.0.0/12", "10.244.0.0/16")
    assert client.pod_queries == [("", "component=kube-controller-manager")]


def test_get_subnets_errors():
    with pytest.raises(LookupError, match="unable to find kube-controller-manager pod"):
        utils.get_subnets(FakeClient())
    with pytest.raises(ValueError, match="unable to get command"):
        utils.get_subnets(FakeClient(pods=[kcm_pod([""])]))
    with pytest.raises(ValueError, match="failed to get cluster pods cidr"):
        utils.get_subnets(FakeClient(pods=[kcm_pod(["kube-controller-manager", "--cluster-cidr=10.244.0.0/16"])]))


def test_os_variable_configurer(monkeypatch):
    monkeypatch.delenv("INFRA_TEST_VAR", raising=False)
    conf = utils.OsVariableConfigurer()
    assert conf.getenv("INFRA_TEST_VAR") == ""
    conf.setenv("INFRA_TEST_VAR", "value")
    assert os.environ["INFRA_TEST_VAR"] == "value"
    conf.unsetenv("INFRA_TEST_VAR")
    assert "INFRA_TEST_VAR" not in os.environ


def test_env_configurer_keeps_existing_values():
    variables = DictVars({"CNI_IFNAME": "eth9"})
    configurer = utils.EnvConfigurer(variables, "unused")
    configurer.setup_env_variables(utils.ENV_VARIABLES)
    assert variables.values["CNI_IFNAME"] == "eth9"
    assert variables.values["CNI_NETNS"] == utils.ENV_VARIABLES["CNI_NETNS"]
    configurer.unset_env_variables(utils.ENV_VARIABLES)
    assert variables.values == {}


def write_conflist(path, subnet):
    path.write_text(
        json.dumps(
            {
                "name": "k8s-pod-network",
                "cniVersion": "0.3.1",
                "plugins": [
                    {"type": "calico", "ipam": {"type": "host-local", "subnet": subnet}},
                    {"type": "portmap", "ipam": {"subnet": "ignored"}},
                ],
            }
        )
    )


def test_read_calico_config_uses_pod_cidr(tmp_path):
    conflist = tmp_path / "10-calico.conflist"
    write_conflist(conflist, "usePodCidr")
    configurer = utils.EnvConfigurer(DictVars(), str(conflist), "10.244.3.0/24")
    conf = json.loads(configurer.read_calico_config())
    assert conf == {
        "name": "k8s-pod-network",
        "cniVersion": "0.3.1",
        "ipam": {"type": "host-local", "subnet": "10.244.3.0/24"},
    }


def test_read_calico_config_keeps_explicit_subnet(tmp_path):
    conflist = tmp_path / "10-calico.conflist"
    write_conflist(conflist, "10.50.0.0/16")
    configurer = utils.EnvConfigurer(DictVars(), str(conflist), "10.244.3.0/24")
    assert json.loads(configurer.read_calico_config())["ipam"]["subnet"] == "10.50.0.0/16"


def test_read_calico_config_without_plugins(tmp_path):
    conflist = tmp_path / "bad.conflist"
    conflist.write_text(json.dumps({"name": "x"}))
    with pytest.raises(ValueError):
        utils.EnvConfigurer(DictVars(), str(conflist)).read_calico_config()


def test_get_ip_from_ipam(tmp_path):
    conflist = tmp_path / "10-calico.conflist"
    write_conflist(conflist, "usePodCidr")
    variables = DictVars()
    configurer = utils.EnvConfigurer(variables, str(conflist), "10.244.3.0/24")
    calls = []

    def exec_add(plugin, conf):
        calls.append((plugin, json.loads(conf), dict(variables.values)))
        return {"ips": [{"address": "10.244.3.7/24"}]}

    assert utils.get_ip_from_ipam(configurer, exec_add) == ipaddress.ip_interface("10.244.3.7/24")
    plugin, conf, env_during = calls[0]
    assert plugin == "host-local"
    assert conf["ipam"]["subnet"] == "10.244.3.0/24"
    assert env_during == utils.ENV_VARIABLES
    assert variables.values == {}


def test_get_ip_from_ipam_without_address(tmp_path):
    conflist = tmp_path / "10-calico.conflist"
    write_conflist(conflist, "usePodCidr")
    variables = DictVars()
    configurer = utils.EnvConfigurer(variables, str(conflist))
    with pytest.raises(ValueError, match="IP not allocated"):
        utils.get_ip_from_ipam(configurer, lambda plugin, conf: {"ips": []})
    assert variables.values == {}


def test_get_ip_from_ipam_missing_config_clears_environment(tmp_path):
    variables = DictVars()
    configurer = utils.EnvConfigurer(variables, str(tmp_path / "missing"))
    with pytest.raises(FileNotFoundError):
        utils.get_ip_from_ipam(configurer, lambda plugin, conf: {})
    assert variables.values == {}


def test_release_ip_from_ipam(tmp_path):
    conflist = tmp_path / "10-calico.conflist"
    write_conflist(conflist, "usePodCidr")
    variables = DictVars()
    calls = []
    utils.release_ip_from_ipam(
        utils.EnvConfigurer(variables, str(conflist)), lambda plugin, conf: calls.append(plugin)
    )
    assert calls == ["host-local"]
    assert variables.values == {}


class FakeChannel:
    def __init__(self, response=b""):
        self.closed = False
        self.response = response
        self.methods = []

    def close(self):
        self.closed = True

    def unary_unary(self, method, request_serializer=None, response_deserializer=None):
        self.methods.append(method)
        return lambda request: response_deserializer(self.response)


def test_check_grpc_server_status_serving():
    channel = FakeChannel()
    targets = []

    def dial(target):
        targets.append(target)
        return channel

    assert utils.check_grpc_server_status("127.0.0.1:50002", dial, lambda ch: "SERVING") is True
    assert targets == ["127.0.0.1:50002"]
    assert channel.closed


def test_check_grpc_server_status_not_serving():
    channel = FakeChannel()
    assert utils.check_grpc_server_status("t", lambda t: channel, lambda ch: "NOT_SERVING") is False
    assert channel.closed


def test_check_grpc_server_status_error_closes_channel():
    channel = FakeChannel()

    def failing(ch):
        raise ConnectionError("unavailable")

    with pytest.raises(ConnectionError):
        utils.check_grpc_server_status("t", lambda t: channel, failing)
    assert channel.closed


@pytest.mark.parametrize(
    "response, expected",
    [(b"\x08\x01", True), (b"\x08\x02", False), (b"", False)],
)
def test_check_grpc_server_status_default_health_check(response, expected):
    channel = FakeChannel(response)
    assert utils.check_grpc_server_status("t", lambda t: channel) is expected
    assert channel.methods == ["/grpc.health.v1.Health/Check"]