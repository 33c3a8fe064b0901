"""Pytest configuration and shared fixtures."""

import json

import pytest
from hypothesis import Verbosity, settings

from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import RemoteCommandError
from cluster_deployer.models import ClusterConfig
from cluster_deployer.packages import (
    ADDON_PACKAGES,
    BASE_PACKAGES,
    GPU_DRIVER_DEBS,
    GPU_TOOLKIT_DEBS,
    METALLB_CHART,
    PackageManager,
)
from cluster_deployer.settings import DeployerSettings

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

K8S_VERSION = "v1.34.2"
TOKEN = "abcdef.0123456789abcdef"
CA_DIGEST = "a" * 64
CERT_KEY = "b" * 64
ADMIN_KUBECONFIG = "apiVersion: v1\nclusters:\n- name: test\n  cluster: {}\n"
SSH = {"user": "root", "password": "secret"}


class FakeChannel(CommandChannel):
    """Records commands and uploads; answers from scripted responses.

    ``responses`` maps a command substring to a string, a list of strings
    (consumed in order, the last one repeating) or a callable taking the
    command. ``fail_on`` substrings make the command exit nonzero.
    """

    def __init__(self, host="10.0.0.1", responses=None, fail_on=None, existing_paths=None):
        self.host = host
        self.responses = dict(responses or {})
        self.fail_on = set(fail_on or ())
        self.existing_paths = set(existing_paths or ())
        self.commands = []
        self.uploads = {}
        self.modes = {}
        self.closed = False

    def execute(self, command):
        self.commands.append(command)
        for pattern in self.fail_on:
            if pattern in command:
                raise RemoteCommandError(self.host, command, 1, f"simulated failure: {pattern}")
        if command.startswith("test -e "):
            path = command[len("test -e "):].strip("'")
            if path not in self.existing_paths:
                raise RemoteCommandError(self.host, command, 1)
            return ""
        for pattern, response in self.responses.items():
            if pattern in command:
                if callable(response):
                    return response(command)
                if isinstance(response, list):
                    return response.pop(0) if len(response) > 1 else response[0]
                return response
        return ""

    def upload(self, data, remote_path, mode=0o644):
        self.uploads[remote_path] = data
        self.modes[remote_path] = mode

    def close(self):
        self.closed = True

    def ran(self, pattern):
        return [c for c in self.commands if pattern in c]


class FakeFleet:
    """One persistent FakeChannel per node IP, plus a local one."""

    def __init__(self):
        self.channels = {}
        self.local = FakeChannel("localhost")
        self.opened = []

    def channel(self, ip, **kwargs):
        if ip not in self.channels:
            self.channels[ip] = FakeChannel(ip, **kwargs)
        return self.channels[ip]

    def factory(self, node):
        self.opened.append(node.ip)
        return self.channel(node.ip)


def control_plane_responses():
    """Responses a healthy first master gives during bootstrap."""
    return {
        "kubeadm token create": TOKEN + "\n",
        "openssl x509": CA_DIGEST + "\n",
        "upload-certs": f"[upload-certs] Using certificate key:\n{CERT_KEY}\n",
        "cat /etc/kubernetes/admin.conf": ADMIN_KUBECONFIG,
        "ds cilium -n kube-system": "3/3",
        "kubectl get nodes": "NAME STATUS\ntest-master-01 Ready\n",
        "kubectl get pods -n kube-system": "cilium-abcde 1/1 Running\n",
    }


def node_list_json(hostnames, managed=True, version="v0.1.0"):
    """``kubectl get nodes -o json`` output for the given node names."""
    labels = {"cluster-deployer.io/managed": "true", "cluster-deployer.io/version": version}
    items = [
        {"metadata": {"name": name, "labels": dict(labels) if managed else {}}}
        for name in hostnames
    ]
    return json.dumps({"items": items})


def stored_state_responses(config, managed=True, annotations=None):
    """Responses of a cluster whose deployment record holds ``config``."""
    configmap = {
        "metadata": {
            "name": "cluster-deployer-config",
            "labels": {"cluster": config.name},
            "annotations": annotations or {"cluster-deployer.io/deployed-at": "2026-01-05T10:00:00Z"},
        },
        "data": {"cluster.yaml": config.sanitized().to_yaml()},
    }
    hostnames = [node.hostname for node in config.spec.nodes]
    return {
        "kubectl cluster-info": "Kubernetes control plane is running\n",
        "configmap cluster-deployer-config -n kube-system -o json": json.dumps(configmap),
        "kubectl get nodes -o json": node_list_json(hostnames, managed=managed),
        "kubectl get nodes -l cluster-deployer.io/managed=true -o json": node_list_json(hostnames),
    }


def make_config(
    name="test",
    masters=1,
    workers=2,
    gpu_workers=0,
    ha=False,
    bgp=None,
    **spec_overrides,
):
    nodes = []
    for i in range(masters):
        nodes.append({"role": "master", "ip": f"10.0.0.{i + 1}", "ssh": SSH})
    for i in range(workers):
        nodes.append({"role": "worker", "ip": f"10.0.1.{i + 1}", "ssh": SSH})
    for i in range(gpu_workers):
        nodes.append({"role": "worker", "ip": f"10.0.2.{i + 1}", "gpu": True, "ssh": SSH})
    spec = {"version": K8S_VERSION, "nodes": nodes}
    if ha:
        spec["ha"] = {"enabled": True, "vip": "10.0.0.100"}
    if bgp:
        spec["bgp"] = bgp
    spec.update(spec_overrides)
    return ClusterConfig.model_validate({"metadata": {"name": name}, "spec": spec})


BGP_SPEC = {
    "enabled": True,
    "localASN": 64512,
    "peers": [{"peerAddress": "10.0.0.254", "peerASN": 64513}],
    "loadBalancerIPs": ["10.0.5.0/28"],
}


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def fleet():
    return FakeFleet()


@pytest.fixture
def package_dir(tmp_path):
    """Offline bundle with every package present as a tiny file."""
    root = tmp_path / "packages"
    manager = PackageManager(root, K8S_VERSION)
    for name in BASE_PACKAGES + ADDON_PACKAGES + [METALLB_CHART] + GPU_DRIVER_DEBS + GPU_TOOLKIT_DEBS:
        path = manager.path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"{name}-bytes".encode())
    return root


@pytest.fixture
def deployer_settings(package_dir, tmp_path):
    return DeployerSettings(
        package_dir=package_dir,
        managed_key_file=tmp_path / "ssh" / "id_rsa",
        poll_interval=0,
        retry_backoff=0,
        cilium_ready_attempts=3,
        gateway_attempts=2,
    )


@pytest.fixture
def echoed():
    return []


@pytest.fixture
def ctx(deployer_settings, fleet, echoed):
    return CommandContext(
        settings=deployer_settings,
        auto_confirm=True,
        echo=echoed.append,
        channel_factory=fleet.factory,
        local_channel_factory=lambda: fleet.local,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def sample_cluster_yaml():
    """A commented cluster description as an operator would write it."""
    return """\
# Lab cluster
apiVersion: cluster-deployer/v1
kind: Cluster
metadata:
  name: lab
spec:
  version: v1.34.2
  networking:
    podSubnet: 10.244.0.0/16   # must not overlap the LAN
    serviceSubnet: 10.96.0.0/12
  nodes:
    - role: master
      ip: 192.168.1.10
      ssh:
        user: ubuntu
        password: secret
    - role: worker
      ip: 192.168.1.20
      ssh:
        user: root
        password: secret
    - role: worker
      ip: 192.168.1.21
      gpu: true
      hostname: lab-gpu-box
      ssh:
        password: secret
"""
