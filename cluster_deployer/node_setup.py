"""Provisioning steps that bring a bare node to the common baseline.

Each step is idempotent: it checks what is already installed and skips or
overwrites, so a node can be re-provisioned after a partial run.
"""

import shlex
from collections.abc import Callable
from dataclasses import dataclass

from cluster_deployer import packages as pkg
from cluster_deployer.channel import CommandChannel
from cluster_deployer.exceptions import RemoteCommandError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor
from cluster_deployer.packages import PackageManager

logger = get_logger(__name__)

CONTAINERD_SOCKET = "unix:///run/containerd/containerd.sock"
PUBLIC_REGISTRIES = {"registry.k8s.io", "docker.io", "quay.io", "ghcr.io"}
PAUSE_TAG = "3.10.1"

KERNEL_MODULES = ["overlay", "br_netfilter", "nf_conntrack"]

SYSCTL_CONF = """\
net.bridge.bridge-nf-call-iptables = 1
net.bridge.bridge-nf-call-ip6tables = 1
net.ipv4.ip_forward = 1
net.ipv4.conf.all.rp_filter = 0
net.core.somaxconn = 32768
net.ipv4.tcp_max_syn_backlog = 8096
net.netfilter.nf_conntrack_max = 1048576
vm.swappiness = 0
vm.overcommit_memory = 1
fs.file-max = 2097152
fs.inotify.max_user_watches = 524288
fs.inotify.max_user_instances = 8192
"""

LIMITS_CONF = """\
* soft nofile 1048576
* hard nofile 1048576
* soft nproc unlimited
* hard nproc unlimited
* soft memlock unlimited
* hard memlock unlimited
root soft nofile 1048576
root hard nofile 1048576
"""

CONTAINERD_UNIT = """\
[Unit]
Description=containerd container runtime
Documentation=https://containerd.io
After=network.target local-fs.target

[Service]
ExecStartPre=-/sbin/modprobe overlay
ExecStart=/usr/local/bin/containerd
Type=notify
Delegate=yes
KillMode=process
Restart=always
RestartSec=5
LimitNPROC=infinity
LimitCORE=infinity
LimitNOFILE=infinity
TasksMax=infinity
OOMScoreAdjust=-999

[Install]
WantedBy=multi-user.target
"""

KUBELET_UNIT = """\
[Unit]
Description=kubelet: The Kubernetes Node Agent
Documentation=https://kubernetes.io/docs/
Wants=network-online.target
After=network-online.target

[Service]
ExecStart=/usr/local/bin/kubelet
Restart=always
StartLimitInterval=0
RestartSec=10

[Install]
WantedBy=multi-user.target
"""

KUBEADM_DROPIN = f"""\
[Service]
Environment="KUBELET_KUBECONFIG_ARGS=--bootstrap-kubeconfig=/etc/kubernetes/bootstrap-kubelet.conf --kubeconfig=/etc/kubernetes/kubelet.conf"
Environment="KUBELET_CONFIG_ARGS=--config=/var/lib/kubelet/config.yaml"
Environment="KUBELET_EXTRA_ARGS=--container-runtime-endpoint={CONTAINERD_SOCKET}"
EnvironmentFile=-/var/lib/kubelet/kubeadm-flags.env
EnvironmentFile=-/etc/default/kubelet
ExecStart=
ExecStart=/usr/local/bin/kubelet $KUBELET_KUBECONFIG_ARGS $KUBELET_CONFIG_ARGS $KUBELET_KUBEADM_ARGS $KUBELET_EXTRA_ARGS
"""


@dataclass(frozen=True)
class ProvisionStep:
    """One stage of the per-node provisioning pipeline."""

    name: str
    run: Callable[[CommandChannel, NodeDescriptor, ClusterConfig, PackageManager], None]
    applies: Callable[[NodeDescriptor], bool] = lambda node: True


def registry_host(image_repository: str) -> str:
    """Host part of an image repository (``http://harbor:8080/k8s`` -> ``harbor:8080``)."""
    host = image_repository
    for scheme in ("http://", "https://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
    return host.split("/", 1)[0]


def registry_path(image_repository: str) -> str:
    """Image repository without its scheme, as used in image references."""
    for scheme in ("http://", "https://"):
        if image_repository.startswith(scheme):
            return image_repository[len(scheme):]
    return image_repository


def render_containerd_config(config: ClusterConfig, gpu: bool = False) -> str:
    """containerd 2.x configuration pointing image pulls at the cluster registry."""
    spec = config.spec
    runtime = "nvidia" if gpu else "runc"
    lines = [
        "version = 3",
        'root = "/var/lib/containerd"',
        'state = "/run/containerd"',
        "",
        "[grpc]",
        '  address = "/run/containerd/containerd.sock"',
        "",
        '[plugins."io.containerd.cri.v1.images"]',
        '  snapshotter = "overlayfs"',
        '  [plugins."io.containerd.cri.v1.images".pinned_images]',
        f'    sandbox = "{registry_path(spec.image_repository)}/pause:{PAUSE_TAG}"',
        '  [plugins."io.containerd.cri.v1.images".registry]',
        '    config_path = "/etc/containerd/certs.d"',
    ]
    host = registry_host(spec.image_repository)
    if spec.harbor.has_credentials and host not in PUBLIC_REGISTRIES:
        lines += [
            f'  [plugins."io.containerd.cri.v1.images".registry.configs."{host}".auth]',
            f"    username = {_toml_string(spec.harbor.username)}",
            f"    password = {_toml_string(spec.harbor.password)}",
        ]
    lines += [
        "",
        '[plugins."io.containerd.cri.v1.runtime".containerd]',
        f'  default_runtime_name = "{runtime}"',
        '  [plugins."io.containerd.cri.v1.runtime".containerd.runtimes.runc]',
        '    runtime_type = "io.containerd.runc.v2"',
        '    [plugins."io.containerd.cri.v1.runtime".containerd.runtimes.runc.options]',
        "      SystemdCgroup = true",
    ]
    if gpu:
        lines += [
            '  [plugins."io.containerd.cri.v1.runtime".containerd.runtimes.nvidia]',
            '    runtime_type = "io.containerd.runc.v2"',
            '    [plugins."io.containerd.cri.v1.runtime".containerd.runtimes.nvidia.options]',
            '      BinaryName = "/usr/bin/nvidia-container-runtime"',
            "      SystemdCgroup = true",
        ]
    return "\n".join(lines) + "\n"


def render_registry_hosts(config: ClusterConfig) -> str | None:
    """certs.d hosts.toml for a private registry, or None for public registries."""
    repo = config.spec.image_repository
    host = registry_host(repo)
    if host in PUBLIC_REGISTRIES:
        return None
    scheme = "https" if repo.startswith("https://") else "http"
    skip_verify = "true" if scheme == "http" or config.spec.harbor.insecure else "false"
    return (
        f'server = "{scheme}://{host}"\n'
        "\n"
        f'[host."{scheme}://{host}"]\n'
        '  capabilities = ["pull", "resolve", "push"]\n'
        f"  skip_verify = {skip_verify}\n"
    )


def _toml_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_if_changed(channel: CommandChannel, path: str, content: str, mode: int = 0o644) -> bool:
    """Upload ``content`` unless the file already holds exactly that text."""
    try:
        current = channel.execute(f"cat {shlex.quote(path)}")
    except RemoteCommandError:
        current = None
    if current == content:
        return False
    channel.upload(content.encode(), path, mode)
    return True


def _succeeds(channel: CommandChannel, command: str) -> bool:
    try:
        channel.execute(command)
    except RemoteCommandError:
        return False
    return True


def tune_system(
    channel: CommandChannel, node: NodeDescriptor, config: ClusterConfig, packages: PackageManager
) -> None:
    """Kernel, swap, firewall and time settings kubeadm expects."""
    os_release = channel.execute("cat /etc/os-release")
    pretty = next(
        (line.split("=", 1)[1].strip('"') for line in os_release.splitlines()
         if line.startswith("PRETTY_NAME=")),
        "unknown",
    )
    logger.info(f"[{node.name}] operating system: {pretty}")

    channel.execute("swapoff -a")
    channel.execute(r"sed -i '/^[^#].*\sswap\s/s/^/#/' /etc/fstab")

    if _succeeds(channel, "which cpupower"):
        channel.execute("cpupower frequency-set --governor performance || true")
    else:
        channel.execute(
            "for gov in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; do "
            '[ -f "$gov" ] && echo performance > "$gov" 2>/dev/null || true; done'
        )

    channel.execute("systemctl disable --now firewalld 2>/dev/null || true")
    channel.execute("ufw disable 2>/dev/null || true")

    channel.execute("setenforce 0 2>/dev/null || true")
    channel.execute(
        "if [ -f /etc/selinux/config ]; then "
        "sed -i -E 's/^SELINUX=(enforcing|permissive)/SELINUX=disabled/' /etc/selinux/config; fi"
    )

    # bridge sysctls only exist once br_netfilter is loaded
    for module in KERNEL_MODULES:
        channel.execute(f"modprobe {module} 2>/dev/null || true")
    write_if_changed(channel, "/etc/modules-load.d/kubernetes.conf", "\n".join(KERNEL_MODULES) + "\n")
    write_if_changed(channel, "/etc/sysctl.d/99-kubernetes.conf", SYSCTL_CONF)
    channel.execute("sysctl --system")
    write_if_changed(channel, "/etc/security/limits.d/99-kubernetes.conf", LIMITS_CONF)

    if _succeeds(channel, "which chronyd"):
        channel.execute("systemctl enable --now chronyd 2>/dev/null || systemctl enable --now chrony || true")
    elif _succeeds(channel, "which ntpd"):
        channel.execute("systemctl enable --now ntpd || true")
    else:
        channel.execute(
            "apt-get install -y chrony 2>/dev/null || yum install -y chrony 2>/dev/null || true"
        )


def install_container_runtime(
    channel: CommandChannel, node: NodeDescriptor, config: ClusterConfig, packages: PackageManager
) -> None:
    """containerd, runc and CNI plugins from the offline bundle."""
    installed = ""
    try:
        installed = channel.execute("/usr/local/bin/containerd --version")
    except RemoteCommandError:
        pass

    if f"v{pkg.CONTAINERD_VERSION}" in installed:
        logger.info(f"[{node.name}] containerd {pkg.CONTAINERD_VERSION} already installed")
    else:
        channel.execute("systemctl stop containerd 2>/dev/null || true")
        channel.upload(packages.read(pkg.CONTAINERD), "/tmp/containerd.tar.gz")
        channel.execute("tar -xzf /tmp/containerd.tar.gz -C /usr/local && rm -f /tmp/containerd.tar.gz")
        channel.upload(packages.read(pkg.RUNC), "/usr/local/sbin/runc", 0o755)
        channel.upload(packages.read(pkg.CNI_PLUGINS), "/tmp/cni-plugins.tgz")
        channel.execute(
            "mkdir -p /opt/cni/bin && tar -xzf /tmp/cni-plugins.tgz -C /opt/cni/bin "
            "&& rm -f /tmp/cni-plugins.tgz"
        )

    changed = write_if_changed(channel, "/etc/systemd/system/containerd.service", CONTAINERD_UNIT)
    changed |= write_if_changed(
        channel, "/etc/containerd/config.toml", render_containerd_config(config, gpu=node.gpu), 0o600
    )
    hosts_toml = render_registry_hosts(config)
    if hosts_toml:
        host = registry_host(config.spec.image_repository)
        changed |= write_if_changed(channel, f"/etc/containerd/certs.d/{host}/hosts.toml", hosts_toml)

    channel.execute(
        "mkdir -p /var/run/containerd && "
        "ln -sf /run/containerd/containerd.sock /var/run/containerd/containerd.sock"
    )
    channel.execute("systemctl daemon-reload && systemctl enable containerd")
    if changed or f"v{pkg.CONTAINERD_VERSION}" not in installed:
        channel.execute("systemctl restart containerd")
    else:
        channel.execute("systemctl start containerd")


def install_kubernetes_binaries(
    channel: CommandChannel, node: NodeDescriptor, config: ClusterConfig, packages: PackageManager
) -> None:
    """kubeadm, kubelet and kubectl plus the kubelet systemd units."""
    version = config.spec.version
    try:
        installed = channel.execute("kubeadm version -o short").strip()
    except RemoteCommandError:
        installed = ""

    if installed == version and _succeeds(channel, "test -x /usr/local/bin/kubelet"):
        logger.info(f"[{node.name}] Kubernetes {version} binaries already installed")
    else:
        if installed:
            logger.info(f"[{node.name}] replacing Kubernetes {installed} with {version}")
        for name in (pkg.KUBEADM, pkg.KUBELET, pkg.KUBECTL):
            channel.upload(packages.read(name), f"/usr/local/bin/{name}", 0o755)

    write_if_changed(channel, "/etc/systemd/system/kubelet.service", KUBELET_UNIT)
    write_if_changed(channel, "/etc/systemd/system/kubelet.service.d/10-kubeadm.conf", KUBEADM_DROPIN)
    channel.execute("systemctl daemon-reload && systemctl enable kubelet")


def install_gpu_stack(
    channel: CommandChannel, node: NodeDescriptor, config: ClusterConfig, packages: PackageManager
) -> None:
    """NVIDIA driver and container toolkit, wired into containerd."""
    if _succeeds(channel, "nvidia-smi"):
        logger.info(f"[{node.name}] NVIDIA driver already working")
    else:
        for deb in pkg.GPU_DRIVER_DEBS:
            channel.upload(packages.read(deb), f"/tmp/{deb}")
        for deb in pkg.GPU_DRIVER_DEBS:
            channel.execute(f"dpkg -i /tmp/{deb} || true")
        channel.execute("apt-get install -f -y 2>/dev/null || true")
        channel.execute("rm -f /tmp/nvidia-*.deb")
        if not _succeeds(channel, "nvidia-smi"):
            logger.warning(f"[{node.name}] nvidia-smi not usable yet; the node may need a reboot")
        held = " ".join(deb.split("_", 1)[0] for deb in pkg.GPU_DRIVER_DEBS)
        channel.execute(f"apt-mark hold {held}")

    if _succeeds(channel, "which nvidia-container-runtime"):
        logger.info(f"[{node.name}] nvidia-container-toolkit already installed")
    else:
        for deb in pkg.GPU_TOOLKIT_DEBS:
            channel.upload(packages.read(deb), f"/tmp/{deb}")
        for deb in pkg.GPU_TOOLKIT_DEBS:
            channel.execute(f"dpkg -i /tmp/{deb} || true")
        channel.execute("rm -f /tmp/libnvidia-container*.deb /tmp/nvidia-container-toolkit*.deb")
        channel.execute("which nvidia-container-runtime && which nvidia-ctk")

    channel.execute("nvidia-ctk runtime configure --runtime=containerd --set-as-default")
    channel.execute("systemctl restart containerd")


DEFAULT_PIPELINE = [
    ProvisionStep("system tuning", tune_system),
    ProvisionStep("container runtime", install_container_runtime),
    ProvisionStep("kubernetes binaries", install_kubernetes_binaries),
    ProvisionStep("gpu stack", install_gpu_stack, applies=lambda node: node.gpu),
]
