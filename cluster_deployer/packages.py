"""Offline package lookup.

Every binary the deployer installs is shipped alongside it in a package
directory (``./packages`` by default) so clusters can be built without
internet access on the nodes.
"""

from pathlib import Path

from cluster_deployer.exceptions import PackageNotFoundError

CONTAINERD = "containerd"
RUNC = "runc"
CNI_PLUGINS = "cni-plugins"
KUBEADM = "kubeadm"
KUBELET = "kubelet"
KUBECTL = "kubectl"
HELM = "helm"
CILIUM_CHART = "cilium-chart"
METALLB_CHART = "metallb-chart"

CONTAINERD_VERSION = "2.2.0"
CILIUM_VERSION = "1.18.4"
METALLB_VERSION = "0.15.2"

GPU_DRIVER_VERSION = "580"
GPU_DRIVER_DEBS = [
    "nvidia-kernel-source-580-server-open_580.95.05-0ubuntu0.24.04.2_amd64.deb",
    "nvidia-dkms-580-server-open_580.95.05-0ubuntu0.24.04.2_amd64.deb",
    "nvidia-driver-580-server-open_580.95.05-0ubuntu0.24.04.2_amd64.deb",
]
# Install order matters: each package depends on the previous ones
GPU_TOOLKIT_DEBS = [
    "libnvidia-container1_1.18.0-1_amd64.deb",
    "libnvidia-container-tools_1.18.0-1_amd64.deb",
    "nvidia-container-toolkit-base_1.18.0-1_amd64.deb",
    "nvidia-container-toolkit_1.18.0-1_amd64.deb",
]

BASE_PACKAGES = [CONTAINERD, RUNC, CNI_PLUGINS, KUBEADM, KUBELET, KUBECTL]
ADDON_PACKAGES = [HELM, CILIUM_CHART]


class PackageManager:
    """Resolve logical package names to files in the package directory."""

    def __init__(self, package_dir: Path, k8s_version: str):
        self.package_dir = Path(package_dir)
        self.k8s_version = k8s_version

    def relative_path(self, name: str) -> str:
        k8s_dir = f"kubernetes/{self.k8s_version}"
        paths = {
            CONTAINERD: f"containerd/containerd-{CONTAINERD_VERSION}-linux-amd64.tar.gz",
            RUNC: "containerd/runc.amd64",
            CNI_PLUGINS: "containerd/cni-plugins-linux-amd64-v1.8.0.tgz",
            KUBEADM: f"{k8s_dir}/kubeadm",
            KUBELET: f"{k8s_dir}/kubelet",
            KUBECTL: f"{k8s_dir}/kubectl",
            HELM: "helm/linux-amd64/helm",
            CILIUM_CHART: f"cilium/cilium-{CILIUM_VERSION}.tgz",
            METALLB_CHART: f"metallb/metallb-{METALLB_VERSION}.tgz",
        }
        if name in paths:
            return paths[name]
        if name in GPU_DRIVER_DEBS:
            return f"gpu/{name}"
        if name in GPU_TOOLKIT_DEBS:
            return f"gpu/nvidia-container-toolkit/{name}"
        raise PackageNotFoundError(f"Unknown package: {name}")

    def path(self, name: str) -> Path:
        return self.package_dir / self.relative_path(name)

    def exists(self, name: str) -> bool:
        return self.path(name).is_file()

    def missing(self, names: list[str]) -> list[str]:
        return [name for name in names if not self.exists(name)]

    def read(self, name: str) -> bytes:
        """Read a package's bytes.

        Raises:
            PackageNotFoundError: If the file is not in the package directory
        """
        path = self.path(name)
        if not path.is_file():
            raise PackageNotFoundError(
                f"Package '{name}' not found at {path}",
                f"Populate {self.package_dir} with the offline bundle before deploying",
            )
        return path.read_bytes()
