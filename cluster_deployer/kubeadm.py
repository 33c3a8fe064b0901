"""kubeadm bootstrap configuration and join credentials."""

import re
from dataclasses import dataclass

import yaml

from cluster_deployer.channel import CommandChannel
from cluster_deployer.exceptions import CredentialExtractionError
from cluster_deployer.models import API_SERVER_PORT, ClusterConfig
from cluster_deployer.node_setup import registry_path

CRI_SOCKET = "unix:///var/run/containerd/containerd.sock"
INIT_CONFIG_PATH = "/tmp/kubeadm-init.yaml"
ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"

KUBEADM_API = "kubeadm.k8s.io/v1beta4"

TOKEN_PATTERN = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")
HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")

CA_HASH_COMMAND = (
    "openssl x509 -pubkey -in /etc/kubernetes/pki/ca.crt | "
    "openssl rsa -pubin -outform der 2>/dev/null | "
    "openssl dgst -sha256 -hex | sed 's/^.* //'"
)

# Wipes every trace of a previous control plane on the node
RESET_SCRIPT = f"""\
systemctl stop kubelet 2>/dev/null || true
kubeadm reset -f --cri-socket {CRI_SOCKET} 2>/dev/null || true
pkill -9 kube-apiserver 2>/dev/null || true
pkill -9 kube-controller 2>/dev/null || true
pkill -9 kube-scheduler 2>/dev/null || true
pkill -9 etcd 2>/dev/null || true
rm -rf /etc/kubernetes/* /var/lib/etcd/* /var/lib/kubelet/* /etc/cni/net.d/*
ip link delete cni0 2>/dev/null || true
ip link delete flannel.1 2>/dev/null || true
ip link delete cilium_host 2>/dev/null || true
ip link delete cilium_vxlan 2>/dev/null || true
systemctl restart containerd
sleep 3
"""

# Clears a worker's stale cluster membership before rejoining
NODE_RESET_SCRIPT = f"""\
kubeadm reset -f --cri-socket {CRI_SOCKET}
rm -rf /etc/cni/net.d/*
systemctl restart containerd
"""


def render_init_config(config: ClusterConfig, local_ip: str) -> str:
    """Render the multi-document kubeadm configuration for the first master."""
    spec = config.spec
    cert_sans = [node.ip for node in config.masters()]
    if spec.ha.enabled and spec.ha.vip not in cert_sans:
        cert_sans.append(spec.ha.vip)

    init_configuration = {
        "apiVersion": KUBEADM_API,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {
            "advertiseAddress": local_ip,
            "bindPort": API_SERVER_PORT,
        },
        "nodeRegistration": {
            "criSocket": CRI_SOCKET,
            "imagePullPolicy": "IfNotPresent",
        },
    }
    cluster_configuration = {
        "apiVersion": KUBEADM_API,
        "kind": "ClusterConfiguration",
        "kubernetesVersion": spec.version,
        "clusterName": config.name,
        "imageRepository": registry_path(spec.image_repository),
        "controlPlaneEndpoint": config.control_plane_endpoint(),
        "networking": {
            "podSubnet": spec.networking.pod_subnet,
            "serviceSubnet": spec.networking.service_subnet,
        },
        "apiServer": {"certSANs": cert_sans},
    }
    kubelet_configuration = {
        "apiVersion": "kubelet.config.k8s.io/v1beta1",
        "kind": "KubeletConfiguration",
        "cgroupDriver": "systemd",
    }
    return yaml.safe_dump_all(
        [init_configuration, cluster_configuration, kubelet_configuration],
        sort_keys=False,
        default_flow_style=False,
    )


def init_command(config_path: str = INIT_CONFIG_PATH) -> str:
    # Cilium replaces kube-proxy, so kubeadm must not install it
    return f"kubeadm init --config {config_path} --skip-phases=addon/kube-proxy"


@dataclass(frozen=True)
class JoinCredential:
    """Short-lived secrets a node needs to join the control plane.

    Issued once per bootstrap run and never persisted.
    """

    endpoint: str
    token: str
    ca_cert_hash: str
    certificate_key: str | None = None

    def worker_command(self) -> str:
        return (
            f"kubeadm join {self.endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash} --cri-socket {CRI_SOCKET}"
        )

    def master_command(self, advertise_address: str | None = None) -> str:
        if not self.certificate_key:
            raise CredentialExtractionError(
                "Cannot join a master without a certificate key",
                "Issue the join credential with include_certificate_key=True",
            )
        command = (
            f"kubeadm join {self.endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash} "
            f"--control-plane --certificate-key {self.certificate_key}"
        )
        if advertise_address:
            command += f" --apiserver-advertise-address {advertise_address}"
        return f"{command} --cri-socket {CRI_SOCKET}"

    def __repr__(self) -> str:
        return f"JoinCredential(endpoint={self.endpoint!r}, token='***', ...)"


class CertificateKeyExtractor:
    """Pull the certificate key out of ``kubeadm init phase upload-certs`` output.

    kubeadm prints the key as free-form text; implementations isolate that
    format so a structured output can replace the parsing later.
    """

    def extract(self, output: str) -> str:
        raise NotImplementedError


class RegexCertificateKeyExtractor(CertificateKeyExtractor):
    PATTERN = re.compile(r"certificate key:\s+([a-f0-9]+)", re.IGNORECASE)

    def extract(self, output: str) -> str:
        match = self.PATTERN.search(output)
        if not match:
            raise CredentialExtractionError(
                "Could not find the certificate key in upload-certs output",
                output.strip()[-500:] or "(empty output)",
            )
        return match.group(1)


def create_token(channel: CommandChannel, ttl: str = "24h") -> str:
    token = channel.execute(f"kubeadm token create --ttl {ttl}").strip()
    if not TOKEN_PATTERN.match(token):
        raise CredentialExtractionError(f"kubeadm returned a malformed bootstrap token: {token!r}")
    return token


def ca_cert_hash(channel: CommandChannel) -> str:
    digest = channel.execute(CA_HASH_COMMAND).strip()
    if not HASH_PATTERN.match(digest):
        raise CredentialExtractionError(f"Could not compute the CA certificate hash: {digest!r}")
    return f"sha256:{digest}"


def issue_join_credential(
    channel: CommandChannel,
    endpoint: str,
    include_certificate_key: bool,
    ttl: str = "24h",
    extractor: CertificateKeyExtractor | None = None,
) -> JoinCredential:
    """Create a token, fingerprint the CA and optionally export control-plane certs.

    Args:
        channel: Channel to a ready control-plane node
        endpoint: Control-plane endpoint joining nodes connect to
        include_certificate_key: Upload certs for additional masters
        ttl: Bootstrap token lifetime
        extractor: Parser for the upload-certs output

    Raises:
        CredentialExtractionError: If any piece cannot be obtained
    """
    token = create_token(channel, ttl)
    digest = ca_cert_hash(channel)
    certificate_key = None
    if include_certificate_key:
        extractor = extractor or RegexCertificateKeyExtractor()
        output = channel.execute("kubeadm init phase upload-certs --upload-certs")
        certificate_key = extractor.extract(output)
    return JoinCredential(endpoint, token, digest, certificate_key)
