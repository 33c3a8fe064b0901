"""Data models for the declarative cluster description."""

import re
from pathlib import Path

import yaml
from pydantic import Field, field_validator, model_validator

from cluster_deployer.models.node import CamelModel, NodeDescriptor

API_VERSION = "cluster-deployer/v1"
KIND = "Cluster"
API_SERVER_PORT = 6443

DEFAULT_VERSION = "v1.34.2"
DEFAULT_IMAGE_REPOSITORY = "registry.k8s.io"
DEFAULT_POD_SUBNET = "10.244.0.0/16"
DEFAULT_SERVICE_SUBNET = "10.96.0.0/12"

NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
VERSION_PATTERN = re.compile(r"^v\d+\.\d+\.\d+$")


class Metadata(CamelModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate cluster name is usable inside hostnames and labels."""
        if not v:
            raise ValueError("metadata.name cannot be empty")
        if not NAME_PATTERN.match(v):
            raise ValueError(
                f"cluster name '{v}' may only contain lowercase letters, digits and hyphens"
            )
        return v


class HarborConfig(CamelModel):
    """Registry credentials used by containerd."""

    username: str = ""
    password: str = ""
    insecure: bool = False

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class NetworkingConfig(CamelModel):
    pod_subnet: str = DEFAULT_POD_SUBNET
    service_subnet: str = DEFAULT_SERVICE_SUBNET


class HAConfig(CamelModel):
    enabled: bool = False
    vip: str = ""


class HubbleMetrics(CamelModel):
    enabled: bool = False


class HubbleUI(CamelModel):
    enabled: bool = False
    node_port: int = 0


class HubbleConfig(CamelModel):
    enabled: bool = False
    metrics: HubbleMetrics = Field(default_factory=HubbleMetrics)
    ui: HubbleUI = Field(default_factory=HubbleUI)


class LoadBalancerConfig(CamelModel):
    """Service load-balancing settings.

    ``mode`` is the Cilium datapath mode (dsr, snat, hybrid) unless it is
    ``l2``, which requests MetalLB layer-2 advertisement instead.
    """

    provider: str = "cilium"
    mode: str = "dsr"


class BGPPeer(CamelModel):
    peer_address: str
    peer_asn: int = Field(0, alias="peerASN")


class BGPConfig(CamelModel):
    enabled: bool = False
    local_asn: int = Field(0, alias="localASN")
    peers: list[BGPPeer] = Field(default_factory=list)
    load_balancer_ips: list[str] = Field(default_factory=list, alias="loadBalancerIPs")


class Toggle(CamelModel):
    enabled: bool = False


class ClusterSpec(CamelModel):
    """Desired state of the cluster."""

    version: str = DEFAULT_VERSION
    image_repository: str = DEFAULT_IMAGE_REPOSITORY
    harbor: HarborConfig = Field(default_factory=HarborConfig)
    networking: NetworkingConfig = Field(default_factory=NetworkingConfig)
    ha: HAConfig = Field(default_factory=HAConfig)
    hubble: HubbleConfig = Field(default_factory=HubbleConfig)
    load_balancer: LoadBalancerConfig = Field(default_factory=LoadBalancerConfig)
    bgp: BGPConfig = Field(default_factory=BGPConfig)
    gateway_api: Toggle = Field(default_factory=Toggle, alias="gatewayAPI")
    envoy: Toggle = Field(default_factory=Toggle)
    nodes: list[NodeDescriptor] = Field(default_factory=list)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        """Validate version looks like vX.Y.Z."""
        if not VERSION_PATTERN.match(v):
            raise ValueError(f"version must look like vX.Y.Z (e.g. {DEFAULT_VERSION}), got '{v}'")
        return v

    @field_validator("image_repository")
    @classmethod
    def validate_image_repository(cls, v: str) -> str:
        if not v:
            raise ValueError("imageRepository cannot be empty")
        return v


class ClusterConfig(CamelModel):
    """A complete cluster description as read from YAML."""

    api_version: str = API_VERSION
    kind: str = KIND
    metadata: Metadata
    spec: ClusterSpec = Field(default_factory=ClusterSpec)

    @model_validator(mode="after")
    def assign_hostnames(self) -> "ClusterConfig":
        """Name every node that has no explicit hostname.

        Each role/GPU partition has its own counter starting at 1, so the
        third GPU worker becomes ``{cluster}-gpu-node-03`` regardless of how
        many masters precede it. Explicit hostnames do not consume a number.
        """
        counters: dict[str, int] = {}
        for node in self.spec.nodes:
            if node.hostname:
                continue
            prefix = node.hostname_prefix()
            counters[prefix] = counters.get(prefix, 0) + 1
            node.hostname = f"{self.name}-{prefix}-{counters[prefix]:02d}"
        return self

    @property
    def name(self) -> str:
        return self.metadata.name

    def masters(self) -> list[NodeDescriptor]:
        return [n for n in self.spec.nodes if n.is_master]

    def workers(self) -> list[NodeDescriptor]:
        return [n for n in self.spec.nodes if not n.is_master]

    def gpu_nodes(self) -> list[NodeDescriptor]:
        return [n for n in self.spec.nodes if n.gpu]

    def first_master(self) -> NodeDescriptor:
        masters = self.masters()
        if not masters:
            raise ValueError("cluster has no master node")
        return masters[0]

    def find_node(self, hostname: str) -> NodeDescriptor | None:
        return next((n for n in self.spec.nodes if n.hostname == hostname), None)

    def uses_metallb(self) -> bool:
        """MetalLB announces service addresses for BGP or an explicit l2 mode."""
        return self.spec.bgp.enabled or self.spec.load_balancer.mode == "l2"

    def control_plane_host(self) -> str:
        """Address clients use for the API server: the VIP under HA."""
        if self.spec.ha.enabled:
            return self.spec.ha.vip
        return self.first_master().ip

    def control_plane_endpoint(self) -> str:
        return f"{self.control_plane_host()}:{API_SERVER_PORT}"

    def sanitized(self) -> "ClusterConfig":
        """Deep copy with every secret blanked out."""
        clean = self.model_copy(deep=True)
        clean.spec.harbor.username = ""
        clean.spec.harbor.password = ""
        for node in clean.spec.nodes:
            node.ssh.password = ""
        return clean

    def to_dict(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    @classmethod
    def from_yaml(cls, text: str) -> "ClusterConfig":
        data = yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError("cluster description must be a YAML mapping")
        return cls.model_validate(data)

    def save(self, path: Path) -> None:
        path.write_text(self.to_yaml())
