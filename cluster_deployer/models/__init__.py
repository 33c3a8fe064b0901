"""Data models for cluster descriptions."""

from cluster_deployer.models.cluster import (
    API_SERVER_PORT,
    BGPConfig,
    BGPPeer,
    ClusterConfig,
    ClusterSpec,
    HAConfig,
    HarborConfig,
    LoadBalancerConfig,
    NetworkingConfig,
)
from cluster_deployer.models.node import ROLE_MASTER, ROLE_WORKER, NodeDescriptor, SSHCredential

__all__ = [
    "API_SERVER_PORT",
    "BGPConfig",
    "BGPPeer",
    "ClusterConfig",
    "ClusterSpec",
    "HAConfig",
    "HarborConfig",
    "LoadBalancerConfig",
    "NetworkingConfig",
    "NodeDescriptor",
    "ROLE_MASTER",
    "ROLE_WORKER",
    "SSHCredential",
]
