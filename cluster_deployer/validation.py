"""Cross-field validation of a cluster description.

Field formats are checked by the pydantic models; this module checks the
rules that span several fields (uniqueness, HA sizing, BGP completeness) and
reports every problem at once so the operator can fix the file in one pass.
"""

import ipaddress
import re
from pathlib import Path

from cluster_deployer.exceptions import ValidationError
from cluster_deployer.models import ClusterConfig, NodeDescriptor

HOSTNAME_PATTERN = re.compile(r"^[a-z0-9-]+$")
MIN_HA_MASTERS = 3


def validate_cluster_config(config: ClusterConfig, check_key_files: bool = True) -> None:
    """Validate a cluster description.

    Args:
        config: Parsed cluster description
        check_key_files: Whether referenced SSH key files must exist locally

    Raises:
        ValidationError: Listing every violated rule
    """
    errors: list[str] = []
    errors.extend(_check_networking(config))
    errors.extend(_check_nodes(config, check_key_files))
    errors.extend(_check_ha(config))
    if config.spec.bgp.enabled:
        errors.extend(_check_bgp(config))
    if config.uses_metallb():
        errors.extend(_check_pool(config))

    if errors:
        raise ValidationError(
            f"Cluster description '{config.name}' is invalid ({len(errors)} problem(s))",
            "\n".join(f"  - {e}" for e in errors),
        )


def _check_networking(config: ClusterConfig) -> list[str]:
    errors = []
    networks = {}
    for label, value in (
        ("podSubnet", config.spec.networking.pod_subnet),
        ("serviceSubnet", config.spec.networking.service_subnet),
    ):
        try:
            networks[label] = ipaddress.ip_network(value, strict=False)
        except ValueError:
            errors.append(f"spec.networking.{label} is not a valid CIDR: '{value}'")

    if len(networks) == 2 and networks["podSubnet"].overlaps(networks["serviceSubnet"]):
        errors.append("podSubnet and serviceSubnet must not overlap")
    return errors


def _check_nodes(config: ClusterConfig, check_key_files: bool) -> list[str]:
    nodes = config.spec.nodes
    if not nodes:
        return ["at least one node is required"]

    errors = []
    seen_ips: set[str] = set()
    seen_hostnames: set[str] = set()
    for i, node in enumerate(nodes):
        if node.ip in seen_ips:
            errors.append(f"duplicate node IP: {node.ip}")
        seen_ips.add(node.ip)

        if node.hostname in seen_hostnames:
            errors.append(f"duplicate node hostname: {node.hostname}")
        seen_hostnames.add(node.hostname)

        if not HOSTNAME_PATTERN.match(node.hostname):
            errors.append(
                f"node {i} hostname '{node.hostname}' may only contain "
                "lowercase letters, digits and hyphens"
            )
        if node.is_master and node.gpu:
            errors.append(f"node {i} ({node.ip}): master nodes cannot be GPU nodes")

        errors.extend(_check_ssh(i, node, check_key_files))

    if not config.masters():
        errors.append("at least one master node is required")
    return errors


def _check_ssh(index: int, node: NodeDescriptor, check_key_files: bool) -> list[str]:
    ssh = node.ssh
    if not ssh.user:
        return [f"node {index} ({node.ip}): ssh.user cannot be empty"]
    if not ssh.key_file and not ssh.password:
        return [f"node {index} ({node.ip}): ssh.keyFile or ssh.password is required"]
    if ssh.key_file and check_key_files:
        key_path = Path(ssh.key_file).expanduser()
        if not key_path.exists():
            return [f"node {index} ({node.ip}): SSH key file not found: {key_path}"]
    return []


def _check_ha(config: ClusterConfig) -> list[str]:
    ha = config.spec.ha
    if not ha.enabled:
        return []

    errors = []
    master_count = len(config.masters())
    if master_count < MIN_HA_MASTERS:
        errors.append(
            f"HA requires at least {MIN_HA_MASTERS} master nodes, found {master_count}"
        )
    if not ha.vip:
        errors.append("spec.ha.vip is required when HA is enabled")
    elif not _is_ip(ha.vip):
        errors.append(f"spec.ha.vip is not a valid IP address: '{ha.vip}'")
    return errors


def _check_bgp(config: ClusterConfig) -> list[str]:
    bgp = config.spec.bgp
    errors = []
    if not 1 <= bgp.local_asn <= 65535:
        errors.append("spec.bgp.localASN must be between 1 and 65535")

    if not bgp.peers:
        errors.append("spec.bgp.peers needs at least one peer when BGP is enabled")
    for i, peer in enumerate(bgp.peers):
        if not _is_ip(peer.peer_address):
            errors.append(f"BGP peer {i}: invalid peerAddress '{peer.peer_address}'")
        if not 1 <= peer.peer_asn <= 65535:
            errors.append(f"BGP peer {i}: peerASN must be between 1 and 65535")
    return errors


def _check_pool(config: ClusterConfig) -> list[str]:
    ips = config.spec.bgp.load_balancer_ips
    if not ips:
        return ["spec.bgp.loadBalancerIPs is required when BGP or l2 load balancing is enabled"]

    errors = []
    for i, entry in enumerate(ips):
        problem = check_address_entry(entry)
        if problem:
            errors.append(f"loadBalancerIPs[{i}]: {problem}")
    return errors


def check_address_entry(entry: str) -> str | None:
    """Check one load-balancer pool entry: an IP, a CIDR or an IPv4 range ``a-b``.

    Returns:
        A description of the problem, or None when the entry is valid
    """
    if "-" in entry:
        parts = [p.strip() for p in entry.split("-")]
        if len(parts) != 2:
            return f"range must look like start-end, e.g. 10.0.4.150-10.0.4.199, got '{entry}'"
        try:
            start = ipaddress.ip_address(parts[0])
            end = ipaddress.ip_address(parts[1])
        except ValueError:
            return f"range '{entry}' contains an invalid address"
        if start.version != 4 or end.version != 4:
            return "only IPv4 ranges are supported"
        if start > end:
            return f"range start {start} must not be greater than end {end}"
        return None

    if "/" in entry:
        try:
            ipaddress.ip_network(entry, strict=False)
        except ValueError:
            return f"invalid CIDR '{entry}'"
        return None

    if not _is_ip(entry):
        return f"invalid address '{entry}'"
    return None


def _is_ip(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True
