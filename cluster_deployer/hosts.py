"""Keep /etc/hosts on every node (and the operator's machine) in sync with the cluster."""

import socket
from pathlib import Path

from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import NodeOperationError, RemoteCommandError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig

logger = get_logger(__name__)

HOSTS_PATH = "/etc/hosts"


def start_marker(cluster_name: str) -> str:
    return f"# === {cluster_name} Cluster Hosts (Managed by cluster-deployer) ==="


def end_marker(cluster_name: str) -> str:
    return f"# === End of {cluster_name} Cluster Hosts ==="


def hosts_entries(config: ClusterConfig) -> list[str]:
    return [f"{node.ip}\t{node.hostname}" for node in config.spec.nodes]


def render_hosts_block(existing: str, entries: list[str], cluster_name: str) -> str:
    """Replace this cluster's managed block in a hosts file, or append one.

    Lines outside the block, including other clusters' blocks, are kept.
    """
    start, end = start_marker(cluster_name), end_marker(cluster_name)
    kept = []
    inside = False
    for line in existing.splitlines():
        stripped = line.strip()
        if stripped == start:
            inside = True
            continue
        if stripped == end:
            inside = False
            continue
        if not inside:
            kept.append(line)

    while kept and not kept[-1].strip():
        kept.pop()
    block = [start, *entries, end]
    lines = kept + [""] + block if kept else block
    return "\n".join(lines) + "\n"


def update_remote_hosts(channel: CommandChannel, config: ClusterConfig) -> None:
    current = channel.execute(f"cat {HOSTS_PATH}")
    updated = render_hosts_block(current, hosts_entries(config), config.name)
    if updated == current:
        return
    channel.execute(f"cp {HOSTS_PATH} {HOSTS_PATH}.backup.cluster-deployer")
    channel.upload(updated.encode(), HOSTS_PATH, 0o644)


def set_hostname(channel: CommandChannel, hostname: str) -> None:
    current = channel.execute("hostname").strip()
    if current != hostname:
        channel.execute(f"hostnamectl set-hostname {hostname}")


def update_local_hosts(config: ClusterConfig, hosts_path: Path = Path(HOSTS_PATH)) -> bool:
    """Update the operator machine's hosts file.

    Returns:
        False when skipped because this machine is itself a cluster node
    """
    local_hostname = socket.gethostname()
    if any(node.hostname == local_hostname for node in config.spec.nodes):
        logger.info("Local machine is a cluster node; its hosts file is managed remotely")
        return False

    current = hosts_path.read_text()
    updated = render_hosts_block(current, hosts_entries(config), config.name)
    if updated != current:
        backup = hosts_path.with_name(f"{hosts_path.name}.backup.cluster-deployer.{config.name}")
        backup.write_text(current)
        hosts_path.write_text(updated)
    return True


def setup_hosts_files(ctx: CommandContext, config: ClusterConfig, update_local: bool = True) -> None:
    """Set every node's hostname and write the cluster block into its hosts file.

    Raises:
        NodeOperationError: If any node cannot be updated
    """
    if update_local:
        try:
            update_local_hosts(config)
        except OSError as e:
            logger.warning(f"Could not update local hosts file: {e}")
            ctx.echo(f"Warning: local /etc/hosts not updated ({e})")

    for node in config.spec.nodes:
        try:
            with ctx.open_channel(node) as channel:
                set_hostname(channel, node.hostname)
                update_remote_hosts(channel, config)
        except RemoteCommandError as e:
            raise NodeOperationError(node.name, "hosts file setup", e) from e
    ctx.echo(f"Hosts file updated on {len(config.spec.nodes)} node(s)")
