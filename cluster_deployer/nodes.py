"""Day-2 node operations on an existing cluster.

Every kubectl call goes through the first master over SSH.
"""

from cluster_deployer.addons import label_gpu_node
from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import (
    ClusterDeployerError,
    ConfigurationError,
    NodeOperationError,
)
from cluster_deployer.hosts import set_hostname, update_remote_hosts
from cluster_deployer.kubeadm import CRI_SOCKET, KUBELET_CONF, NODE_RESET_SCRIPT, issue_join_credential
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor
from cluster_deployer.provisioner import NodeProvisioner
from cluster_deployer.sequencer import COPY_ADMIN_CONF
from cluster_deployer.state_store import ClusterStateStore
from cluster_deployer.validation import validate_cluster_config

logger = get_logger(__name__)

DRAIN_TIMEOUT = "300s"


def next_hostname(config: ClusterConfig, node: NodeDescriptor) -> str:
    """Lowest free ``{cluster}-{prefix}-NN`` name for a node joining later."""
    taken = {n.hostname for n in config.spec.nodes}
    prefix = node.hostname_prefix()
    number = 1
    while f"{config.name}-{prefix}-{number:02d}" in taken:
        number += 1
    return f"{config.name}-{prefix}-{number:02d}"


def with_node(config: ClusterConfig, node: NodeDescriptor) -> ClusterConfig:
    updated = config.model_copy(deep=True)
    node = node.model_copy(deep=True)
    if not node.hostname:
        node.hostname = next_hostname(config, node)
    updated.spec.nodes.append(node)
    return updated


def without_node(config: ClusterConfig, hostname: str) -> ClusterConfig:
    updated = config.model_copy(deep=True)
    updated.spec.nodes = [n for n in updated.spec.nodes if n.hostname != hostname]
    return updated


def _control_node(config: ClusterConfig, exclude: str | None = None) -> NodeDescriptor:
    for node in config.masters():
        if node.hostname != exclude:
            return node
    raise ConfigurationError("No master node is left to run cluster commands on")


def _record(channel: CommandChannel, config: ClusterConfig) -> None:
    try:
        ClusterStateStore(channel).update(config)
    except ClusterDeployerError as e:
        logger.warning(f"Stored cluster configuration not updated: {e.message}")


def add_node(ctx: CommandContext, config: ClusterConfig, node: NodeDescriptor) -> ClusterConfig:
    """Provision a machine and join it to the running cluster.

    Returns:
        The cluster description including the new node

    Raises:
        ValidationError: If the node clashes with the existing description
        AggregateNodeError: If the node cannot be reached or provisioned
        NodeOperationError: If the join fails
    """
    updated = with_node(config, node)
    validate_cluster_config(updated)
    node = updated.spec.nodes[-1]

    provisioner = NodeProvisioner(ctx, updated)
    provisioner.check_connectivity([node])
    ctx.echo(f"Provisioning {node.hostname} ({node.ip})")
    provisioner.provision([node])

    master = _control_node(updated, exclude=node.hostname)
    with ctx.open_channel(master) as control:
        try:
            credential = issue_join_credential(
                control,
                updated.control_plane_endpoint(),
                include_certificate_key=node.is_master,
                ttl=ctx.settings.token_ttl,
            )
        except ClusterDeployerError as e:
            raise NodeOperationError(master.name, "join credential", e) from e

        ctx.echo(f"Joining {node.hostname} as {node.role}")
        try:
            with ctx.open_channel(node) as channel:
                set_hostname(channel, node.hostname)
                update_remote_hosts(channel, updated)
                if channel.path_exists(KUBELET_CONF):
                    logger.info(f"[{node.name}] stale cluster membership found; resetting")
                    channel.execute(NODE_RESET_SCRIPT)
                if node.is_master:
                    channel.execute(credential.master_command(advertise_address=node.ip))
                    channel.execute(COPY_ADMIN_CONF)
                else:
                    channel.execute(credential.worker_command())
        except ClusterDeployerError as e:
            raise NodeOperationError(node.hostname, "node join", e) from e

        try:
            control.execute(f"kubectl get node {node.hostname}")
        except ClusterDeployerError as e:
            raise NodeOperationError(node.hostname, "join verification", e) from e

        store = ClusterStateStore(control)
        try:
            if node.gpu:
                label_gpu_node(control, node.hostname)
            store.label_node(node.hostname)
        except ClusterDeployerError as e:
            logger.warning(f"Could not label {node.hostname}: {e.message}")
        _record(control, updated)

    ctx.echo(f"Node {node.hostname} joined the cluster")
    return updated


def remove_node(
    ctx: CommandContext, config: ClusterConfig, hostname: str, reset: bool = False
) -> ClusterConfig:
    """Drain and delete a node, optionally wiping kubeadm state on it.

    Returns:
        The cluster description without the node

    Raises:
        ConfigurationError: If the node is unknown or is the last master
        NodeOperationError: If the node cannot be deleted from the cluster
    """
    node = config.find_node(hostname)
    if node is None:
        raise ConfigurationError(f"Node '{hostname}' is not part of cluster {config.name}")
    if node.is_master and len(config.masters()) == 1:
        raise ConfigurationError(f"Refusing to remove {hostname}: it is the only master")

    updated = without_node(config, hostname)
    master = _control_node(config, exclude=hostname)
    with ctx.open_channel(master) as control:
        ctx.echo(f"Draining {hostname}")
        try:
            control.execute(
                f"kubectl drain {hostname} --delete-emptydir-data --ignore-daemonsets "
                f"--force --timeout={DRAIN_TIMEOUT}"
            )
        except ClusterDeployerError as e:
            logger.warning(f"Drain of {hostname} failed, deleting anyway: {e.message}")
            ctx.echo(f"Warning: drain failed ({e.message}); continuing")

        try:
            control.execute(f"kubectl delete node {hostname}")
        except ClusterDeployerError as e:
            raise NodeOperationError(hostname, "node delete", e) from e
        _record(control, updated)

    if reset:
        ctx.echo(f"Resetting kubeadm state on {hostname}")
        try:
            with ctx.open_channel(node) as channel:
                channel.execute(f"kubeadm reset -f --cri-socket {CRI_SOCKET}")
        except ClusterDeployerError as e:
            logger.warning(f"Reset of {hostname} failed: {e.message}")
            ctx.echo(f"Warning: run 'kubeadm reset -f' on {hostname} manually")

    ctx.echo(f"Node {hostname} removed")
    return updated


def _kubectl(ctx: CommandContext, config: ClusterConfig, command: str) -> str:
    master = config.first_master()
    with ctx.open_channel(master) as channel:
        return channel.execute(f"kubectl {command}")


def list_nodes(ctx: CommandContext, config: ClusterConfig) -> str:
    return _kubectl(ctx, config, "get nodes -o wide")


def describe_node(ctx: CommandContext, config: ClusterConfig, hostname: str) -> str:
    return _kubectl(ctx, config, f"describe node {hostname}")


def cordon_node(ctx: CommandContext, config: ClusterConfig, hostname: str) -> None:
    _kubectl(ctx, config, f"cordon {hostname}")


def uncordon_node(ctx: CommandContext, config: ClusterConfig, hostname: str) -> None:
    _kubectl(ctx, config, f"uncordon {hostname}")
