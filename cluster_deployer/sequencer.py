"""Ordered bootstrap of a new cluster from provisioned machines to a validated cluster."""

import enum
from dataclasses import dataclass, field
from pathlib import Path

from cluster_deployer.addons import install_cilium, install_metallb, label_gpu_node, load_balancer_required
from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import (
    AggregateNodeError,
    ClusterDeployerError,
    NodeOperationError,
    UserCancelledError,
)
from cluster_deployer.ha import setup_ha
from cluster_deployer.kubeadm import (
    ADMIN_CONF,
    INIT_CONFIG_PATH,
    KUBELET_CONF,
    NODE_RESET_SCRIPT,
    RESET_SCRIPT,
    JoinCredential,
    init_command,
    issue_join_credential,
    render_init_config,
)
from cluster_deployer.kubeconfig import fetch_admin_kubeconfig, install_kubeconfig
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor
from cluster_deployer.provisioner import NodeProvisioner, fan_out
from cluster_deployer.state_store import ClusterStateStore

logger = get_logger(__name__)

COPY_ADMIN_CONF = (
    "mkdir -p $HOME/.kube && "
    f"cp -f {ADMIN_CONF} $HOME/.kube/config && "
    "chown $(id -u):$(id -g) $HOME/.kube/config"
)


class BootstrapState(enum.Enum):
    UNCONFIGURED = "unconfigured"
    FIRST_MASTER_INITIALIZING = "first-master-initializing"
    FIRST_MASTER_READY = "first-master-ready"
    OTHER_MASTERS_JOINING = "other-masters-joining"
    ADDONS_INSTALLING = "addons-installing"
    WORKERS_JOINING = "workers-joining"
    GPU_TAGGING = "gpu-tagging"
    VALIDATING = "validating"
    DONE = "done"


@dataclass
class BootstrapResult:
    endpoint: str
    history: list[BootstrapState] = field(default_factory=list)
    persisted: bool = False
    validation_output: str = ""


def deployment_summary(config: ClusterConfig) -> str:
    spec = config.spec
    lines = [
        f"Cluster:   {config.name} ({spec.version})",
        f"Endpoint:  {config.control_plane_endpoint()}",
        f"Masters:   {len(config.masters())}",
        f"Workers:   {len(config.workers())} ({len(config.gpu_nodes())} GPU)",
        f"HA:        {'enabled, VIP ' + spec.ha.vip if spec.ha.enabled else 'disabled'}",
        f"BGP:       {'enabled, AS ' + str(spec.bgp.local_asn) if spec.bgp.enabled else 'disabled'}",
    ]
    return "\n".join(lines)


class BootstrapSequencer:
    """Drive a cluster from bare machines to DONE.

    The first master's channel stays open for the whole run; every other node
    gets its own short-lived channel.
    """

    def __init__(
        self,
        ctx: CommandContext,
        config: ClusterConfig,
        provisioner: NodeProvisioner | None = None,
        kubeconfig_path: Path | None = None,
    ):
        self.ctx = ctx
        self.config = config
        self.provisioner = provisioner or NodeProvisioner(ctx, config)
        self.kubeconfig_path = kubeconfig_path
        self.history: list[BootstrapState] = []

    @property
    def state(self) -> BootstrapState | None:
        return self.history[-1] if self.history else None

    def _enter(self, state: BootstrapState) -> None:
        logger.info(f"Bootstrap state: {state.value}")
        self.history.append(state)

    def run(self) -> BootstrapResult:
        """Bootstrap the cluster.

        Raises:
            UserCancelledError: If the operator declines a confirmation
            NodeOperationError: If a sequential node phase fails
            AggregateNodeError: If a concurrent node phase fails
            AddonError: If a required addon cannot be installed
        """
        config = self.config
        first = config.first_master()
        endpoint = config.control_plane_endpoint()

        self._enter(BootstrapState.UNCONFIGURED)
        if not self.ctx.ask(deployment_summary(config) + "\nStart deployment?"):
            raise UserCancelledError("Deployment cancelled")

        self.ctx.echo("Checking SSH connectivity")
        self.provisioner.check_connectivity(config.spec.nodes)
        self.ctx.echo("Preparing nodes")
        self.provisioner.provision(config.spec.nodes)
        if config.spec.ha.enabled:
            setup_ha(self.ctx, config)

        with self.ctx.open_channel(first) as channel:
            self._enter(BootstrapState.FIRST_MASTER_INITIALIZING)
            self.init_first_master(channel, first)

            self._enter(BootstrapState.FIRST_MASTER_READY)
            others = config.masters()[1:]
            try:
                credential = issue_join_credential(
                    channel,
                    endpoint,
                    include_certificate_key=bool(others),
                    ttl=self.ctx.settings.token_ttl,
                )
            except ClusterDeployerError as e:
                raise NodeOperationError(first.name, "join credential", e) from e

            self._enter(BootstrapState.OTHER_MASTERS_JOINING)
            for node in others:
                self.join_master(node, credential)

            self.setup_local_kubectl(channel)

            self._enter(BootstrapState.ADDONS_INSTALLING)
            install_cilium(self.ctx, channel, config, config.control_plane_host())
            if load_balancer_required(config):
                install_metallb(self.ctx, channel, config)

            self._enter(BootstrapState.WORKERS_JOINING)
            self.join_workers(config.workers(), credential)

            self._enter(BootstrapState.GPU_TAGGING)
            self.label_gpu_nodes(channel)

            self._enter(BootstrapState.VALIDATING)
            validation_output = self.validate(channel, first)

            persisted = self.persist(channel)

        self._enter(BootstrapState.DONE)
        self.ctx.echo(f"Cluster {config.name} is ready at {endpoint}")
        return BootstrapResult(
            endpoint=endpoint,
            history=list(self.history),
            persisted=persisted,
            validation_output=validation_output,
        )

    def init_first_master(self, channel: CommandChannel, node: NodeDescriptor) -> None:
        if channel.path_exists(ADMIN_CONF):
            prompt = (
                f"{node.name} already runs a Kubernetes control plane.\n"
                "Resetting it destroys that cluster and all of its data."
            )
            if not self.ctx.confirm_dangerous(prompt):
                raise UserCancelledError(f"Existing control plane on {node.name} left untouched")
            self.ctx.echo(f"Resetting existing control plane on {node.name}")
            try:
                channel.execute(RESET_SCRIPT)
            except ClusterDeployerError as e:
                raise NodeOperationError(node.name, "control-plane reset", e) from e

        self.ctx.echo(f"Initializing control plane on {node.name}")
        try:
            channel.upload(render_init_config(self.config, node.ip).encode(), INIT_CONFIG_PATH, 0o600)
            channel.execute(init_command(INIT_CONFIG_PATH))
            channel.execute(COPY_ADMIN_CONF)
        except ClusterDeployerError as e:
            raise NodeOperationError(node.name, "control-plane init", e) from e

    def join_master(self, node: NodeDescriptor, credential: JoinCredential) -> None:
        self.ctx.echo(f"Joining master {node.name}")
        try:
            with self.ctx.open_channel(node) as channel:
                channel.execute(credential.master_command(advertise_address=node.ip))
                channel.execute(COPY_ADMIN_CONF)
        except ClusterDeployerError as e:
            raise NodeOperationError(node.name, "master join", e) from e

    def join_workers(self, workers: list[NodeDescriptor], credential: JoinCredential) -> None:
        if not workers:
            return
        self.ctx.echo(f"Joining {len(workers)} worker(s)")

        def join(node: NodeDescriptor) -> None:
            with self.ctx.open_channel(node) as channel:
                try:
                    if channel.path_exists(KUBELET_CONF):
                        logger.info(f"[{node.name}] stale cluster membership found; resetting")
                        channel.execute(NODE_RESET_SCRIPT)
                    channel.execute(credential.worker_command())
                except Exception as e:
                    raise NodeOperationError(node.name, "worker join", e) from e

        failures = fan_out(workers, join, lambda n: n.name)
        if failures:
            raise AggregateNodeError("worker join", failures)

    def setup_local_kubectl(self, channel: CommandChannel) -> None:
        try:
            content = fetch_admin_kubeconfig(channel)
            path = install_kubeconfig(content, self.config.name, self.kubeconfig_path)
        except (ClusterDeployerError, OSError) as e:
            logger.warning(f"Local kubectl not configured: {e}")
            self.ctx.echo(
                f"Warning: local kubeconfig not written; copy {ADMIN_CONF} from "
                f"{self.config.first_master().ip} manually"
            )
            return
        self.ctx.echo(f"Local kubeconfig written to {path}")

    def label_gpu_nodes(self, channel: CommandChannel) -> None:
        for node in self.config.gpu_nodes():
            try:
                label_gpu_node(channel, node.hostname)
            except ClusterDeployerError as e:
                logger.warning(f"Could not label GPU node {node.hostname}: {e}")

    def validate(self, channel: CommandChannel, node: NodeDescriptor) -> str:
        try:
            nodes = channel.execute("kubectl get nodes")
            pods = channel.execute("kubectl get pods -n kube-system")
        except ClusterDeployerError as e:
            raise NodeOperationError(node.name, "cluster validation", e) from e
        logger.info(f"Cluster nodes:\n{nodes}")
        return nodes + pods

    def persist(self, channel: CommandChannel) -> bool:
        try:
            ClusterStateStore(channel).save(self.config)
        except ClusterDeployerError as e:
            logger.warning(f"Could not save cluster configuration: {e.message}")
            self.ctx.echo("Warning: cluster configuration not saved; later updates cannot detect changes")
            return False
        return True
