"""Bring a running cluster in line with a revised cluster description."""

from collections.abc import Callable
from dataclasses import dataclass, field

from cluster_deployer.addons import install_metallb
from cluster_deployer.channel import CommandChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import (
    ClusterDeployerError,
    FieldViolation,
    ImmutableFieldViolation,
    ReconcileError,
    RemoteCommandError,
    StateStoreError,
    UserCancelledError,
)
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig
from cluster_deployer.state_store import ClusterStateStore

logger = get_logger(__name__)

KIND_BGP = "BGP"
KIND_HARBOR = "Harbor"


@dataclass
class ConfigChange:
    kind: str
    description: str
    old_value: str = ""
    new_value: str = ""
    affected_component: str = ""
    requires_restart: bool = False

    def summary(self) -> str:
        if self.requires_restart:
            return f"{self.description} (restarts {self.affected_component})"
        return self.description


@dataclass
class ReconcileResult:
    changes: list[ConfigChange] = field(default_factory=list)
    applied_kinds: list[str] = field(default_factory=list)
    unapplied_kinds: list[str] = field(default_factory=list)
    persisted: bool = False


def _immutable_fields(config: ClusterConfig) -> dict[str, str]:
    return {
        "metadata.name": config.name,
        "spec.networking.podSubnet": config.spec.networking.pod_subnet,
        "spec.networking.serviceSubnet": config.spec.networking.service_subnet,
        "spec.version": config.spec.version,
    }


def validate_immutable_fields(old: ClusterConfig, new: ClusterConfig) -> None:
    """Reject changes to fields that cannot change after creation.

    Raises:
        ImmutableFieldViolation: Listing every changed immutable field
    """
    before = _immutable_fields(old)
    after = _immutable_fields(new)
    violations = [
        FieldViolation(name, before[name], after[name])
        for name in before
        if before[name] != after[name]
    ]
    if violations:
        raise ImmutableFieldViolation(violations)


def _enable_bgp_changes(new: ClusterConfig) -> list[ConfigChange]:
    bgp = new.spec.bgp
    changes = [
        ConfigChange(
            KIND_BGP,
            "Enable BGP control plane",
            old_value="disabled",
            new_value="enabled",
            affected_component="Cilium",
            requires_restart=True,
        ),
        ConfigChange(
            KIND_BGP,
            f"Set BGP AS number: {bgp.local_asn}",
            new_value=str(bgp.local_asn),
            affected_component="Cilium",
        ),
    ]
    for i, peer in enumerate(bgp.peers, start=1):
        changes.append(
            ConfigChange(
                KIND_BGP,
                f"Add BGP peer {i}: {peer.peer_address} (AS {peer.peer_asn})",
                new_value=f"{peer.peer_address}:{peer.peer_asn}",
                affected_component="BGP Peering",
            )
        )
    for i, entry in enumerate(bgp.load_balancer_ips, start=1):
        changes.append(
            ConfigChange(
                KIND_BGP,
                f"Add load-balancer IP pool {i}: {entry}",
                new_value=entry,
                affected_component="IP Pool",
            )
        )
    return changes


def detect_bgp_changes(old: ClusterConfig | None, new: ClusterConfig) -> list[ConfigChange]:
    """BGP changes between two descriptions.

    When BGP stays enabled, peers and address entries are compared by count
    only; editing an entry in place is not reported.
    """
    new_bgp = new.spec.bgp
    if old is None:
        return _enable_bgp_changes(new) if new_bgp.enabled else []

    old_bgp = old.spec.bgp
    if new_bgp.enabled and not old_bgp.enabled:
        return _enable_bgp_changes(new)
    if not (new_bgp.enabled and old_bgp.enabled):
        return []

    changes = []
    if old_bgp.local_asn != new_bgp.local_asn:
        changes.append(
            ConfigChange(
                KIND_BGP,
                "Change BGP AS number",
                old_value=str(old_bgp.local_asn),
                new_value=str(new_bgp.local_asn),
                affected_component="BGP Peering",
            )
        )
    if len(old_bgp.peers) != len(new_bgp.peers):
        changes.append(
            ConfigChange(
                KIND_BGP,
                "Update BGP peers",
                old_value=f"{len(old_bgp.peers)} peers",
                new_value=f"{len(new_bgp.peers)} peers",
                affected_component="BGP Peering",
            )
        )
    if len(old_bgp.load_balancer_ips) != len(new_bgp.load_balancer_ips):
        changes.append(
            ConfigChange(
                KIND_BGP,
                "Update load-balancer IP pool",
                old_value=f"{len(old_bgp.load_balancer_ips)} IPs",
                new_value=f"{len(new_bgp.load_balancer_ips)} IPs",
                affected_component="IP Pool",
            )
        )
    return changes


def detect_all_changes(old: ClusterConfig | None, new: ClusterConfig) -> list[ConfigChange]:
    if old is None:
        logger.warning("Previous cluster configuration unavailable; skipping change detection")
        return []

    changes = detect_bgp_changes(old, new)
    old_harbor, new_harbor = old.spec.harbor, new.spec.harbor
    if (old_harbor.username, old_harbor.password) != (new_harbor.username, new_harbor.password):
        changes.append(
            ConfigChange(
                KIND_HARBOR,
                "Update Harbor registry credentials",
                old_value="***",
                new_value="***",
                affected_component="containerd",
            )
        )
    return changes


class Reconciler:
    """Detect, confirm and apply changes against a live cluster.

    ``channel`` must reach a working kubectl, normally the operator's own
    machine.
    """

    def __init__(
        self,
        ctx: CommandContext,
        channel: CommandChannel,
        store: ClusterStateStore | None = None,
    ):
        self.ctx = ctx
        self.channel = channel
        self.store = store or ClusterStateStore(channel)
        self.routines: dict[str, Callable[[ClusterConfig], None]] = {
            KIND_BGP: self.apply_bgp,
        }

    def apply_bgp(self, new: ClusterConfig) -> None:
        self.ctx.echo("Updating MetalLB BGP configuration")
        install_metallb(self.ctx, self.channel, new)

    def _load_previous(self) -> ClusterConfig | None:
        try:
            old = self.store.load()
        except StateStoreError as e:
            logger.warning(f"Could not load current cluster configuration: {e.message}")
            self.ctx.echo("Warning: current configuration unavailable; immutable field checks skipped")
            return None
        return old

    def _confirm(self, changes: list[ConfigChange]) -> None:
        lines = [f"{len(changes)} change(s) will be applied:"]
        lines.extend(f"  - {change.summary()}" for change in changes)
        if not self.ctx.ask("\n".join(lines) + "\nApply these changes?"):
            raise UserCancelledError("Update cancelled")

    def run(self, new: ClusterConfig, only_bgp: bool = False) -> ReconcileResult:
        """Reconcile the cluster toward ``new``.

        Raises:
            ReconcileError: If the cluster is unreachable or the update cannot apply
            OwnershipError: If the cluster is not managed by this tool
            ImmutableFieldViolation: Before any side effect
            UserCancelledError: If the operator declines
        """
        try:
            self.channel.execute("kubectl cluster-info")
        except RemoteCommandError as e:
            raise ReconcileError(
                "Cannot reach the cluster with kubectl",
                f"{e.message}\nMake sure the local kubeconfig points at the cluster",
            ) from e

        self.store.verify_ownership()
        old = self._load_previous()
        if old is not None:
            validate_immutable_fields(old, new)
        if only_bgp and not new.spec.bgp.enabled:
            raise ReconcileError(
                "BGP is not enabled in the configuration; nothing to update",
                "Set spec.bgp.enabled: true or run the update without --only-bgp",
            )

        changes = detect_bgp_changes(old, new) if only_bgp else detect_all_changes(old, new)
        result = ReconcileResult(changes=changes)
        if not changes:
            self.ctx.echo("No configuration changes detected")
            return result

        self._confirm(changes)

        if only_bgp:
            self.apply_bgp(new)
            result.applied_kinds.append(KIND_BGP)
        else:
            for kind in dict.fromkeys(change.kind for change in changes):
                routine = self.routines.get(kind)
                if routine is None:
                    logger.warning(f"No update routine for {kind} changes; not applied")
                    result.unapplied_kinds.append(kind)
                    continue
                routine(new)
                result.applied_kinds.append(kind)

        try:
            self.store.update(new)
            result.persisted = True
        except ClusterDeployerError as e:
            logger.warning(f"Could not update the stored configuration: {e.message}")
            self.ctx.echo("Warning: stored configuration record is out of date; the cluster is unaffected")
        return result
