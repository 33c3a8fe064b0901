"""Concurrent per-node provisioning.

Every node is one failure domain: a task per node runs the whole pipeline on
its own channel, siblings are never cancelled, and failures are reported
together once every task has finished.
"""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TypeVar

from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import AggregateNodeError, NodeOperationError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor
from cluster_deployer.node_setup import DEFAULT_PIPELINE, ProvisionStep

logger = get_logger(__name__)

T = TypeVar("T")


class ProgressLog:
    """Thread-safe per-node progress messages."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[str, list[str]] = {}

    def record(self, node: str, message: str) -> None:
        with self._lock:
            self._entries.setdefault(node, []).append(message)
        logger.info(f"[{node}] {message}")

    def entries(self, node: str) -> list[str]:
        with self._lock:
            return list(self._entries.get(node, []))

    def snapshot(self) -> dict[str, list[str]]:
        with self._lock:
            return {node: list(messages) for node, messages in self._entries.items()}


def fan_out(
    items: Iterable[T],
    task: Callable[[T], None],
    name_of: Callable[[T], str],
) -> dict[str, Exception]:
    """Run ``task`` on every item concurrently and wait for all of them.

    Returns:
        Mapping of item name to the exception it raised; empty when all succeeded
    """
    items = list(items)
    if not items:
        return {}

    failures: dict[str, Exception] = {}
    with ThreadPoolExecutor(max_workers=len(items)) as executor:
        futures = {executor.submit(task, item): name_of(item) for item in items}
        for future in as_completed(futures):
            name = futures[future]
            try:
                future.result()
            except Exception as e:
                logger.error(f"[{name}] {e}")
                failures[name] = e
    return failures


class NodeProvisioner:
    """Bring nodes to the common baseline in parallel."""

    def __init__(
        self,
        ctx: CommandContext,
        config: ClusterConfig,
        steps: list[ProvisionStep] | None = None,
        progress: ProgressLog | None = None,
    ):
        self.ctx = ctx
        self.config = config
        self.steps = DEFAULT_PIPELINE if steps is None else steps
        self.progress = progress or ProgressLog()

    def check_connectivity(self, nodes: list[NodeDescriptor]) -> None:
        """Open a channel to every node and run a trivial command.

        Raises:
            AggregateNodeError: Naming every unreachable node
        """

        def probe(node: NodeDescriptor) -> None:
            with self.ctx.open_channel(node) as channel:
                try:
                    channel.execute("echo ok")
                except Exception as e:
                    raise NodeOperationError(node.name, "connectivity check", e) from e
            self.progress.record(node.name, "reachable")

        failures = fan_out(nodes, probe, lambda n: n.name)
        if failures:
            raise AggregateNodeError("connectivity check", failures)

    def provision_node(self, node: NodeDescriptor) -> None:
        """Run every applicable step on one node, stopping at the first failure."""
        packages = self.ctx.packages(self.config)
        with self.ctx.open_channel(node) as channel:
            for step in self.steps:
                if not step.applies(node):
                    continue
                self.progress.record(node.name, f"{step.name}: started")
                try:
                    step.run(channel, node, self.config, packages)
                except Exception as e:
                    self.progress.record(node.name, f"{step.name}: failed")
                    raise NodeOperationError(node.name, step.name, e) from e
                self.progress.record(node.name, f"{step.name}: done")

    def provision(self, nodes: list[NodeDescriptor]) -> None:
        """Provision every node concurrently.

        Raises:
            AggregateNodeError: After all tasks finished, naming every failed node
        """
        logger.info(f"Provisioning {len(nodes)} node(s)")
        failures = fan_out(nodes, self.provision_node, lambda n: n.name)
        if failures:
            raise AggregateNodeError("provisioning", failures)
