"""Per-invocation command context threaded through every operation."""

import time
from collections.abc import Callable
from dataclasses import dataclass, field

from cluster_deployer.channel import CommandChannel, LocalChannel, SSHChannel
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor
from cluster_deployer.packages import PackageManager
from cluster_deployer.settings import DeployerSettings

logger = get_logger(__name__)


def _decline(prompt: str) -> bool:
    return False


def _log_echo(message: str) -> None:
    logger.info(message)


@dataclass
class CommandContext:
    """Options and collaborators for one command run.

    ``confirm`` is skipped when ``auto_confirm`` is set. ``confirm_dangerous``
    guards destructive resets and is always asked; it must only return True
    when the operator typed the literal confirmation token.
    """

    settings: DeployerSettings = field(default_factory=DeployerSettings.from_env)
    auto_confirm: bool = False
    confirm: Callable[[str], bool] = _decline
    confirm_dangerous: Callable[[str], bool] = _decline
    echo: Callable[[str], None] = _log_echo
    channel_factory: Callable[[NodeDescriptor], CommandChannel] | None = None
    local_channel_factory: Callable[[], CommandChannel] = LocalChannel
    sleep: Callable[[float], None] = time.sleep

    def open_channel(self, node: NodeDescriptor) -> CommandChannel:
        if self.channel_factory is not None:
            return self.channel_factory(node)
        return SSHChannel.for_node(node, self.settings, sleep=self.sleep)

    def open_local_channel(self) -> CommandChannel:
        return self.local_channel_factory()

    def packages(self, config: ClusterConfig) -> PackageManager:
        return PackageManager(self.settings.package_dir, config.spec.version)

    def ask(self, prompt: str) -> bool:
        if self.auto_confirm:
            return True
        return self.confirm(prompt)
