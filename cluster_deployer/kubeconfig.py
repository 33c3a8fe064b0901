"""Fetch the cluster's admin kubeconfig and install it locally."""

import shutil
from pathlib import Path

from cluster_deployer.channel import CommandChannel
from cluster_deployer.exceptions import ConfigurationError
from cluster_deployer.kubeadm import ADMIN_CONF
from cluster_deployer.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_KUBECONFIG = Path.home() / ".kube" / "config"


def fetch_admin_kubeconfig(channel: CommandChannel) -> str:
    content = channel.execute(f"cat {ADMIN_CONF}")
    if "clusters:" not in content:
        raise ConfigurationError(f"{ADMIN_CONF} on {channel.host} does not look like a kubeconfig")
    return content


def install_kubeconfig(content: str, cluster_name: str, path: Path | None = None) -> Path:
    """Write a kubeconfig, keeping any previous file as ``config.backup.<cluster>``."""
    path = Path(path or DEFAULT_KUBECONFIG).expanduser()
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    if path.exists():
        backup = path.with_name(f"{path.name}.backup.{cluster_name}")
        shutil.copy2(path, backup)
        logger.info(f"Backed up existing kubeconfig to {backup}")
    path.write_text(content)
    path.chmod(0o600)
    return path
