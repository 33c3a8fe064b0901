"""Move password-based nodes onto a managed root SSH key."""

import shlex
import socket
from pathlib import Path

import paramiko

from cluster_deployer.channel import Credential, SSHChannel
from cluster_deployer.context import CommandContext
from cluster_deployer.exceptions import AuthenticationError, ClusterDeployerError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig, NodeDescriptor

logger = get_logger(__name__)

KEY_BITS = 4096


def public_key_path(private_key: Path) -> Path:
    return private_key.with_name(private_key.name + ".pub")


def ensure_key_pair(private_key: Path, force: bool = False) -> str:
    """Reuse or generate the managed RSA key pair.

    An incomplete pair (only one of the two files) is regenerated.

    Returns:
        The OpenSSH public key line
    """
    private_key = Path(private_key).expanduser()
    public_key = public_key_path(private_key)

    if not force and private_key.exists() and public_key.exists():
        logger.info(f"Reusing SSH key {private_key}")
        return public_key.read_text().strip()

    for path in (private_key, public_key):
        if path.exists():
            path.unlink()

    private_key.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
    key = paramiko.RSAKey.generate(KEY_BITS)
    key.write_private_key_file(str(private_key))
    private_key.chmod(0o600)
    line = f"{key.get_name()} {key.get_base64()} cluster-deployer@{socket.gethostname()}"
    public_key.write_text(line + "\n")
    logger.info(f"Generated SSH key {private_key}")
    return line


def needs_key_setup(config: ClusterConfig) -> bool:
    return any(node.ssh.uses_password for node in config.spec.nodes)


def authorize_script(public_key: str) -> str:
    quoted = shlex.quote(public_key)
    return (
        "mkdir -p /root/.ssh && chmod 700 /root/.ssh && "
        f"echo {quoted} >> /root/.ssh/authorized_keys && "
        "sort -u /root/.ssh/authorized_keys -o /root/.ssh/authorized_keys && "
        "chmod 600 /root/.ssh/authorized_keys && chown root:root /root/.ssh/authorized_keys && "
        "sed -i 's/^#*PermitRootLogin.*/PermitRootLogin prohibit-password/' /etc/ssh/sshd_config && "
        "sed -i 's/^#*PubkeyAuthentication.*/PubkeyAuthentication yes/' /etc/ssh/sshd_config && "
        "(systemctl restart sshd || systemctl restart ssh || service ssh restart)"
    )


def push_key(ctx: CommandContext, node: NodeDescriptor, public_key: str, private_key: Path) -> None:
    """Authorize the managed key for root on a node, then prove it works.

    Raises:
        AuthenticationError: If the password login or the key verification fails
    """
    with SSHChannel(
        node.ip,
        [Credential(user=node.ssh.user, password=node.ssh.password)],
        port=node.ssh.port,
        settings=ctx.settings,
        sleep=ctx.sleep,
    ) as channel:
        channel.execute(authorize_script(public_key))

    with SSHChannel(
        node.ip,
        [Credential(user="root", key_file=str(private_key))],
        port=node.ssh.port,
        settings=ctx.settings,
        sleep=ctx.sleep,
    ) as channel:
        whoami = channel.execute("whoami").strip()
    if whoami != "root":
        raise AuthenticationError(node.ip, f"Key login on {node.name} landed as '{whoami}', not root")


def switch_to_managed_keys(config: ClusterConfig, private_key: Path) -> ClusterConfig:
    """Copy of the config where password nodes log in as root with the managed key."""
    updated = config.model_copy(deep=True)
    for node in updated.spec.nodes:
        if node.ssh.uses_password:
            node.ssh.user = "root"
            node.ssh.key_file = str(private_key)
            node.ssh.password = ""
    return updated


def setup_ssh_keys(ctx: CommandContext, config: ClusterConfig, force: bool = False) -> ClusterConfig:
    """Push the managed key to every password-based node.

    Returns:
        The config rewritten to use the managed key

    Raises:
        AuthenticationError: Naming the first node that could not be set up
    """
    private_key = Path(ctx.settings.managed_key_file).expanduser()
    public_key = ensure_key_pair(private_key, force=force)

    targets = [n for n in config.spec.nodes if n.ssh.uses_password or force]
    for node in targets:
        if not node.ssh.password:
            logger.info(f"[{node.name}] no password configured; skipping key push")
            continue
        ctx.echo(f"Installing SSH key on {node.name} ({node.ip})")
        try:
            push_key(ctx, node, public_key, private_key)
        except AuthenticationError:
            raise
        except ClusterDeployerError as e:
            raise AuthenticationError(
                node.ip, f"SSH key setup failed on {node.name}: {e.message}", e.details
            ) from e
    return switch_to_managed_keys(config, private_key)
