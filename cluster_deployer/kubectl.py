"""Small helpers around kubectl run through a command channel."""

import shlex
import uuid
from collections.abc import Callable

import yaml

from cluster_deployer.channel import CommandChannel
from cluster_deployer.exceptions import ChannelError, PollTimeoutError
from cluster_deployer.logging_config import get_logger

logger = get_logger(__name__)


def dump_manifests(manifests: list[dict]) -> str:
    return yaml.safe_dump_all(manifests, sort_keys=False, default_flow_style=False)


def apply_manifests(channel: CommandChannel, manifests: list[dict], name: str) -> str:
    """Upload a YAML stream and ``kubectl apply`` it.

    Args:
        channel: Channel to a host with a working kubeconfig
        manifests: Kubernetes objects as plain dicts
        name: Short label used for the temporary file name

    Returns:
        kubectl output
    """
    path = f"/tmp/{name}-{uuid.uuid4().hex[:8]}.yaml"
    channel.upload(dump_manifests(manifests).encode(), path, 0o600)
    try:
        return channel.execute(f"kubectl apply -f {path}")
    finally:
        remove_temp_file(channel, path)


def remove_temp_file(channel: CommandChannel, path: str) -> None:
    """Delete a scratch file, logging instead of raising when that fails."""
    try:
        channel.execute(f"rm -f {path}")
    except ChannelError as e:
        logger.warning(f"[{channel.host}] could not remove {path}: {e.message}")


def jsonpath(channel: CommandChannel, resource_args: str, expression: str) -> str:
    """``kubectl get <resource_args> -o jsonpath=<expression>``, stripped."""
    output = channel.execute(
        f"kubectl get {resource_args} -o jsonpath={shlex.quote(expression)}"
    )
    return output.strip()


def poll_until(
    check: Callable[[], bool],
    attempts: int,
    interval: float,
    sleep: Callable[[float], None],
    description: str,
) -> None:
    """Call ``check`` until it returns True or the attempt budget runs out.

    An exception raised by ``check`` counts as "not ready yet".

    Raises:
        PollTimeoutError: If the condition never held
    """
    last_error = None
    for attempt in range(1, attempts + 1):
        try:
            if check():
                logger.debug(f"{description}: ready after {attempt} attempt(s)")
                return
            last_error = None
        except Exception as e:
            last_error = e
            logger.debug(f"{description}: attempt {attempt} raised {e}")
        if attempt < attempts:
            sleep(interval)

    raise PollTimeoutError(
        f"Timed out waiting for {description}",
        f"not ready after {attempts} attempts, {interval:g}s apart"
        + (f"; last error: {last_error}" if last_error else ""),
    )
