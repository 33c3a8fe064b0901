"""Command channels: run commands and upload files on one host.

Two variants share the ``CommandChannel`` interface: ``LocalChannel`` runs on
the machine the deployer runs on, ``SSHChannel`` runs on a remote node over
paramiko. Only transport failures are retried; a command that ran and exited
nonzero is reported once and never re-executed.
"""

import io
import posixpath
import shlex
import socket
import subprocess
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import paramiko

from cluster_deployer.exceptions import (
    AuthenticationError,
    ChannelConnectionError,
    RemoteCommandError,
    UploadError,
)
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import NodeDescriptor
from cluster_deployer.settings import DeployerSettings

logger = get_logger(__name__)

STAGING_DIR = "/tmp"


class CommandChannel:
    """Execute commands and write files on a single host."""

    host: str = "localhost"

    def execute(self, command: str) -> str:
        """Run a shell command and return its stdout.

        Raises:
            RemoteCommandError: If the command exits nonzero
        """
        raise NotImplementedError

    def upload(self, data: bytes, remote_path: str, mode: int = 0o644) -> None:
        """Write ``data`` to ``remote_path`` with the given permission bits.

        Raises:
            UploadError: If the file cannot be written
        """
        raise NotImplementedError

    def path_exists(self, path: str) -> bool:
        try:
            self.execute(f"test -e {shlex.quote(path)}")
        except RemoteCommandError:
            return False
        return True

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class LocalChannel(CommandChannel):
    """Run commands on the local machine through ``sh -c``."""

    def __init__(self, host: str = "localhost"):
        self.host = host

    def execute(self, command: str) -> str:
        logger.debug(f"[{self.host}] $ {command}")
        result = subprocess.run(["sh", "-c", command], capture_output=True, text=True)
        if result.returncode != 0:
            raise RemoteCommandError(self.host, command, result.returncode, result.stderr)
        return result.stdout

    def upload(self, data: bytes, remote_path: str, mode: int = 0o644) -> None:
        path = Path(remote_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            path.chmod(mode)
        except OSError as e:
            raise UploadError(self.host, f"Failed to write {remote_path}: {e}") from e


@dataclass(frozen=True)
class Credential:
    """One way of logging into a host."""

    user: str
    key_file: str = ""
    password: str = ""

    def describe(self) -> str:
        if self.key_file:
            return f"{self.user} with key {self.key_file}"
        return f"{self.user} with password"


def connect_strategies(node: NodeDescriptor, managed_key_file: Path) -> list[Credential]:
    """Ordered credentials to try for a node.

    The managed root key comes first so that a fleet bootstrapped with
    passwords moves to key-based access as soon as the key has been pushed.
    The node's own key and then its password follow.
    """
    strategies = []
    managed = Path(managed_key_file).expanduser()
    if managed.exists():
        strategies.append(Credential(user="root", key_file=str(managed)))

    ssh = node.ssh
    if ssh.key_file:
        key_path = Path(ssh.key_file).expanduser()
        if key_path != managed:
            strategies.append(Credential(user=ssh.user, key_file=str(key_path)))
        elif ssh.user != "root":
            strategies.append(Credential(user=ssh.user, key_file=str(key_path)))
    if ssh.password:
        strategies.append(Credential(user=ssh.user, password=ssh.password))
    return strategies


class SSHChannel(CommandChannel):
    """Run commands on a remote host over SSH, reconnecting on transport failures."""

    def __init__(
        self,
        host: str,
        credentials: list[Credential],
        port: int = 22,
        settings: DeployerSettings | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.host = host
        self.port = port
        self.credentials = list(credentials)
        self.settings = settings or DeployerSettings()
        self._client_factory = client_factory
        self._sleep = sleep
        self._client: paramiko.SSHClient | None = None
        self.active_credential: Credential | None = None

    @classmethod
    def for_node(cls, node: NodeDescriptor, settings: DeployerSettings, **kwargs) -> "SSHChannel":
        return cls(
            node.ip,
            connect_strategies(node, settings.managed_key_file),
            port=node.ssh.port,
            settings=settings,
            **kwargs,
        )

    def connect(self) -> None:
        """Try every credential in order; keep the first session that works.

        Raises:
            AuthenticationError: If any credential was rejected and none worked
            ChannelConnectionError: If the host could not be reached at all
        """
        if not self.credentials:
            raise AuthenticationError(self.host, f"No SSH credentials configured for {self.host}")

        failures = []
        rejected = False
        for credential in self.credentials:
            try:
                self._client = self._attempt(credential)
            except paramiko.AuthenticationException as e:
                rejected = True
                failures.append(f"{credential.describe()}: {e or 'authentication failed'}")
                continue
            except _UnusableKey as e:
                rejected = True
                failures.append(f"{credential.describe()}: {e}")
                continue
            except (paramiko.SSHException, OSError, EOFError) as e:
                failures.append(f"{credential.describe()}: {e}")
                continue

            self.active_credential = credential
            logger.debug(f"[{self.host}] connected as {credential.describe()}")
            return

        details = "\n".join(failures)
        if rejected:
            raise AuthenticationError(self.host, f"SSH authentication failed for {self.host}", details)
        raise ChannelConnectionError(self.host, f"Cannot connect to {self.host}:{self.port}", details)

    def _attempt(self, credential: Credential) -> paramiko.SSHClient:
        pkey = None
        if credential.key_file:
            try:
                pkey = paramiko.PKey.from_path(credential.key_file)
            except Exception as e:
                # unknown key formats raise outside paramiko's SSHException tree
                raise _UnusableKey(f"cannot load key: {e}") from e

        client = self._client_factory()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        timeout = self.settings.connect_timeout
        try:
            client.connect(
                self.host,
                port=self.port,
                username=credential.user,
                pkey=pkey,
                password=credential.password or None,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except BaseException:
            client.close()
            raise
        return client

    def _ensure_client(self) -> paramiko.SSHClient:
        if self._client is not None:
            transport = self._client.get_transport()
            if transport is not None and transport.is_active():
                return self._client
            self.close()
        self.connect()
        return self._client

    def close(self) -> None:
        if self._client is not None:
            try:
                self._client.close()
            except (paramiko.SSHException, OSError) as e:
                logger.debug(f"[{self.host}] error closing stale session: {e}")
            self._client = None

    def _privileged(self, command: str) -> tuple[str, str | None]:
        """Wrap a command so it runs as root; returns (command, sudo password)."""
        credential = self.active_credential
        if credential is None or credential.user == "root":
            return command, None
        quoted = shlex.quote(command)
        if credential.password:
            return f"sudo -S -p '' bash -c {quoted}", credential.password
        return f"sudo -n bash -c {quoted}", None

    def _run(self, command: str) -> str:
        client = self._ensure_client()
        wrapped, sudo_password = self._privileged(command)
        stdin, stdout, stderr = client.exec_command(wrapped)
        if sudo_password:
            stdin.write(sudo_password + "\n")
            stdin.flush()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        status = stdout.channel.recv_exit_status()
        if status != 0:
            raise RemoteCommandError(self.host, command, status, err)
        return out

    def _with_reconnect(self, operation: Callable[[], object], what: str):
        attempts = self.settings.command_retries
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            # a failed reconnect uses up an attempt; rejected credentials do not retry
            except (EOFError, OSError, paramiko.SSHException, ChannelConnectionError) as e:
                if isinstance(e, paramiko.AuthenticationException):
                    raise
                logger.warning(
                    f"[{self.host}] connection lost during {what} "
                    f"(attempt {attempt}/{attempts}): {type(e).__name__}: {e}"
                )
                self.close()
                if attempt == attempts:
                    raise ChannelConnectionError(
                        self.host,
                        f"Connection to {self.host} kept failing during {what}",
                        f"gave up after {attempts} attempts: {e}",
                    ) from e
                self._sleep(self.settings.retry_backoff)

    def execute(self, command: str) -> str:
        logger.debug(f"[{self.host}] $ {command}")
        return self._with_reconnect(lambda: self._run(command), "command execution")

    def upload(self, data: bytes, remote_path: str, mode: int = 0o644) -> None:
        staging = posixpath.join(STAGING_DIR, f".cluster-deployer-{uuid.uuid4().hex}")

        def put() -> None:
            sftp = self._ensure_client().open_sftp()
            try:
                sftp.putfo(io.BytesIO(data), staging)
            except OSError as e:
                if _is_transport_error(e):
                    raise
                raise UploadError(self.host, f"Failed to stage {remote_path}: {e}") from e
            finally:
                sftp.close()

        logger.debug(f"[{self.host}] upload {len(data)} bytes -> {remote_path}")
        self._with_reconnect(put, f"upload of {remote_path}")
        try:
            self.execute(
                f"install -D -m {mode:o} {shlex.quote(staging)} {shlex.quote(remote_path)}"
                f" && rm -f {shlex.quote(staging)}"
            )
        except RemoteCommandError as e:
            raise UploadError(self.host, f"Failed to install {remote_path}", e.stderr or None) from e


class _UnusableKey(Exception):
    pass


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(exc, (EOFError, ConnectionError, socket.timeout))
