"""Tests for command channels and SSH connect strategies."""

from unittest.mock import Mock, patch

import paramiko
import pytest

from cluster_deployer.channel import Credential, LocalChannel, SSHChannel, connect_strategies
from cluster_deployer.exceptions import (
    AuthenticationError,
    ChannelConnectionError,
    RemoteCommandError,
    UploadError,
)
from cluster_deployer.models import NodeDescriptor
from cluster_deployer.settings import DeployerSettings


def make_client(*results):
    """Mock SSHClient whose exec_command yields (stdout, stderr, status) or raises."""
    results = list(results)
    client = Mock()
    transport = Mock()
    transport.is_active.return_value = True
    client.get_transport.return_value = transport

    def exec_command(command):
        item = results.pop(0) if len(results) > 1 else results[0]
        if isinstance(item, BaseException):
            raise item
        out, err, status = item
        stdin, stdout, stderr = Mock(), Mock(), Mock()
        stdout.read.return_value = out.encode()
        stderr.read.return_value = err.encode()
        stdout.channel.recv_exit_status.return_value = status
        return stdin, stdout, stderr

    client.exec_command.side_effect = exec_command
    return client


def make_channel(client, credentials=None, **settings):
    return SSHChannel(
        "10.0.0.5",
        credentials or [Credential(user="root", password="pw")],
        settings=DeployerSettings(**settings),
        client_factory=Mock(return_value=client),
        sleep=Mock(),
    )


def test_strategies_put_managed_key_first(tmp_path):
    """Test that the managed root key is tried before node credentials."""
    managed = tmp_path / "id_rsa"
    managed.write_text("key")
    node = NodeDescriptor(
        role="worker",
        ip="10.0.0.5",
        ssh={"user": "ubuntu", "keyFile": str(tmp_path / "other"), "password": "pw"},
    )

    strategies = connect_strategies(node, managed)

    assert strategies == [
        Credential(user="root", key_file=str(managed)),
        Credential(user="ubuntu", key_file=str(tmp_path / "other")),
        Credential(user="ubuntu", password="pw"),
    ]


def test_strategies_without_managed_key(tmp_path):
    """Test that a password-only node gets a single password strategy."""
    node = NodeDescriptor(role="worker", ip="10.0.0.5", ssh={"password": "pw"})

    assert connect_strategies(node, tmp_path / "absent") == [Credential(user="root", password="pw")]


def test_invalid_key_falls_back_to_password(tmp_path):
    """Test that an unusable key does not prevent password login."""
    client = make_client(("ok\n", "", 0))
    channel = make_channel(
        client,
        [
            Credential(user="root", key_file=str(tmp_path / "broken")),
            Credential(user="root", password="pw"),
        ],
    )

    with patch(
        "cluster_deployer.channel.paramiko.PKey.from_path",
        side_effect=paramiko.SSHException("not a valid key"),
    ):
        assert channel.execute("echo ok") == "ok\n"

    assert channel.active_credential == Credential(user="root", password="pw")
    client.connect.assert_called_once()
    assert client.connect.call_args.kwargs["password"] == "pw"


def test_rejected_credentials_raise_authentication_error():
    """Test that a host rejecting every credential reports authentication failure."""
    client = make_client(("", "", 0))
    client.connect.side_effect = paramiko.AuthenticationException("denied")
    channel = make_channel(client)

    with pytest.raises(AuthenticationError) as exc_info:
        channel.connect()

    assert "root with password: denied" in exc_info.value.details


def test_unreachable_host_raises_connection_error():
    """Test that network failures are not reported as authentication problems."""
    client = make_client(("", "", 0))
    client.connect.side_effect = OSError("No route to host")
    channel = make_channel(client)

    with pytest.raises(ChannelConnectionError):
        channel.connect()


def test_nonzero_exit_is_not_retried():
    """Test that a failed command raises once with its stderr."""
    client = make_client(("", "permission denied\n", 2))
    channel = make_channel(client)

    with pytest.raises(RemoteCommandError) as exc_info:
        channel.execute("cat /etc/shadow")

    assert exc_info.value.exit_status == 2
    assert exc_info.value.stderr == "permission denied\n"
    assert client.exec_command.call_count == 1


def test_transport_failure_reconnects_and_retries():
    """Test that a dropped session is reopened and the command re-run."""
    client = make_client(EOFError("session closed"), ("done\n", "", 0))
    channel = make_channel(client, retry_backoff=0.5)

    assert channel.execute("kubeadm version") == "done\n"
    assert client.exec_command.call_count == 2
    assert channel._client_factory.call_count == 2
    channel._sleep.assert_called_once_with(0.5)


def test_transport_failure_gives_up_after_retry_budget():
    """Test that persistent transport failures end in ChannelConnectionError."""
    client = make_client(EOFError("gone"))
    channel = make_channel(client, command_retries=3)

    with pytest.raises(ChannelConnectionError) as exc_info:
        channel.execute("uptime")

    assert "after 3 attempts" in exc_info.value.details
    assert client.exec_command.call_count == 3


def test_non_root_password_user_runs_through_sudo():
    """Test that commands are elevated with sudo and the password on stdin."""
    client = make_client(("", "", 0))
    channel = make_channel(client, [Credential(user="ubuntu", password="pw")])

    channel.execute("systemctl restart kubelet")

    command = client.exec_command.call_args.args[0]
    assert command.startswith("sudo -S -p '' bash -c ")
    assert "systemctl restart kubelet" in command


def test_upload_stages_then_installs():
    """Test that uploads go through a staging file and install(1)."""
    client = make_client(("", "", 0))
    sftp = Mock()
    client.open_sftp.return_value = sftp
    channel = make_channel(client)

    channel.upload(b"data", "/etc/containerd/config.toml", 0o600)

    staging = sftp.putfo.call_args.args[1]
    assert staging.startswith("/tmp/.cluster-deployer-")
    command = client.exec_command.call_args.args[0]
    assert "install -D -m 600" in command
    assert "/etc/containerd/config.toml" in command
    sftp.close.assert_called_once()


def test_failed_install_raises_upload_error():
    """Test that a failing install step is reported as an upload error."""
    client = make_client(("", "read-only file system", 1))
    client.open_sftp.return_value = Mock()
    channel = make_channel(client)

    with pytest.raises(UploadError):
        channel.upload(b"data", "/etc/hosts")


def test_local_channel_runs_commands(tmp_path):
    """Test that the local channel returns stdout and raises on failure."""
    channel = LocalChannel()

    assert channel.execute("echo hello") == "hello\n"
    with pytest.raises(RemoteCommandError) as exc_info:
        channel.execute("exit 3")
    assert exc_info.value.exit_status == 3


def test_local_channel_upload_and_path_exists(tmp_path):
    """Test local uploads create parents and honour the mode."""
    channel = LocalChannel()
    target = tmp_path / "nested" / "file.txt"

    channel.upload(b"content", str(target), 0o600)

    assert target.read_bytes() == b"content"
    assert target.stat().st_mode & 0o777 == 0o600
    assert channel.path_exists(str(target))
    assert not channel.path_exists(str(tmp_path / "missing"))


def test_failed_reconnect_counts_as_an_attempt():
    """Test that a refused reconnect is retried within the attempt budget."""
    dropped = make_client(EOFError("session closed"))
    refused = make_client(("", "", 0))
    refused.connect.side_effect = OSError("connection refused")
    healthy = make_client(("done\n", "", 0))
    channel = SSHChannel(
        "10.0.0.5",
        [Credential(user="root", password="pw")],
        settings=DeployerSettings(command_retries=3, retry_backoff=1.0),
        client_factory=Mock(side_effect=[dropped, refused, healthy]),
        sleep=Mock(),
    )

    assert channel.execute("uptime") == "done\n"
    assert channel._client_factory.call_count == 3
    assert channel._sleep.call_count == 2


def test_rejected_reconnect_is_not_retried():
    """Test that credentials rejected on reconnect fail at once."""
    dropped = make_client(EOFError("session closed"))
    rejecting = make_client(("", "", 0))
    rejecting.connect.side_effect = paramiko.AuthenticationException("denied")
    channel = SSHChannel(
        "10.0.0.5",
        [Credential(user="root", password="pw")],
        settings=DeployerSettings(command_retries=3),
        client_factory=Mock(side_effect=[dropped, rejecting]),
        sleep=Mock(),
    )

    with pytest.raises(AuthenticationError):
        channel.execute("uptime")
    assert channel._client_factory.call_count == 2
