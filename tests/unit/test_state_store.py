"""Tests for the cluster-resident deployment record."""

import base64
import json
from datetime import datetime, timezone

import pytest
import yaml

from cluster_deployer.exceptions import OwnershipError, StateStoreError
from cluster_deployer.state_store import (
    CONFIGMAP_NAME,
    DEPLOYED_AT,
    MANAGED_LABEL,
    TOOL_VERSION,
    UPDATED_AT,
    ClusterStateStore,
    build_configmap,
    build_secret,
)
from conftest import FakeChannel, make_config, node_list_json, stored_state_responses

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=timezone.utc)


def uploaded_documents(channel, prefix):
    (path,) = [p for p in channel.uploads if p.startswith(prefix)]
    return list(yaml.safe_load_all(channel.uploads[path]))


def test_configmap_holds_sanitized_description():
    """Test that the stored copy carries labels, timestamp and no secrets."""
    config = make_config(harbor={"username": "robot", "password": "hunter2"})

    configmap = build_configmap(config, NOW)

    assert configmap["metadata"]["name"] == CONFIGMAP_NAME
    assert configmap["metadata"]["namespace"] == "kube-system"
    assert configmap["metadata"]["labels"][MANAGED_LABEL] == "true"
    assert configmap["metadata"]["annotations"][DEPLOYED_AT] == "2026-03-01T12:30:00Z"
    stored = configmap["data"]["cluster.yaml"]
    assert "hunter2" not in stored
    assert "secret" not in stored


def test_secret_only_when_credentials_exist():
    """Test that registry credentials get their own Secret."""
    assert build_secret(make_config(), NOW) is None

    secret = build_secret(make_config(harbor={"username": "robot", "password": "hunter2"}), NOW)
    assert secret["type"] == "Opaque"
    assert secret["stringData"] == {"harbor-username": "robot", "harbor-password": "hunter2"}


def test_save_labels_nodes_and_applies_configmap():
    """Test that saving labels every node and applies the record."""
    channel = FakeChannel()
    config = make_config(workers=1)

    ClusterStateStore(channel, clock=lambda: NOW).save(config)

    labels = channel.ran("kubectl label node")
    assert len(labels) == 2
    assert f"{MANAGED_LABEL}=true" in labels[0]
    (configmap,) = uploaded_documents(channel, "/tmp/cluster-deployer-config-")
    assert configmap["kind"] == "ConfigMap"
    assert not any(p.startswith("/tmp/cluster-deployer-secret-") for p in channel.uploads)


def test_save_with_credentials_writes_secret():
    """Test that harbor credentials are applied as a Secret."""
    channel = FakeChannel()
    config = make_config(harbor={"username": "robot", "password": "hunter2"})

    ClusterStateStore(channel, clock=lambda: NOW).save(config)

    (secret,) = uploaded_documents(channel, "/tmp/cluster-deployer-secret-")
    assert secret["stringData"]["harbor-password"] == "hunter2"


def test_save_survives_label_failure():
    """Test that unlabelled nodes do not prevent saving the record."""
    channel = FakeChannel(fail_on={"kubectl label"})

    ClusterStateStore(channel).save(make_config())

    assert channel.ran("kubectl apply")


def test_save_fails_when_configmap_cannot_be_applied():
    """Test that a missing record is an error."""
    channel = FakeChannel(fail_on={"kubectl apply"})

    with pytest.raises(StateStoreError):
        ClusterStateStore(channel).save(make_config())


def test_load_round_trips_description():
    """Test that a saved description is read back with secrets overlaid."""
    config = make_config(workers=1, harbor={"username": "robot", "password": "hunter2"})
    responses = stored_state_responses(config)
    responses["secret cluster-deployer-secret"] = json.dumps(
        {
            "data": {
                "harbor-username": base64.b64encode(b"robot").decode(),
                "harbor-password": base64.b64encode(b"hunter2").decode(),
            }
        }
    )
    channel = FakeChannel(responses=responses)

    loaded = ClusterStateStore(channel).load()

    assert loaded.name == config.name
    assert [n.hostname for n in loaded.spec.nodes] == [n.hostname for n in config.spec.nodes]
    assert loaded.spec.harbor.password == "hunter2"
    assert loaded.spec.nodes[0].ssh.password == ""


def test_load_without_record_raises():
    """Test that a cluster without a record cannot be loaded."""
    channel = FakeChannel(fail_on={"configmap"})

    with pytest.raises(StateStoreError) as exc_info:
        ClusterStateStore(channel).load()

    assert "cluster-deployer" in exc_info.value.details


def test_load_rejects_corrupt_record():
    """Test that unparseable stored YAML is reported as corrupt."""
    channel = FakeChannel(
        responses={"configmap cluster-deployer-config": json.dumps({"data": {"cluster.yaml": "- not a cluster"}})}
    )

    with pytest.raises(StateStoreError) as exc_info:
        ClusterStateStore(channel).load()

    assert exc_info.value.message == "Stored cluster configuration is corrupt"


def test_update_patches_and_cleans_up():
    """Test that updates merge-patch the record and remove the patch file."""
    channel = FakeChannel()

    ClusterStateStore(channel, clock=lambda: NOW).update(make_config())

    (path,) = channel.uploads
    patch = json.loads(channel.uploads[path])
    assert patch["metadata"]["annotations"][UPDATED_AT] == "2026-03-01T12:30:00Z"
    assert channel.modes[path] == 0o600
    assert channel.ran(f"--type=merge --patch-file={path}")
    assert channel.commands[-1] == f"rm -f {path}"


def test_update_failure_still_removes_patch_file():
    """Test that the patch file is removed even when patching fails."""
    channel = FakeChannel(fail_on={"kubectl patch"})

    with pytest.raises(StateStoreError):
        ClusterStateStore(channel).update(make_config())

    assert channel.commands[-1].startswith("rm -f /tmp/cluster-deployer-patch-")


def test_ownership_requires_every_node_labelled():
    """Test that a single unlabelled node makes the cluster foreign."""
    items = json.loads(node_list_json(["b-node", "a-node"], managed=False))["items"]
    items.append(json.loads(node_list_json(["c-node"]))["items"][0])
    channel = FakeChannel(responses={"kubectl get nodes -o json": json.dumps({"items": items})})

    with pytest.raises(OwnershipError) as exc_info:
        ClusterStateStore(channel).verify_ownership()

    assert "a-node, b-node" in exc_info.value.details
    assert "c-node" not in exc_info.value.details


def test_ownership_rejects_empty_cluster():
    """Test that a cluster without nodes is never treated as managed."""
    channel = FakeChannel(responses={"kubectl get nodes -o json": json.dumps({"items": []})})

    with pytest.raises(OwnershipError):
        ClusterStateStore(channel).verify_ownership()


def test_ownership_accepts_managed_cluster():
    """Test that a fully labelled cluster passes."""
    channel = FakeChannel(responses=stored_state_responses(make_config()))

    ClusterStateStore(channel).verify_ownership()


def test_cluster_info():
    """Test that deployment metadata is collected from the record and nodes."""
    annotations = {DEPLOYED_AT: "2026-01-05T10:00:00Z", UPDATED_AT: "2026-02-01T08:00:00Z"}
    channel = FakeChannel(responses=stored_state_responses(make_config(name="lab"), annotations=annotations))

    info = ClusterStateStore(channel).cluster_info()

    assert info == {
        "cluster-name": "lab",
        "deployed-at": "2026-01-05T10:00:00Z",
        "updated-at": "2026-02-01T08:00:00Z",
        "tool-version": TOOL_VERSION,
    }


def test_update_failure_survives_cleanup_failure():
    """Test that a failing cleanup does not hide the patch error."""
    channel = FakeChannel(fail_on={"kubectl patch", "rm -f"})

    with pytest.raises(StateStoreError) as exc_info:
        ClusterStateStore(channel).update(make_config())

    assert exc_info.value.message == "Failed to update stored cluster configuration"
    assert channel.ran("rm -f /tmp/cluster-deployer-patch-")
