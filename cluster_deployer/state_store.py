"""Cluster state persisted inside the cluster itself.

After a successful bootstrap the sanitized cluster description is stored in a
ConfigMap, registry credentials in a separate Secret, and every node is
labelled as managed by this tool. Later ``update`` runs read it back.
"""

import base64
import binascii
import json
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

import yaml
from pydantic import ValidationError as PydanticValidationError

from cluster_deployer import __version__
from cluster_deployer.channel import CommandChannel
from cluster_deployer.exceptions import OwnershipError, RemoteCommandError, StateStoreError
from cluster_deployer.kubectl import apply_manifests, remove_temp_file
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig

logger = get_logger(__name__)

LABEL_PREFIX = "cluster-deployer.io"
MANAGED_LABEL = f"{LABEL_PREFIX}/managed"
VERSION_LABEL = f"{LABEL_PREFIX}/version"
DEPLOYED_AT = f"{LABEL_PREFIX}/deployed-at"
DEPLOYED_BY = f"{LABEL_PREFIX}/deployed-by"
UPDATED_AT = f"{LABEL_PREFIX}/updated-at"
CREATED_AT = f"{LABEL_PREFIX}/created-at"

CONFIGMAP_NAME = "cluster-deployer-config"
SECRET_NAME = "cluster-deployer-secret"
NAMESPACE = "kube-system"
TOOL_NAME = "cluster-deployer"
TOOL_VERSION = f"v{__version__}"
DATA_KEY = "cluster.yaml"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def _labels(config: ClusterConfig) -> dict[str, str]:
    return {
        "app": TOOL_NAME,
        "cluster": config.name,
        MANAGED_LABEL: "true",
        VERSION_LABEL: TOOL_VERSION,
    }


def build_configmap(config: ClusterConfig, now: datetime) -> dict:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {
            "name": CONFIGMAP_NAME,
            "namespace": NAMESPACE,
            "labels": _labels(config),
            "annotations": {
                DEPLOYED_AT: _timestamp(now),
                DEPLOYED_BY: TOOL_NAME,
            },
        },
        "data": {DATA_KEY: config.sanitized().to_yaml()},
    }


def build_secret(config: ClusterConfig, now: datetime) -> dict | None:
    """Secret holding registry credentials, or None when there are none."""
    harbor = config.spec.harbor
    if not harbor.username and not harbor.password:
        return None
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "type": "Opaque",
        "metadata": {
            "name": SECRET_NAME,
            "namespace": NAMESPACE,
            "labels": _labels(config),
            "annotations": {CREATED_AT: _timestamp(now)},
        },
        "stringData": {
            "harbor-username": harbor.username,
            "harbor-password": harbor.password,
        },
    }


class ClusterStateStore:
    """Read and write the cluster-resident deployment record through kubectl."""

    def __init__(self, channel: CommandChannel, clock: Callable[[], datetime] = _utc_now):
        self.channel = channel
        self.clock = clock

    def label_nodes(self, config: ClusterConfig) -> None:
        for node in config.spec.nodes:
            self.channel.execute(
                f"kubectl label node {node.hostname} "
                f"{MANAGED_LABEL}=true {VERSION_LABEL}={TOOL_VERSION} --overwrite"
            )

    def label_node(self, hostname: str) -> None:
        self.channel.execute(
            f"kubectl label node {hostname} {MANAGED_LABEL}=true {VERSION_LABEL}={TOOL_VERSION} --overwrite"
        )

    def save(self, config: ClusterConfig) -> None:
        """Label nodes and persist the description.

        Node labels and the Secret are best-effort; the ConfigMap is required.

        Raises:
            StateStoreError: If the ConfigMap cannot be written
        """
        try:
            self.label_nodes(config)
        except RemoteCommandError as e:
            logger.warning(f"Could not label every node as managed: {e.message}")

        now = self.clock()
        try:
            apply_manifests(self.channel, [build_configmap(config, now)], "cluster-deployer-config")
        except RemoteCommandError as e:
            raise StateStoreError("Failed to save cluster configuration", e.message) from e

        secret = build_secret(config, now)
        if secret is not None:
            try:
                apply_manifests(self.channel, [secret], "cluster-deployer-secret")
            except RemoteCommandError as e:
                logger.warning(f"Could not save registry credentials: {e.message}")

    def _get_json(self, args: str) -> dict:
        return json.loads(self.channel.execute(f"kubectl get {args} -o json"))

    def load(self) -> ClusterConfig:
        """Read the last applied description, overlaying registry credentials if present.

        Raises:
            StateStoreError: If the ConfigMap is missing or unreadable
        """
        try:
            configmap = self._get_json(f"configmap {CONFIGMAP_NAME} -n {NAMESPACE}")
            raw = configmap.get("data", {})[DATA_KEY]
            config = ClusterConfig.model_validate(yaml.safe_load(raw))
        except RemoteCommandError as e:
            raise StateStoreError(
                "Cannot read the stored cluster configuration",
                f"{e.message}\nThis cluster may not have been deployed by {TOOL_NAME}",
            ) from e
        except (KeyError, ValueError, yaml.YAMLError, PydanticValidationError) as e:
            raise StateStoreError("Stored cluster configuration is corrupt", str(e)) from e

        self._overlay_secret(config)
        return config

    def _overlay_secret(self, config: ClusterConfig) -> None:
        try:
            secret = self._get_json(f"secret {SECRET_NAME} -n {NAMESPACE}")
        except (RemoteCommandError, ValueError):
            logger.debug("No registry credential secret found")
            return

        data = secret.get("data") or {}
        try:
            username = base64.b64decode(data.get("harbor-username", "")).decode()
            password = base64.b64decode(data.get("harbor-password", "")).decode()
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(f"Ignoring unreadable registry credential secret: {e}")
            return
        if username:
            config.spec.harbor.username = username
        if password:
            config.spec.harbor.password = password

    def update(self, config: ClusterConfig) -> None:
        """Merge-patch the stored description and stamp the update time."""
        patch = {
            "data": {DATA_KEY: config.sanitized().to_yaml()},
            "metadata": {"annotations": {UPDATED_AT: _timestamp(self.clock())}},
        }
        path = f"/tmp/cluster-deployer-patch-{uuid.uuid4().hex[:8]}.json"
        self.channel.upload(json.dumps(patch).encode(), path, 0o600)
        try:
            self.channel.execute(
                f"kubectl patch configmap {CONFIGMAP_NAME} -n {NAMESPACE} "
                f"--type=merge --patch-file={path}"
            )
        except RemoteCommandError as e:
            raise StateStoreError("Failed to update stored cluster configuration", e.message) from e
        finally:
            remove_temp_file(self.channel, path)

    def verify_ownership(self) -> None:
        """Require every node to carry the management label.

        Raises:
            OwnershipError: If any node is unlabelled or there are no nodes
        """
        try:
            nodes = self._get_json("nodes").get("items", [])
        except (RemoteCommandError, ValueError) as e:
            raise OwnershipError("Cannot list cluster nodes to check ownership", str(e)) from e

        if not nodes:
            raise OwnershipError("Cluster has no nodes; refusing to treat it as managed")

        unmarked = sorted(
            node["metadata"]["name"]
            for node in nodes
            if (node["metadata"].get("labels") or {}).get(MANAGED_LABEL) != "true"
        )
        if unmarked:
            raise OwnershipError(
                f"Cluster is not managed by {TOOL_NAME}",
                f"Nodes missing label {MANAGED_LABEL}=true: {', '.join(unmarked)}\n"
                f"Only clusters created by {TOOL_NAME} can be updated",
            )

    def cluster_info(self) -> dict[str, str]:
        """Deployment metadata: deployed-at, updated-at, tool-version and cluster-name."""
        info: dict[str, str] = {}
        try:
            configmap = self._get_json(f"configmap {CONFIGMAP_NAME} -n {NAMESPACE}")
        except (RemoteCommandError, ValueError) as e:
            raise StateStoreError("No deployment record found in this cluster", str(e)) from e

        metadata = configmap.get("metadata", {})
        annotations = metadata.get("annotations") or {}
        labels = metadata.get("labels") or {}
        info["cluster-name"] = labels.get("cluster", "")
        info["deployed-at"] = annotations.get(DEPLOYED_AT, "")
        if annotations.get(UPDATED_AT):
            info["updated-at"] = annotations[UPDATED_AT]

        try:
            nodes = self._get_json(f"nodes -l {MANAGED_LABEL}=true").get("items", [])
        except (RemoteCommandError, ValueError):
            nodes = []
        if nodes:
            info["tool-version"] = (nodes[0]["metadata"].get("labels") or {}).get(VERSION_LABEL, "")
        return info
