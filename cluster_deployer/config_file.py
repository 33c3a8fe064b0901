"""In-place edits of the operator's cluster YAML file.

ruamel.yaml round-trips the file so comments, key order and quoting survive
node additions, removals and SSH key switches.
"""

import shutil
from pathlib import Path

from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError

from cluster_deployer.exceptions import ConfigurationError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import NodeDescriptor

logger = get_logger(__name__)


def node_entry(node: NodeDescriptor) -> CommentedMap:
    """Minimal YAML mapping for a node, leaving defaults out."""
    entry = CommentedMap()
    entry["role"] = node.role
    entry["ip"] = node.ip
    if node.hostname:
        entry["hostname"] = node.hostname
    if node.gpu:
        entry["gpu"] = True

    ssh = CommentedMap()
    ssh["user"] = node.ssh.user
    if node.ssh.port != 22:
        ssh["port"] = node.ssh.port
    if node.ssh.key_file:
        ssh["keyFile"] = node.ssh.key_file
    if node.ssh.password:
        ssh["password"] = node.ssh.password
    entry["ssh"] = ssh
    return entry


class ClusterFile:
    """Comment-preserving editor for a cluster description file."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.yaml = YAML()
        self.yaml.preserve_quotes = True
        self.yaml.default_flow_style = False
        self.yaml.indent(mapping=2, sequence=4, offset=2)

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".backup")

    def read(self) -> CommentedMap:
        """Parse the file for editing.

        Raises:
            ConfigurationError: If the file is missing, empty or not YAML
        """
        if not self.path.exists():
            raise ConfigurationError(f"Cluster file not found: {self.path}")
        try:
            with open(self.path) as f:
                data = self.yaml.load(f)
        except (OSError, YAMLError) as e:
            raise ConfigurationError(f"Failed to read cluster file: {self.path}", str(e)) from e

        if not isinstance(data, CommentedMap):
            raise ConfigurationError(f"Cluster file is empty or not a mapping: {self.path}")
        return data

    def write(self, data: CommentedMap) -> None:
        """Write the document back, keeping the previous file as ``<name>.backup``."""
        try:
            if self.path.exists():
                shutil.copy2(self.path, self.backup_path)
                logger.debug(f"Backed up {self.path} to {self.backup_path}")
            with open(self.path, "w") as f:
                self.yaml.dump(data, f)
        except OSError as e:
            raise ConfigurationError(f"Failed to write cluster file: {self.path}", str(e)) from e
        logger.info(f"Updated cluster file {self.path}")

    def _nodes(self, data: CommentedMap) -> CommentedSeq:
        spec = data.get("spec")
        if not isinstance(spec, dict):
            raise ConfigurationError(f"Cluster file has no 'spec' section: {self.path}")
        nodes = spec.get("nodes")
        if nodes is None:
            nodes = spec["nodes"] = CommentedSeq()
        if not isinstance(nodes, list):
            raise ConfigurationError("'spec.nodes' must be a list")
        return nodes

    def add_node(self, node: NodeDescriptor) -> None:
        data = self.read()
        nodes = self._nodes(data)
        for existing in nodes:
            if existing.get("ip") == node.ip:
                raise ConfigurationError(f"Node with IP {node.ip} is already in {self.path}")
            if node.hostname and existing.get("hostname") == node.hostname:
                raise ConfigurationError(f"Node '{node.hostname}' is already in {self.path}")
        nodes.append(node_entry(node))
        self.write(data)

    def remove_node(self, hostname: str, ip: str | None = None) -> None:
        """Remove a node by explicit hostname, falling back to its IP.

        Derived hostnames are not written in the file, so callers pass the
        node's IP as well.
        """
        data = self.read()
        nodes = self._nodes(data)
        for i, existing in enumerate(nodes):
            if existing.get("hostname") == hostname or (ip and existing.get("ip") == ip):
                del nodes[i]
                self.write(data)
                return
        raise ConfigurationError(f"Node '{hostname}' not found in {self.path}")

    def switch_to_managed_keys(self, key_file: str | Path) -> int:
        """Point every password-based node at the managed root key.

        Returns:
            Number of nodes rewritten
        """
        data = self.read()
        changed = 0
        for entry in self._nodes(data):
            ssh = entry.get("ssh")
            if not isinstance(ssh, dict) or not ssh.get("password"):
                continue
            ssh["user"] = "root"
            ssh["keyFile"] = str(key_file)
            del ssh["password"]
            changed += 1
        if changed:
            self.write(data)
        return changed
