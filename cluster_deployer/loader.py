"""Load cluster descriptions from YAML files."""

from pathlib import Path

import yaml
from pydantic import ValidationError as PydanticValidationError

from cluster_deployer.exceptions import ConfigurationError, ValidationError
from cluster_deployer.logging_config import get_logger
from cluster_deployer.models import ClusterConfig
from cluster_deployer.validation import validate_cluster_config

logger = get_logger(__name__)


def load_cluster_config(path: str | Path, check_key_files: bool = True) -> ClusterConfig:
    """Read, default, name and validate a cluster description.

    Args:
        path: Path to the cluster YAML file
        check_key_files: Whether SSH key files must exist locally

    Returns:
        A fully populated ClusterConfig

    Raises:
        ConfigurationError: If the file cannot be read or parsed
        ValidationError: If the description violates any rule
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(
            f"Cluster file not found: {path}",
            "Pass the path of your cluster description with -f/--file",
        )

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {path}", str(e)) from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read cluster file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Cluster file {path} must contain a YAML mapping")

    try:
        config = ClusterConfig.model_validate(data)
    except PydanticValidationError as e:
        problems = []
        for error in e.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            problems.append(f"  - {field}: {error['msg']}")
        raise ValidationError(f"Invalid cluster description in {path}", "\n".join(problems)) from e

    validate_cluster_config(config, check_key_files=check_key_files)
    logger.info(
        f"Loaded cluster '{config.name}' from {path}: "
        f"{len(config.masters())} master(s), {len(config.workers())} worker(s)"
    )
    return config
