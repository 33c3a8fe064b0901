"""Runtime settings for the deployer itself (not the cluster description)."""

import os
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "CLUSTER_DEPLOYER_"


class DeployerSettings(BaseModel):
    """Tunables shared by every command.

    Each field can be overridden with an environment variable named
    ``CLUSTER_DEPLOYER_<FIELD>`` (for example ``CLUSTER_DEPLOYER_PACKAGE_DIR``).
    """

    package_dir: Path = Field(default_factory=lambda: Path.cwd() / "packages")
    managed_key_file: Path = Field(default_factory=lambda: Path.home() / ".ssh" / "id_rsa")
    connect_timeout: float = 30.0
    command_retries: int = 3
    retry_backoff: float = 2.0
    poll_interval: float = 5.0
    cilium_ready_attempts: int = 60
    gateway_attempts: int = 12
    token_ttl: str = "24h"
    rollout_timeout: str = "180s"

    @field_validator("command_retries", "cilium_ready_attempts", "gateway_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("connect_timeout", "retry_backoff", "poll_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "DeployerSettings":
        """Build settings from defaults overlaid with environment variables."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if value:
                overrides[name] = value
        return cls(**overrides)
