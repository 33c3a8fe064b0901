"""Data models for cluster nodes and their SSH access."""

import ipaddress

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

ROLE_MASTER = "master"
ROLE_WORKER = "worker"


class CamelModel(BaseModel):
    """Base model mapping snake_case attributes to camelCase YAML keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SSHCredential(CamelModel):
    """How to reach a node over SSH."""

    user: str = "root"
    port: int = 22
    key_file: str = ""
    password: str = ""

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate port is a usable TCP port."""
        if not 1 <= v <= 65535:
            raise ValueError(f"port must be between 1 and 65535, got {v}")
        return v

    @property
    def uses_password(self) -> bool:
        return bool(self.password)


class NodeDescriptor(CamelModel):
    """A single machine in the cluster description."""

    role: str
    ip: str
    hostname: str = ""
    gpu: bool = False
    ssh: SSHCredential = Field(default_factory=SSHCredential)

    @field_validator("role")
    @classmethod
    def validate_role(cls, v: str) -> str:
        """Validate role is either master or worker."""
        allowed_roles = [ROLE_MASTER, ROLE_WORKER]
        if v not in allowed_roles:
            raise ValueError(f"role must be one of {allowed_roles}, got '{v}'")
        return v

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v: str) -> str:
        """Validate ip is a literal address."""
        try:
            ipaddress.ip_address(v)
        except ValueError:
            raise ValueError(f"'{v}' is not a valid IP address") from None
        return v

    @property
    def is_master(self) -> bool:
        return self.role == ROLE_MASTER

    @property
    def name(self) -> str:
        """Display name used in logs and error messages."""
        return self.hostname or self.ip

    def hostname_prefix(self) -> str:
        """Role tag used when deriving a hostname."""
        if self.is_master:
            return "master"
        return "gpu-node" if self.gpu else "node"
