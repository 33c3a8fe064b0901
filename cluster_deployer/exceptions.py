"""Custom exceptions for cluster deployer."""


class ClusterDeployerError(Exception):
    """Base exception for all cluster deployer errors."""

    def __init__(self, message: str, details: str | None = None):
        """Initialize the exception.

        Args:
            message: Main error message
            details: Additional details or suggestions
        """
        self.message = message
        self.details = details
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message.

        Returns:
            Formatted error message with details
        """
        if self.details:
            return f"{self.message}\n\nDetails: {self.details}"
        return self.message


class ConfigurationError(ClusterDeployerError):
    """Exception raised for configuration file errors."""

    pass


class ValidationError(ClusterDeployerError):
    """Exception raised when a cluster description fails validation."""

    pass


class KubernetesError(ClusterDeployerError):
    """Exception raised for Kubernetes API errors."""

    pass


class PackageNotFoundError(ClusterDeployerError):
    """Exception raised when an offline package is missing."""

    pass


class ChannelError(ClusterDeployerError):
    """Base exception for command channel failures."""

    def __init__(self, host: str, message: str, details: str | None = None):
        self.host = host
        super().__init__(message, details)


class ChannelConnectionError(ChannelError):
    """Transport-level failure; safe to retry after reconnecting."""

    pass


class AuthenticationError(ChannelError):
    """Every connect strategy was rejected by the host."""

    pass


class UploadError(ChannelError):
    """Exception raised when a file cannot be written to a host."""

    pass


class RemoteCommandError(ChannelError):
    """A command ran but exited with a nonzero status."""

    def __init__(self, host: str, command: str, exit_status: int, stderr: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        super().__init__(
            host,
            f"Command failed on {host} (exit {exit_status}): {_shorten(command)}",
            stderr.strip() or None,
        )


class NodeOperationError(ClusterDeployerError):
    """A remote operation failed on a specific node during a named phase."""

    def __init__(self, node: str, phase: str, cause: Exception):
        self.node = node
        self.phase = phase
        self.cause = cause
        details = cause.details if isinstance(cause, ClusterDeployerError) else None
        reason = cause.message if isinstance(cause, ClusterDeployerError) else str(cause)
        super().__init__(f"[{node}] {phase} failed: {reason}", details)


class AggregateNodeError(ClusterDeployerError):
    """One or more nodes of a concurrent batch failed."""

    def __init__(self, phase: str, failures: dict[str, Exception]):
        self.phase = phase
        self.failures = failures
        names = ", ".join(sorted(failures))
        lines = [f"{name}: {_reason(err)}" for name, err in sorted(failures.items())]
        super().__init__(
            f"{phase} failed on {len(failures)} node(s): {names}",
            "\n".join(lines),
        )

    @property
    def failed_nodes(self) -> list[str]:
        return sorted(self.failures)


class UserCancelledError(ClusterDeployerError):
    """The operator declined a confirmation prompt."""

    pass


class CredentialExtractionError(ClusterDeployerError):
    """A join secret could not be parsed out of tool output."""

    pass


class PollTimeoutError(ClusterDeployerError):
    """A readiness condition was not met within its retry budget."""

    pass


class AddonError(ClusterDeployerError):
    """Exception raised when a cluster addon fails to install."""

    pass


class StateStoreError(ClusterDeployerError):
    """Exception raised when persisted cluster state cannot be read or written."""

    pass


class OwnershipError(ClusterDeployerError):
    """The cluster does not carry this tool's management marker."""

    pass


class FieldViolation:
    """A single attempted change to an immutable field."""

    def __init__(self, field: str, old: str, new: str):
        self.field = field
        self.old = old
        self.new = new

    def __repr__(self) -> str:
        return f"FieldViolation({self.field!r}, {self.old!r}, {self.new!r})"

    def __str__(self) -> str:
        return f"{self.field}: {self.old} -> {self.new}"


class ImmutableFieldViolation(ClusterDeployerError):
    """One or more immutable fields were changed."""

    def __init__(self, violations: list[FieldViolation]):
        self.violations = violations
        fields = ", ".join(v.field for v in violations)
        super().__init__(
            f"Cannot change immutable field(s): {fields}",
            "\n".join(str(v) for v in violations)
            + "\n\nThese fields cannot be changed after cluster creation; "
            "recreate the cluster to change them.",
        )

    @property
    def fields(self) -> list[str]:
        return [v.field for v in self.violations]


class ReconcileError(ClusterDeployerError):
    """Exception raised when a configuration update cannot be applied."""

    pass


def _reason(err: Exception) -> str:
    if isinstance(err, ClusterDeployerError):
        return err.message
    return str(err) or type(err).__name__


def _shorten(command: str, limit: int = 120) -> str:
    command = " ".join(command.split())
    if len(command) <= limit:
        return command
    return command[: limit - 3] + "..."
