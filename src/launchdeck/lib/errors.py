"""Custom exception hierarchy for LaunchDeck configuration and operations."""


class LaunchDeckError(Exception):
    """Base exception for all LaunchDeck errors.

    All LaunchDeck-specific exceptions inherit from this class, enabling
    centralized exception handling in the CLI.
    """

    pass


class ConfigError(LaunchDeckError):
    """Raised when a deployment config file cannot be read, parsed or validated.

    Attributes:
        field: Config key (or pseudo-key such as ``yaml_parse``) at fault
        message: What is wrong and, where possible, how to fix it
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class AuthError(LaunchDeckError):
    """Exception raised when a provider cannot be reached or authenticated.

    Attributes:
        provider: Provider identifier (e.g. "aws-cluster")
        message: Human-readable error message with resolution guidance
    """

    def __init__(self, provider: str, message: str) -> None:
        """Initialize AuthError with provider and message."""
        self.provider = provider
        self.message = message
        super().__init__(f"Authentication failed for {provider}: {message}")


class ProvisionError(LaunchDeckError):
    """Exception raised when creating a support resource fails.

    Resources created before the failing step are left in place so that
    the operator can inspect them or simply re-run setup.

    Attributes:
        resource: Derived name of the resource being created
        message: Human-readable error message
    """

    def __init__(self, resource: str, message: str) -> None:
        """Initialize ProvisionError with resource and message."""
        self.resource = resource
        self.message = message
        super().__init__(f"Failed to provision '{resource}': {message}")


class BuildError(LaunchDeckError):
    """Exception raised when an image build, login or push fails.

    Attributes:
        stage: Pipeline stage that failed (build, login, push, patch)
        message: Human-readable error message
    """

    def __init__(self, stage: str, message: str) -> None:
        """Initialize BuildError with stage and message."""
        self.stage = stage
        self.message = message
        super().__init__(f"Image {stage} failed: {message}")


class DestroyStepError(LaunchDeckError):
    """Exception recorded when a single destroy step fails.

    Never propagated out of destroy; collected into the destroy report.

    Attributes:
        step: Name of the destroy step
        message: Human-readable error message
    """

    def __init__(self, step: str, message: str) -> None:
        """Initialize DestroyStepError with step and message."""
        self.step = step
        self.message = message
        super().__init__(f"Destroy step '{step}' failed: {message}")


class CommandError(LaunchDeckError):
    """Exception raised when an external command exits with a non-zero status.

    Attributes:
        command: The command line that was executed
        returncode: Process exit status (127 when the executable is missing)
        output: Captured output, empty when output was streamed
    """

    def __init__(self, command: str, returncode: int, output: str = "") -> None:
        """Initialize CommandError with command details."""
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"Command '{command}' exited with status {returncode}"
        if output:
            message += f"\n{output.strip()}"
        super().__init__(message)


class DeploymentError(LaunchDeckError):
    """Exception raised when a lifecycle operation fails.

    Attributes:
        operation: Lifecycle operation that failed (deploy, logs, ...)
        message: Human-readable error message
    """

    def __init__(self, operation: str, message: str) -> None:
        """Initialize DeploymentError with operation and message."""
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class CloudSDKNotInstalledError(LaunchDeckError):
    """Exception raised when a provider SDK extra is not installed."""

    def __init__(self, provider: str, sdk_name: str) -> None:
        """Create an error pointing at the missing install extra."""
        self.provider = provider
        self.sdk_name = sdk_name
        self.message = (
            f"The {sdk_name} package is required for {provider} deployments.\n"
            f"Install it with: pip install 'launchdeck[{provider.split('-')[0]}]'"
        )
        super().__init__(self.message)


class DockerNotAvailableError(LaunchDeckError):
    """Exception raised when the Docker daemon cannot be reached."""

    def __init__(self, operation: str) -> None:
        """Create an error for the operation that needed Docker."""
        self.operation = operation
        self.message = (
            "Docker is not available. Ensure the Docker daemon is running "
            "and that the current user can access it."
        )
        super().__init__(f"{operation}: {self.message}")


class LogSinkNotFoundError(LaunchDeckError):
    """Exception raised by log fetchers when the log sink does not exist yet."""

    def __init__(self, sink: str) -> None:
        """Create an error naming the missing log sink."""
        self.sink = sink
        super().__init__(f"Log sink not found: {sink}")
