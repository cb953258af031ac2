"""Container image build and publish pipeline.

Images are built with the Docker SDK for a fixed target platform, then
pushed to the provider registry after logging in with short-lived
registry credentials. The classic build API used here never attaches
provenance attestations, so the pushed manifest is a plain single-platform
image that every provider runtime accepts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import docker
from docker.errors import APIError, DockerException
from docker.errors import BuildError as DockerBuildError

from launchdeck.lib.errors import BuildError, DockerNotAvailableError
from launchdeck.lib.logging_config import get_logger

if TYPE_CHECKING:
    from docker import DockerClient

    from launchdeck.models.deployment import ImageArtifact

logger = get_logger(__name__)

TARGET_PLATFORM = "linux/amd64"


@dataclass
class BuildResult:
    """Result of a container image build operation.

    Attributes:
        image_id: The SHA256 ID of the built image
        image_uri: Full image reference (registry/repository:tag)
        log_lines: Build log output lines
    """

    image_id: str
    image_uri: str
    log_lines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RegistryCredentials:
    """Credentials for a registry login.

    Attributes:
        registry: Registry host
        username: Registry user name
        password: Registry password or access token
    """

    registry: str
    username: str
    password: str = field(repr=False)


def get_oci_labels(service_name: str, provider: str) -> dict[str, str]:
    """Generate OCI-compliant container image labels.

    Args:
        service_name: Configured service name, used as image title
        provider: Deployment target the image is built for

    Returns:
        Dictionary of OCI labels
    """
    return {
        "org.opencontainers.image.title": service_name,
        "org.opencontainers.image.created": datetime.now(timezone.utc).isoformat(),
        "com.launchdeck.managed": "true",
        "com.launchdeck.provider": provider,
    }


def _collect_log_lines(entries: Any) -> list[str]:
    """Extract text lines from a Docker SDK build or push stream."""
    log_lines: list[str] = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        if "stream" in entry and isinstance(entry["stream"], str):
            line = entry["stream"].rstrip("\n")
            if line:
                log_lines.append(line)
        elif "status" in entry:
            progress = entry.get("id")
            status = entry["status"]
            log_lines.append(f"{progress}: {status}" if progress else status)
        elif "error" in entry:
            log_lines.append(f"ERROR: {entry['error']}")
    return log_lines


class ContainerBuilder:
    """Thin wrapper around the Docker SDK for build, login and push.

    Example:
        >>> builder = ContainerBuilder()
        >>> result = builder.build(
        ...     build_context="/work/todo",
        ...     dockerfile="/work/todo/Dockerfile",
        ...     image_uri="123456789012.dkr.ecr.us-east-1.amazonaws.com/todo:latest",
        ... )
    """

    def __init__(self, client: DockerClient | None = None) -> None:
        """Initialize the container builder.

        Args:
            client: Pre-built Docker client, connects via the environment if None

        Raises:
            DockerNotAvailableError: If Docker daemon is not available
        """
        if client is not None:
            self.client = client
            return
        try:
            self.client = docker.from_env()  # type: ignore[attr-defined]
        except DockerException as e:
            raise DockerNotAvailableError(operation="build") from e

    def build(
        self,
        build_context: str | Path,
        dockerfile: str | Path,
        image_uri: str,
        labels: dict[str, str] | None = None,
        platform: str = TARGET_PLATFORM,
    ) -> BuildResult:
        """Build a container image.

        Args:
            build_context: Path to the build context directory
            dockerfile: Dockerfile path, absolute or relative to the context
            image_uri: Full image reference to tag the result with
            labels: Optional OCI labels to apply
            platform: Target platform for the image

        Returns:
            BuildResult with image details and build logs

        Raises:
            BuildError: If the context or Dockerfile is missing or the build fails
        """
        context_path = Path(build_context)
        if not context_path.is_dir():
            raise BuildError("build", f"Build context not found: {build_context}")

        dockerfile_path = Path(dockerfile)
        if not dockerfile_path.is_absolute():
            dockerfile_path = context_path / dockerfile_path
        if not dockerfile_path.is_file():
            raise BuildError("build", f"Dockerfile not found: {dockerfile_path}")

        logger.info(f"Building {image_uri} for {platform}")
        try:
            image, build_logs = self.client.images.build(
                path=str(context_path),
                dockerfile=str(dockerfile_path),
                tag=image_uri,
                labels=labels or {},
                rm=True,  # Remove intermediate containers
                platform=platform,
                pull=True,  # Always pull base image to get correct platform
            )
        except DockerBuildError as e:
            raise BuildError("build", f"Docker build failed: {e.msg}") from e
        except DockerException as e:
            raise BuildError("build", f"Docker error during build: {e}") from e

        log_lines = _collect_log_lines(build_logs)
        for line in log_lines:
            logger.debug(line)

        return BuildResult(
            image_id=image.id or "", image_uri=image_uri, log_lines=log_lines
        )

    def login(self, credentials: RegistryCredentials) -> None:
        """Authenticate the Docker client against a registry.

        Raises:
            BuildError: If the registry rejects the credentials
        """
        logger.info(f"Logging in to {credentials.registry}")
        try:
            self.client.login(
                username=credentials.username,
                password=credentials.password,
                registry=credentials.registry,
                reauth=True,
            )
        except APIError as e:
            raise BuildError(
                "login", f"Registry login to {credentials.registry} failed: {e}"
            ) from e

    def push(
        self, artifact: ImageArtifact, credentials: RegistryCredentials | None = None
    ) -> list[str]:
        """Push a tagged image.

        Returns:
            Push progress lines

        Raises:
            BuildError: If the daemon reports any error while pushing
        """
        auth_config = None
        if credentials is not None:
            auth_config = {
                "username": credentials.username,
                "password": credentials.password,
            }

        logger.info(f"Pushing {artifact.uri}")
        try:
            stream = self.client.images.push(
                artifact.name,
                tag=artifact.tag,
                stream=True,
                decode=True,
                auth_config=auth_config,
            )
            entries = list(stream)
        except DockerException as e:
            raise BuildError("push", f"Docker error during push: {e}") from e

        for entry in entries:
            if isinstance(entry, dict) and "error" in entry:
                raise BuildError(
                    "push", f"Push of {artifact.uri} failed: {entry['error']}"
                )

        return _collect_log_lines(entries)


class ImagePipeline:
    """Build, log in and push one image, with no retries.

    Any failure raises BuildError before the caller touches the compute
    definition, so the previously deployed revision keeps serving.
    """

    def __init__(self, builder: ContainerBuilder, build_context: str | Path) -> None:
        self.builder = builder
        self.build_context = Path(build_context)

    def publish(
        self,
        *,
        dockerfile: str | Path,
        artifact: ImageArtifact,
        credentials: RegistryCredentials,
        labels: dict[str, str] | None = None,
    ) -> ImageArtifact:
        """Build the image, authenticate against its registry and push it.

        Args:
            dockerfile: Dockerfile to build
            artifact: Target image reference
            credentials: Registry credentials
            labels: Optional OCI labels

        Returns:
            The pushed artifact

        Raises:
            BuildError: If any stage fails
        """
        self.builder.build(
            build_context=self.build_context,
            dockerfile=dockerfile,
            image_uri=artifact.uri,
            labels=labels,
        )
        self.builder.login(credentials)
        self.builder.push(artifact, credentials)
        logger.info(f"Published {artifact.uri}")
        return artifact
