"""GCP Cloud Run deployer implementation."""

from __future__ import annotations

import concurrent.futures
import json
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from launchdeck.config.env_loader import load_environment_file
from launchdeck.deploy.builder import (
    ContainerBuilder,
    ImagePipeline,
    RegistryCredentials,
    get_oci_labels,
)
from launchdeck.deploy.deployers.base import BaseDeployer
from launchdeck.deploy.log_format import CONTAINER_RULES, make_formatter
from launchdeck.deploy.logs import (
    CancellationToken,
    FetchPage,
    LogEvent,
    LogPage,
    LogTailer,
)
from launchdeck.deploy.runner import Runner, find_project_root
from launchdeck.deploy.teardown import run_teardown
from launchdeck.lib.errors import (
    AuthError,
    BuildError,
    CloudSDKNotInstalledError,
    CommandError,
    DeploymentError,
    LogSinkNotFoundError,
    ProvisionError,
)
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    DeployResult,
    DestroyReport,
    GcpRunConfig,
    ImageArtifact,
    Provider,
)

logger = get_logger(__name__)

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
REQUIRED_SERVICES = (
    "artifactregistry.googleapis.com",
    "run.googleapis.com",
    "logging.googleapis.com",
)
INVOKER_ROLE = "roles/run.invoker"
PUBLIC_MEMBER = "allUsers"
OPERATION_TIMEOUT_SECONDS = 600
REGISTRY_USERNAME = "oauth2accesstoken"


class GcpRunDeployer(BaseDeployer):
    """Deploy a container image to GCP Cloud Run."""

    provider = Provider.GCP_RUN

    def __init__(
        self,
        config: GcpRunConfig,
        *,
        runner: Runner | None = None,
        builder: ContainerBuilder | None = None,
    ) -> None:
        """Initialize Cloud Run deployer with application default credentials.

        Args:
            config: Resolved Cloud Run configuration
            runner: Process runner for the gcloud CLI
            builder: Optional container builder (connects to Docker on deploy if None)

        Raises:
            CloudSDKNotInstalledError: If Google Cloud client libraries are missing
            AuthError: If application default credentials are unavailable
        """
        try:
            import google.auth
            from google.api_core import exceptions as google_exceptions
            from google.auth.exceptions import DefaultCredentialsError, GoogleAuthError
            from google.auth.transport.requests import Request
            from google.cloud import artifactregistry_v1, run_v2
            from google.cloud import logging as cloud_logging
            from google.iam.v1 import policy_pb2
        except ImportError as exc:
            raise CloudSDKNotInstalledError(
                provider="gcp", sdk_name="google-cloud-run"
            ) from exc

        self._config = config
        self._runner = runner or Runner(
            find_project_root(Path(config.dockerfile_path).parent)
        )
        self._builder = builder
        self._NotFound: type[Exception] = google_exceptions.NotFound
        self._GoogleAPIError: type[Exception] = google_exceptions.GoogleAPIError
        self._Request = Request
        self._GoogleAuthError: type[Exception] = GoogleAuthError
        self._run: Any = run_v2
        self._artifacts: Any = artifactregistry_v1
        self._policy_pb2: Any = policy_pb2
        self._ascending: str = cloud_logging.ASCENDING

        try:
            credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
        except DefaultCredentialsError as exc:
            raise AuthError(
                self.provider.value,
                f"{exc}. Run 'gcloud auth application-default login'.",
            ) from exc
        if hasattr(credentials, "with_quota_project"):
            credentials = credentials.with_quota_project(config.project_id)
        self._credentials = credentials

        self._services = run_v2.ServicesClient(credentials=credentials)
        self._registry = artifactregistry_v1.ArtifactRegistryClient(
            credentials=credentials
        )
        self._logging = cloud_logging.Client(
            project=config.project_id, credentials=credentials
        )

    @property
    def _location(self) -> str:
        return f"projects/{self._config.project_id}/locations/{self._config.region}"

    @property
    def _service_path(self) -> str:
        return f"{self._location}/services/{self._config.service_id}"

    @property
    def _repository_path(self) -> str:
        return f"{self._location}/repositories/{self._config.artifact_repository}"

    # setup

    def setup(self) -> None:
        """Enable required APIs and create the Artifact Registry repository."""
        config = self._config
        logger.info(f"Setting up Cloud Run resources for '{config.service_name}'")
        self._enable_services()
        self._ensure_repository()
        logger.info("Setup complete")

    def _enable_services(self) -> None:
        try:
            self._runner.run(
                [
                    "gcloud",
                    "services",
                    "enable",
                    *REQUIRED_SERVICES,
                    "--project",
                    self._config.project_id,
                ],
                capture=True,
            )
            logger.info("Required Google Cloud APIs are enabled")
        except CommandError as e:
            logger.warning(
                f"Could not enable APIs via gcloud ({e}); "
                "continuing on the assumption they are already enabled"
            )

    def _ensure_repository(self) -> None:
        name = self._config.artifact_repository
        try:
            self._registry.get_repository(name=self._repository_path)
            logger.info(f"Artifact Registry repository {name} already exists, skipping")
            return
        except self._NotFound:
            pass
        except self._GoogleAPIError as e:
            raise ProvisionError(name, str(e)) from e

        repository = self._artifacts.Repository(
            format_=self._artifacts.Repository.Format.DOCKER,
            description=(
                f"Images for {self._config.service_name} (managed by launchdeck)"
            ),
        )
        try:
            self._registry.create_repository(
                parent=self._location, repository_id=name, repository=repository
            ).result(timeout=OPERATION_TIMEOUT_SECONDS)
        except self._GoogleAPIError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created Artifact Registry repository {name}")

    # deploy

    def deploy(self) -> DeployResult:
        """Publish the image and create or update the Cloud Run service."""
        config = self._config
        artifact = ImageArtifact(
            registry=config.registry_host,
            repository=(
                f"{config.project_id}/{config.artifact_repository}/"
                f"{config.repository_name}"
            ),
        )

        builder = self._builder or ContainerBuilder()
        pipeline = ImagePipeline(
            builder, find_project_root(Path(config.dockerfile_path).parent)
        )
        pipeline.publish(
            dockerfile=config.dockerfile_path,
            artifact=artifact,
            credentials=self._registry_credentials(),
            labels=get_oci_labels(config.service_name, self.provider.value),
        )

        try:
            service, stable = self._create_or_update_service(artifact.uri)
            if config.allow_unauthenticated:
                self._allow_public_access()
        except self._GoogleAPIError as e:
            raise DeploymentError(
                operation="deploy",
                message=f"Cloud Run service {config.service_id}: {e}",
            ) from e

        return DeployResult(
            provider=self.provider,
            service_name=config.service_name,
            compute_name=config.service_id,
            image_uri=artifact.uri,
            url=service.uri or None,
            health_check_path=config.health_check_path,
            stable=stable,
        )

    def _registry_credentials(self) -> RegistryCredentials:
        try:
            self._credentials.refresh(self._Request())
        except self._GoogleAuthError as e:
            raise BuildError("login", f"Could not refresh access token: {e}") from e
        return RegistryCredentials(
            registry=self._config.registry_host,
            username=REGISTRY_USERNAME,
            password=self._credentials.token,
        )

    def _environment(self) -> dict[str, str]:
        env = load_environment_file(self._config.environment_file)
        env.update(self._config.environment_variables)
        return env

    def _service(self, image_uri: str) -> Any:
        config = self._config
        run = self._run
        container = run.Container(
            image=image_uri,
            ports=[run.ContainerPort(container_port=config.container_port)],
            resources=run.ResourceRequirements(
                limits={"cpu": config.cpu, "memory": config.memory}
            ),
            env=[
                run.EnvVar(name=key, value=value)
                for key, value in self._environment().items()
            ],
            liveness_probe=run.Probe(
                http_get=run.HTTPGetAction(path=config.health_check_path)
            ),
        )
        latest = run.TrafficTargetAllocationType.TRAFFIC_TARGET_ALLOCATION_TYPE_LATEST
        return run.Service(
            template=run.RevisionTemplate(
                containers=[container],
                scaling=run.RevisionScaling(
                    min_instance_count=config.min_instances,
                    max_instance_count=config.max_instances,
                ),
                timeout=timedelta(seconds=config.timeout_seconds),
            ),
            ingress=run.IngressTraffic.INGRESS_TRAFFIC_ALL,
            traffic=[run.TrafficTarget(type_=latest, percent=100)],
        )

    def _create_or_update_service(self, image_uri: str) -> tuple[Any, bool]:
        config = self._config
        service = self._service(image_uri)
        try:
            self._services.get_service(name=self._service_path)
        except self._NotFound:
            logger.info(f"Creating Cloud Run service {config.service_id}")
            operation = self._services.create_service(
                parent=self._location, service=service, service_id=config.service_id
            )
        else:
            logger.info(f"Updating Cloud Run service {config.service_id}")
            service.name = self._service_path
            operation = self._services.update_service(service=service)

        stable = True
        try:
            operation.result(timeout=OPERATION_TIMEOUT_SECONDS)
        except concurrent.futures.TimeoutError:
            logger.warning(
                f"Cloud Run did not report the revision ready within "
                f"{OPERATION_TIMEOUT_SECONDS}s; it is likely still rolling out"
            )
            stable = False
        return self._services.get_service(name=self._service_path), stable

    def _allow_public_access(self) -> None:
        try:
            policy = self._services.get_iam_policy(
                request={"resource": self._service_path}
            )
            for binding in policy.bindings:
                if binding.role == INVOKER_ROLE and PUBLIC_MEMBER in binding.members:
                    logger.info("Unauthenticated access already allowed")
                    return
            policy.bindings.append(
                self._policy_pb2.Binding(role=INVOKER_ROLE, members=[PUBLIC_MEMBER])
            )
            self._services.set_iam_policy(
                request={"resource": self._service_path, "policy": policy}
            )
            logger.info("Allowed unauthenticated access")
        except self._GoogleAPIError as e:
            logger.warning(
                f"Could not allow unauthenticated access ({e}); grant "
                f"{INVOKER_ROLE} to {PUBLIC_MEMBER} manually if needed"
            )

    # destroy

    def destroy(self) -> DestroyReport:
        """Delete the Cloud Run service, then the image repository."""
        config = self._config

        def delete_service() -> bool:
            self._services.delete_service(name=self._service_path).result(
                timeout=OPERATION_TIMEOUT_SECONDS
            )
            return True

        def delete_repository() -> bool:
            self._registry.delete_repository(name=self._repository_path).result(
                timeout=OPERATION_TIMEOUT_SECONDS
            )
            return True

        steps: list[tuple[str, Callable[[], bool]]] = [
            (f"Cloud Run service {config.service_id}", delete_service),
            (
                f"Artifact Registry repository {config.artifact_repository}",
                delete_repository,
            ),
        ]
        return run_teardown(
            self.provider,
            config.service_name,
            steps,
            lambda e: isinstance(e, self._NotFound),
        )

    # logs

    def show_logs(
        self, token: CancellationToken, emit: Callable[[str], None]
    ) -> None:
        """Tail the service's Cloud Logging entries."""
        tailer = LogTailer(self._log_fetcher(), make_formatter(CONTAINER_RULES), emit)
        tailer.run(token)

    def _log_filter(self, since: int) -> str:
        start = datetime.fromtimestamp(since / 1000, tz=timezone.utc)
        return (
            'resource.type="cloud_run_revision" AND '
            f'resource.labels.service_name="{self._config.service_id}" AND '
            f'timestamp>="{start.isoformat()}"'
        )

    def _log_fetcher(self) -> FetchPage:
        # A page token is only valid together with the filter that produced it
        filters_by_token: dict[str, str] = {}

        def fetch(since: int, page_token: str | None, page_size: int) -> LogPage:
            log_filter = filters_by_token.pop(page_token, None) if page_token else None
            if log_filter is None:
                log_filter = self._log_filter(since)
                page_token = None
            try:
                iterator = self._logging.list_entries(
                    resource_names=[f"projects/{self._config.project_id}"],
                    filter_=log_filter,
                    order_by=self._ascending,
                    page_size=page_size,
                    page_token=page_token,
                )
                page = next(iterator.pages, None)
                entries = list(page) if page is not None else []
            except self._NotFound as e:
                raise LogSinkNotFoundError(self._config.service_id) from e

            events = [
                LogEvent(
                    timestamp=int(entry.timestamp.timestamp() * 1000),
                    message=_payload_text(entry.payload),
                    stream=getattr(entry, "log_name", None),
                )
                for entry in entries
                if entry.timestamp is not None
            ]
            next_token = iterator.next_page_token
            if next_token:
                filters_by_token[next_token] = log_filter
            return LogPage(events=events, next_token=next_token)

        return fetch


def _payload_text(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, dict):
        message = payload.get("message")
        return str(message) if message is not None else json.dumps(payload)
    return str(payload)
