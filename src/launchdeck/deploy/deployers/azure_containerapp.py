"""Azure Container Apps deployer implementation."""

from __future__ import annotations

import json
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

from launchdeck.config.env_loader import load_environment_file
from launchdeck.deploy.builder import (
    ContainerBuilder,
    ImagePipeline,
    RegistryCredentials,
    get_oci_labels,
)
from launchdeck.deploy.deployers.base import BaseDeployer
from launchdeck.deploy.log_format import CONTAINER_RULES, make_formatter
from launchdeck.deploy.logs import CancellationToken, LogEvent, LogPage, LogTailer
from launchdeck.deploy.runner import Runner, find_project_root
from launchdeck.deploy.teardown import run_teardown
from launchdeck.lib.errors import (
    AuthError,
    CloudSDKNotInstalledError,
    CommandError,
    DeploymentError,
    LogSinkNotFoundError,
    ProvisionError,
)
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    AzureContainerAppConfig,
    DeployResult,
    DestroyReport,
    ImageArtifact,
    Provider,
)

if TYPE_CHECKING:
    from azure.mgmt.appcontainers import ContainerAppsAPIClient
    from azure.mgmt.containerregistry import ContainerRegistryManagementClient
    from azure.mgmt.loganalytics import LogAnalyticsManagementClient
    from azure.mgmt.resource import ResourceManagementClient

    from launchdeck.deploy.logs import FetchPage

logger = get_logger(__name__)

RESOURCE_PROVIDERS = (
    "Microsoft.App",
    "Microsoft.OperationalInsights",
    "Microsoft.ContainerRegistry",
)
MANAGEMENT_SCOPE = "https://management.azure.com/.default"
REGISTRY_PASSWORD_SECRET = "registry-password"
SCALE_RULE_NAME = "default-scale-rule"
CONCURRENT_REQUESTS = "10"
DEPLOY_TIMEOUT_SECONDS = 600

# Log Analytics has no continuation token; a full page means "poll again now"
BACKLOG_TOKEN = "backlog"
CONSOLE_LOG_TABLE = "ContainerAppConsoleLogs_CL"
MISSING_TABLE_MARKERS = ("Failed to resolve table", "PathNotFoundError")


def _parse_time_generated(value: str) -> int:
    """Convert a Log Analytics ISO-8601 timestamp to epoch milliseconds."""
    text = value.replace("Z", "+00:00")
    # Log Analytics emits up to 7 fractional digits; fromisoformat wants 6
    if "." in text:
        head, _, tail = text.partition(".")
        digits = "".join(c for c in tail if c.isdigit())
        zone = tail[len(digits):]
        text = f"{head}.{digits[:6].ljust(6, '0')}{zone}"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp() * 1000)


def _kql_datetime(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class AzureContainerAppDeployer(BaseDeployer):
    """Deploy a container image to Azure Container Apps."""

    provider = Provider.AZURE_CONTAINERAPP

    def __init__(
        self,
        config: AzureContainerAppConfig,
        *,
        runner: Runner | None = None,
        builder: ContainerBuilder | None = None,
    ) -> None:
        """Initialize Azure Container Apps deployer.

        Args:
            config: Resolved Azure Container Apps configuration
            runner: Process runner for the az CLI
            builder: Optional container builder (connects to Docker on deploy if None)

        Raises:
            CloudSDKNotInstalledError: If Azure SDK dependencies are missing
            AuthError: If no subscription or credential is available
        """
        try:
            from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
            from azure.identity import DefaultAzureCredential
            from azure.mgmt.appcontainers import ContainerAppsAPIClient
            from azure.mgmt.appcontainers import models as app_models
            from azure.mgmt.containerregistry import ContainerRegistryManagementClient
            from azure.mgmt.containerregistry import models as registry_models
            from azure.mgmt.loganalytics import LogAnalyticsManagementClient
            from azure.mgmt.loganalytics import models as workspace_models
            from azure.mgmt.resource import ResourceManagementClient
        except ImportError as exc:
            raise CloudSDKNotInstalledError(
                provider="azure", sdk_name="azure-mgmt-appcontainers"
            ) from exc

        self._config = config
        self._runner = runner or Runner(
            find_project_root(Path(config.dockerfile_path).parent)
        )
        self._builder = builder
        self._ResourceNotFoundError: type[Exception] = ResourceNotFoundError
        self._HttpResponseError: type[Exception] = HttpResponseError
        self._app_models: Any = app_models
        self._registry_models: Any = registry_models
        self._workspace_models: Any = workspace_models

        self._subscription_id = config.subscription_id or self._discover_subscription()
        credential = DefaultAzureCredential()
        try:
            credential.get_token(MANAGEMENT_SCOPE)
        except Exception as exc:
            raise AuthError(
                self.provider.value,
                f"{exc}. Sign in with 'az login' or configure a service principal.",
            ) from exc

        self._resources: ResourceManagementClient = ResourceManagementClient(
            credential, self._subscription_id
        )
        self._registries: ContainerRegistryManagementClient = (
            ContainerRegistryManagementClient(credential, self._subscription_id)
        )
        self._workspaces: LogAnalyticsManagementClient = LogAnalyticsManagementClient(
            credential, self._subscription_id
        )
        self._apps: ContainerAppsAPIClient = ContainerAppsAPIClient(
            credential, self._subscription_id
        )

    def _discover_subscription(self) -> str:
        try:
            subscription = self._runner.output(
                ["az", "account", "show", "--query", "id", "--output", "tsv"]
            )
        except CommandError as exc:
            raise AuthError(
                self.provider.value,
                "No subscriptionId configured and 'az account show' failed. "
                "Run 'az login' or set subscriptionId.",
            ) from exc
        if not subscription:
            raise AuthError(self.provider.value, "No active Azure subscription found")
        logger.info(f"Using Azure subscription {subscription}")
        return subscription

    def _is_not_found(self, exc: Exception) -> bool:
        if isinstance(exc, self._ResourceNotFoundError):
            return True
        return (
            isinstance(exc, self._HttpResponseError)
            and getattr(exc, "status_code", None) == 404
        )

    @property
    def _tags(self) -> dict[str, str]:
        return {"managed-by": "launchdeck", "service": self._config.service_name}

    @property
    def _environment_id(self) -> str:
        config = self._config
        return (
            f"/subscriptions/{self._subscription_id}/resourceGroups/"
            f"{config.resource_group_name}/providers/Microsoft.App/"
            f"managedEnvironments/{config.environment_name}"
        )

    # setup

    def setup(self) -> None:
        """Register providers and create group, registry, workspace, environment."""
        config = self._config
        logger.info(
            f"Setting up Azure Container Apps resources for '{config.service_name}'"
        )
        self._register_providers()
        self._ensure_resource_group()
        self._ensure_registry()
        self._ensure_workspace()
        self._ensure_environment()
        logger.info("Setup complete")

    def _register_providers(self) -> None:
        for namespace in RESOURCE_PROVIDERS:
            try:
                state = self._resources.providers.get(namespace).registration_state
                if state == "Registered":
                    logger.debug(f"Resource provider {namespace} already registered")
                    continue
                self._resources.providers.register(namespace)
            except self._HttpResponseError as e:
                raise ProvisionError(namespace, str(e)) from e
            logger.info(f"Registered resource provider {namespace}")

    def _ensure_resource_group(self) -> None:
        config = self._config
        name = config.resource_group_name
        try:
            if self._resources.resource_groups.check_existence(name):
                logger.info(f"Resource group {name} already exists, skipping")
                return
            self._resources.resource_groups.create_or_update(
                name, {"location": config.location, "tags": self._tags}
            )
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created resource group {name}")

    def _ensure_registry(self) -> None:
        config = self._config
        name = config.registry_name
        try:
            self._registries.registries.get(config.resource_group_name, name)
            logger.info(f"Container registry {name} already exists, skipping")
            return
        except self._ResourceNotFoundError:
            pass
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e

        registry = self._registry_models.Registry(
            location=config.location,
            sku=self._registry_models.Sku(name="Basic"),
            admin_user_enabled=True,
            tags=self._tags,
        )
        try:
            self._registries.registries.begin_create(
                config.resource_group_name, name, registry
            ).result()
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created container registry {name}")

    def _ensure_workspace(self) -> None:
        config = self._config
        name = config.workspace_name
        try:
            self._workspaces.workspaces.get(config.resource_group_name, name)
            logger.info(f"Log Analytics workspace {name} already exists, skipping")
            return
        except self._ResourceNotFoundError:
            pass
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e

        workspace = self._workspace_models.Workspace(
            location=config.location,
            sku=self._workspace_models.WorkspaceSku(name="PerGB2018"),
            retention_in_days=30,
            tags=self._tags,
        )
        try:
            self._workspaces.workspaces.begin_create_or_update(
                config.resource_group_name, name, workspace
            ).result()
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created Log Analytics workspace {name}")

    def _ensure_environment(self) -> None:
        config = self._config
        name = config.environment_name
        models = self._app_models
        try:
            self._apps.managed_environments.get(config.resource_group_name, name)
            logger.info(f"Container Apps environment {name} already exists, skipping")
            return
        except self._ResourceNotFoundError:
            pass
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e

        try:
            workspace = self._workspaces.workspaces.get(
                config.resource_group_name, config.workspace_name
            )
            keys = self._workspaces.shared_keys.get_shared_keys(
                config.resource_group_name, config.workspace_name
            )
            environment = models.ManagedEnvironment(
                location=config.location,
                app_logs_configuration=models.AppLogsConfiguration(
                    destination="log-analytics",
                    log_analytics_configuration=models.LogAnalyticsConfiguration(
                        customer_id=workspace.customer_id,
                        shared_key=keys.primary_shared_key,
                    ),
                ),
                tags=self._tags,
            )
            self._apps.managed_environments.begin_create_or_update(
                config.resource_group_name, name, environment
            ).result()
        except self._HttpResponseError as e:
            raise ProvisionError(name, str(e)) from e
        logger.info(f"Created Container Apps environment {name}")

    # deploy

    def deploy(self) -> DeployResult:
        """Publish the image and create or update the container app."""
        config = self._config
        credentials = self._registry_credentials()
        artifact = ImageArtifact(
            registry=config.registry_server, repository=config.repository_name
        )

        builder = self._builder or ContainerBuilder()
        pipeline = ImagePipeline(
            builder, find_project_root(Path(config.dockerfile_path).parent)
        )
        pipeline.publish(
            dockerfile=config.dockerfile_path,
            artifact=artifact,
            credentials=credentials,
            labels=get_oci_labels(config.service_name, self.provider.value),
        )

        try:
            app, stable = self._create_or_update_app(artifact.uri, credentials)
        except self._HttpResponseError as e:
            raise DeploymentError(
                operation="deploy",
                message=f"Azure Container Apps deployment failed: {e}",
            ) from e

        url = None
        if app is not None and app.configuration and app.configuration.ingress:
            fqdn = app.configuration.ingress.fqdn
            if fqdn:
                url = f"https://{fqdn}"

        return DeployResult(
            provider=self.provider,
            service_name=config.service_name,
            compute_name=config.container_app_name,
            image_uri=artifact.uri,
            url=url,
            health_check_path=config.health_check_path,
            stable=stable,
        )

    def _registry_credentials(self) -> RegistryCredentials:
        config = self._config
        try:
            creds = self._registries.registries.list_credentials(
                config.resource_group_name, config.registry_name
            )
        except self._HttpResponseError as e:
            if self._is_not_found(e):
                raise DeploymentError(
                    operation="deploy",
                    message=(
                        f"Container registry {config.registry_name} not found. "
                        "Run setup first."
                    ),
                ) from e
            raise DeploymentError(operation="deploy", message=str(e)) from e
        return RegistryCredentials(
            registry=config.registry_server,
            username=creds.username,
            password=creds.passwords[0].value,
        )

    def _template(self, image_uri: str) -> Any:
        config = self._config
        models = self._app_models
        env = [
            models.EnvironmentVar(name=key, value=value)
            for key, value in load_environment_file(config.environment_file).items()
        ]
        probes = [
            models.ContainerAppProbe(
                type=probe_type,
                http_get=models.ContainerAppProbeHttpGet(
                    path=config.health_check_path, port=config.container_port
                ),
                period_seconds=config.health_check_interval_seconds,
                timeout_seconds=config.health_check_timeout_seconds,
            )
            for probe_type in ("Liveness", "Readiness")
        ]
        container = models.Container(
            name=config.container_app_name,
            image=image_uri,
            resources=models.ContainerResources(
                cpu=float(config.cpu), memory=config.memory
            ),
            env=env or None,
            probes=probes,
        )
        scale = models.Scale(
            min_replicas=config.min_replicas,
            max_replicas=config.max_replicas,
            rules=[
                models.ScaleRule(
                    name=SCALE_RULE_NAME,
                    http=models.HttpScaleRule(
                        metadata={"concurrentRequests": CONCURRENT_REQUESTS}
                    ),
                )
            ],
        )
        return models.Template(containers=[container], scale=scale)

    def _existing_app(self) -> Any | None:
        try:
            return self._apps.container_apps.get(
                self._config.resource_group_name, self._config.container_app_name
            )
        except self._ResourceNotFoundError:
            return None

    def _create_or_update_app(
        self, image_uri: str, credentials: RegistryCredentials
    ) -> tuple[Any, bool]:
        config = self._config
        models = self._app_models
        template = self._template(image_uri)
        existing = self._existing_app()

        if existing is not None:
            logger.info(f"Updating container app {config.container_app_name}")
            existing.template = template
            poller = self._apps.container_apps.begin_update(
                config.resource_group_name, config.container_app_name, existing
            )
        else:
            logger.info(f"Creating container app {config.container_app_name}")
            configuration = models.Configuration(
                secrets=[
                    models.Secret(
                        name=REGISTRY_PASSWORD_SECRET, value=credentials.password
                    )
                ],
                registries=[
                    models.RegistryCredentials(
                        server=credentials.registry,
                        username=credentials.username,
                        password_secret_ref=REGISTRY_PASSWORD_SECRET,
                    )
                ],
                ingress=models.Ingress(
                    external=True,
                    target_port=config.container_port,
                    traffic=[
                        models.TrafficWeight(percentage=100, latest_revision=True)
                    ],
                ),
            )
            app = models.ContainerApp(
                location=config.location,
                managed_environment_id=self._environment_id,
                configuration=configuration,
                template=template,
                tags=self._tags,
            )
            poller = self._apps.container_apps.begin_create_or_update(
                config.resource_group_name, config.container_app_name, app
            )

        poller.wait(DEPLOY_TIMEOUT_SECONDS)
        stable = poller.done()
        if not stable:
            logger.warning(
                f"Container app did not finish provisioning within "
                f"{DEPLOY_TIMEOUT_SECONDS}s; it is likely still rolling out"
            )
        return self._existing_app(), stable

    # destroy

    def destroy(self) -> DestroyReport:
        """Delete app, environment, workspace, registry and resource group."""
        config = self._config
        rg = config.resource_group_name

        def delete_app() -> bool:
            self._apps.container_apps.get(rg, config.container_app_name)
            self._apps.container_apps.begin_delete(
                rg, config.container_app_name
            ).result()
            return True

        def delete_environment() -> bool:
            self._apps.managed_environments.get(rg, config.environment_name)
            self._apps.managed_environments.begin_delete(
                rg, config.environment_name
            ).result()
            return True

        def delete_workspace() -> bool:
            self._workspaces.workspaces.get(rg, config.workspace_name)
            self._workspaces.workspaces.begin_delete(
                rg, config.workspace_name, force=True
            ).result()
            return True

        def delete_registry() -> bool:
            self._registries.registries.get(rg, config.registry_name)
            self._registries.registries.begin_delete(rg, config.registry_name).result()
            return True

        def delete_resource_group() -> bool:
            if not self._resources.resource_groups.check_existence(rg):
                return False
            leftovers = [
                r.name for r in self._resources.resources.list_by_resource_group(rg)
            ]
            if leftovers:
                logger.warning(
                    f"Resource group {rg} still contains: {', '.join(leftovers)}"
                )
            self._resources.resource_groups.begin_delete(rg).result()
            return True

        steps: list[tuple[str, Callable[[], bool]]] = [
            (f"container app {config.container_app_name}", delete_app),
            (f"environment {config.environment_name}", delete_environment),
            (f"Log Analytics workspace {config.workspace_name}", delete_workspace),
            (f"container registry {config.registry_name}", delete_registry),
            (f"resource group {rg}", delete_resource_group),
        ]
        return run_teardown(
            self.provider, config.service_name, steps, self._is_not_found
        )

    # logs

    def show_logs(
        self, token: CancellationToken, emit: Callable[[str], None]
    ) -> None:
        """Tail console logs from the environment's Log Analytics workspace."""
        tailer = LogTailer(self._log_fetcher(), make_formatter(CONTAINER_RULES), emit)
        tailer.run(token)

    def _workspace_customer_id(self) -> str:
        config = self._config
        try:
            workspace = self._workspaces.workspaces.get(
                config.resource_group_name, config.workspace_name
            )
        except self._ResourceNotFoundError as e:
            raise LogSinkNotFoundError(config.workspace_name) from e
        return str(workspace.customer_id)

    def _log_fetcher(self) -> FetchPage:
        config = self._config

        def fetch(since: int, page_token: str | None, page_size: int) -> LogPage:
            customer_id = self._workspace_customer_id()
            query = (
                f"{CONSOLE_LOG_TABLE} "
                f"| where ContainerAppName_s == '{config.container_app_name}' "
                f"| where TimeGenerated >= datetime({_kql_datetime(since)}) "
                f"| order by TimeGenerated asc "
                f"| take {page_size} "
                f"| project TimeGenerated, Log_s, RevisionName_s"
            )
            try:
                output = self._runner.output(
                    [
                        "az",
                        "monitor",
                        "log-analytics",
                        "query",
                        "--workspace",
                        customer_id,
                        "--analytics-query",
                        query,
                        "--output",
                        "json",
                    ]
                )
            except CommandError as e:
                if any(marker in e.output for marker in MISSING_TABLE_MARKERS):
                    raise LogSinkNotFoundError(CONSOLE_LOG_TABLE) from e
                raise

            rows = json.loads(output) if output else []
            events = [
                LogEvent(
                    timestamp=_parse_time_generated(row["TimeGenerated"]),
                    message=row.get("Log_s") or "",
                    stream=row.get("RevisionName_s"),
                )
                for row in rows
            ]
            next_token = BACKLOG_TOKEN if len(events) >= page_size else None
            return LogPage(events=events, next_token=next_token)

        return fetch
