"""AWS Lambda (container image) deployer."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

from launchdeck.config.env_loader import load_environment_file
from launchdeck.deploy.builder import ContainerBuilder, ImagePipeline, get_oci_labels
from launchdeck.deploy.deployers import aws_common
from launchdeck.deploy.deployers.aws_common import AwsSession, error_code
from launchdeck.deploy.deployers.base import BaseDeployer
from launchdeck.deploy.dockerfile import write_lambda_dockerfile
from launchdeck.deploy.log_format import SERVERLESS_RULES, make_formatter
from launchdeck.deploy.logs import CancellationToken, LogTailer
from launchdeck.deploy.runner import find_project_root
from launchdeck.deploy.teardown import run_teardown
from launchdeck.lib.errors import DeploymentError
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    AwsServerlessConfig,
    DeployResult,
    DestroyReport,
    ImageArtifact,
    Provider,
)

logger = get_logger(__name__)

LAMBDA_BASIC_EXECUTION_POLICY = (
    "arn:aws:iam::aws:policy/service-role/AWSLambdaBasicExecutionRole"
)
PUBLIC_URL_STATEMENT_ID = "FunctionURLAllowPublicAccess"
FUNCTION_WAITER_CONFIG = {"Delay": 5, "MaxAttempts": 60}


class AwsServerlessDeployer(BaseDeployer):
    """Deploy a container image as an AWS Lambda function behind a function URL.

    The workload keeps serving plain HTTP: the Lambda Web Adapter extension
    is added to the image at deploy time and forwards invocations to the
    configured port.
    """

    provider = Provider.AWS_SERVERLESS

    def __init__(
        self,
        config: AwsServerlessConfig,
        *,
        session: Any | None = None,
        builder: ContainerBuilder | None = None,
    ) -> None:
        """Initialize the deployer and verify AWS credentials.

        Args:
            config: Resolved serverless configuration
            session: Optional boto3 session (created from the environment if None)
            builder: Optional container builder (connects to Docker on deploy if None)

        Raises:
            CloudSDKNotInstalledError: If boto3 is not installed
            AuthError: If AWS credentials are missing or invalid
        """
        self._config = config
        self._aws = AwsSession(config.region, self.provider, session=session)
        self._ecr = self._aws.client("ecr")
        self._iam = self._aws.client("iam")
        self._lambda = self._aws.client("lambda")
        self._logs = self._aws.client("logs")
        self._builder = builder

    # setup

    def setup(self) -> None:
        """Create the ECR repository, execution role and log group."""
        config = self._config
        logger.info(f"Setting up AWS Lambda resources for '{config.service_name}'")
        aws_common.ensure_repository(self._aws, self._ecr, config.repository_name)
        aws_common.ensure_role(
            self._aws,
            self._iam,
            config.role_name,
            "lambda.amazonaws.com",
            (LAMBDA_BASIC_EXECUTION_POLICY,),
        )
        aws_common.ensure_log_group(self._aws, self._logs, config.log_group_name)
        logger.info("Setup complete")

    # deploy

    def deploy(self) -> DeployResult:
        """Publish the image and create or update the function and its URL."""
        config = self._config
        artifact = ImageArtifact(
            registry=self._aws.registry_host, repository=config.repository_name
        )

        dockerfile = write_lambda_dockerfile(config.dockerfile_path)
        credentials = aws_common.ecr_credentials(
            self._aws, self._ecr, artifact.registry
        )
        builder = self._builder or ContainerBuilder()
        pipeline = ImagePipeline(
            builder, find_project_root(Path(config.dockerfile_path).parent)
        )
        pipeline.publish(
            dockerfile=dockerfile,
            artifact=artifact,
            credentials=credentials,
            labels=get_oci_labels(config.service_name, self.provider.value),
        )

        try:
            stable = self._create_or_update_function(artifact.uri)
            url = self._ensure_function_url()
            self._ensure_public_access()
        except self._aws.ClientError as e:
            raise DeploymentError(
                operation="deploy",
                message=f"Lambda function {config.function_name}: {e}",
            ) from e

        return DeployResult(
            provider=self.provider,
            service_name=config.service_name,
            compute_name=config.function_name,
            image_uri=artifact.uri,
            url=url,
            health_check_path=config.health_check_path,
            stable=stable,
        )

    def _environment(self) -> dict[str, str]:
        env = load_environment_file(self._config.environment_file)
        env["AWS_LWA_INVOKE_MODE"] = "response_stream"
        env["AWS_LWA_PORT"] = str(self._config.container_port)
        return env

    def _role_arn(self) -> str:
        try:
            role = self._iam.get_role(RoleName=self._config.role_name)
        except self._aws.ClientError as e:
            if error_code(e) == "NoSuchEntity":
                raise DeploymentError(
                    operation="deploy",
                    message=(
                        f"IAM role {self._config.role_name} not found. "
                        "Run setup first."
                    ),
                ) from e
            raise
        return str(role["Role"]["Arn"])

    def _function_exists(self) -> bool:
        try:
            self._lambda.get_function(FunctionName=self._config.function_name)
        except self._aws.ClientError as e:
            if error_code(e) == "ResourceNotFoundException":
                return False
            raise
        return True

    def _wait(self, waiter_name: str) -> bool:
        """Wait for the function to settle; False when the budget runs out."""
        try:
            self._lambda.get_waiter(waiter_name).wait(
                FunctionName=self._config.function_name,
                WaiterConfig=FUNCTION_WAITER_CONFIG,
            )
        except self._aws.WaiterError as e:
            logger.warning(
                f"Function {self._config.function_name} did not settle in time "
                f"({e}); it is likely still updating"
            )
            return False
        return True

    def _create_or_update_function(self, image_uri: str) -> bool:
        config = self._config
        environment = {"Variables": self._environment()}

        if self._function_exists():
            logger.info(f"Updating function {config.function_name}")
            self._lambda.update_function_code(
                FunctionName=config.function_name, ImageUri=image_uri
            )
            self._wait("function_updated_v2")
            self._lambda.update_function_configuration(
                FunctionName=config.function_name,
                Role=self._role_arn(),
                MemorySize=config.memory_size,
                Timeout=config.timeout,
                Environment=environment,
            )
            return self._wait("function_updated_v2")

        logger.info(f"Creating function {config.function_name}")
        self._lambda.create_function(
            FunctionName=config.function_name,
            PackageType="Image",
            Code={"ImageUri": image_uri},
            Role=self._role_arn(),
            MemorySize=config.memory_size,
            Timeout=config.timeout,
            Environment=environment,
            Architectures=["x86_64"],
            Description=f"{config.service_name} (managed by launchdeck)",
        )
        return self._wait("function_active_v2")

    def _ensure_function_url(self) -> str:
        name = self._config.function_name
        try:
            response = self._lambda.get_function_url_config(FunctionName=name)
            logger.info(f"Function URL for {name} already exists")
        except self._aws.ClientError as e:
            if error_code(e) != "ResourceNotFoundException":
                raise
            response = self._lambda.create_function_url_config(
                FunctionName=name,
                AuthType="NONE",
                InvokeMode="RESPONSE_STREAM",
                Cors={
                    "AllowOrigins": ["*"],
                    "AllowMethods": ["*"],
                    "AllowHeaders": ["*"],
                },
            )
            logger.info(f"Created function URL for {name}")
        return str(response["FunctionUrl"]).rstrip("/")

    def _ensure_public_access(self) -> None:
        name = self._config.function_name
        try:
            policy = self._lambda.get_policy(FunctionName=name)["Policy"]
            if PUBLIC_URL_STATEMENT_ID in policy:
                logger.info("Public function URL permission already present")
                return
        except self._aws.ClientError as e:
            if error_code(e) != "ResourceNotFoundException":
                raise

        self._lambda.add_permission(
            FunctionName=name,
            StatementId=PUBLIC_URL_STATEMENT_ID,
            Action="lambda:InvokeFunctionUrl",
            Principal="*",
            FunctionUrlAuthType="NONE",
        )
        logger.info("Granted public access to the function URL")

    # destroy

    def destroy(self) -> DestroyReport:
        """Delete function, URL, log group, role and repository."""
        config = self._config
        name = config.function_name

        def remove_permission() -> bool:
            self._lambda.remove_permission(
                FunctionName=name, StatementId=PUBLIC_URL_STATEMENT_ID
            )
            return True

        def delete_function_url() -> bool:
            self._lambda.delete_function_url_config(FunctionName=name)
            return True

        def delete_function() -> bool:
            self._lambda.delete_function(FunctionName=name)
            return True

        steps: list[tuple[str, Callable[[], bool]]] = [
            (f"function URL permission {PUBLIC_URL_STATEMENT_ID}", remove_permission),
            (f"function URL of {name}", delete_function_url),
            (f"Lambda function {name}", delete_function),
            (
                f"log group {config.log_group_name}",
                lambda: aws_common.delete_log_group(self._logs, config.log_group_name),
            ),
            (
                f"IAM role {config.role_name}",
                lambda: aws_common.delete_role(self._iam, config.role_name),
            ),
            (
                f"ECR repository {config.repository_name}",
                lambda: aws_common.delete_repository(
                    self._ecr, config.repository_name
                ),
            ),
            ("orphaned layer versions", self._sweep_layers),
            ("orphaned event source mappings", self._sweep_event_source_mappings),
        ]
        return run_teardown(
            self.provider, config.service_name, steps, aws_common.is_not_found
        )

    def _sweep_layers(self) -> bool:
        """Delete layer versions whose layer name starts with the service name."""
        deleted = False
        paginator = self._lambda.get_paginator("list_layers")
        for page in paginator.paginate():
            for layer in page.get("Layers", []):
                layer_name = layer["LayerName"]
                if not layer_name.startswith(self._config.service_name):
                    continue
                versions = self._lambda.list_layer_versions(LayerName=layer_name)
                for version in versions.get("LayerVersions", []):
                    self._lambda.delete_layer_version(
                        LayerName=layer_name, VersionNumber=version["Version"]
                    )
                    logger.info(f"Deleted layer {layer_name}:{version['Version']}")
                    deleted = True
        return deleted

    def _sweep_event_source_mappings(self) -> bool:
        response = self._lambda.list_event_source_mappings(
            FunctionName=self._config.function_name
        )
        mappings = response.get("EventSourceMappings", [])
        for mapping in mappings:
            self._lambda.delete_event_source_mapping(UUID=mapping["UUID"])
            logger.info(f"Deleted event source mapping {mapping['UUID']}")
        return bool(mappings)

    # logs

    def show_logs(
        self, token: CancellationToken, emit: Callable[[str], None]
    ) -> None:
        """Tail the function's CloudWatch log group."""
        tailer = LogTailer(
            aws_common.log_group_fetcher(
                self._aws, self._logs, self._config.log_group_name
            ),
            make_formatter(SERVERLESS_RULES),
            emit,
        )
        tailer.run(token)
