"""Pydantic models for deployment configuration and lifecycle results.

This module defines one immutable configuration model per provider, the
image artifact reference produced by the image pipeline, and the result
objects returned by deploy and destroy.

Configuration files use camelCase keys (``serviceName``, ``containerPort``);
snake_case field names are accepted as well. Derived resource names are
exposed as properties that delegate to :mod:`launchdeck.deploy.naming` on
every access and are never cached.
"""

from __future__ import annotations

import os
import re
from enum import Enum
from pathlib import Path
from typing import ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from launchdeck.deploy import naming


class Provider(str, Enum):
    """Supported deployment targets."""

    AWS_SERVERLESS = "aws-serverless"
    AWS_CLUSTER = "aws-cluster"
    AZURE_CONTAINERAPP = "azure-containerapp"
    GCP_RUN = "gcp-run"


class Action(str, Enum):
    """Lifecycle actions exposed on the command line."""

    SETUP = "setup"
    DEPLOY = "deploy"
    DESTROY = "destroy"
    LOGS = "logs"


# Regex patterns for validation
SERVICE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]*$")
AWS_REGION_PATTERN = re.compile(r"^[a-z]{2}(-[a-z]+)+-\d$")
AZURE_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
GCP_PROJECT_ID_PATTERN = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
MEMORY_QUANTITY_PATTERN = re.compile(r"^\d+(\.\d+)?(Mi|Gi)$")
AZURE_SUBSCRIPTION_PLACEHOLDER = "your-subscription-id"

# ALB and target group names are limited to 32 characters
SERVICE_NAME_MAX_LENGTH = 28


class BaseDeploymentConfig(BaseModel):
    """Fields shared by every provider configuration.

    Attributes:
        service_name: Base name all resource names are derived from
        container_port: Port the workload listens on
        dockerfile_path: Dockerfile used to build the image
        environment_file: Dotenv file injected into the workload
        health_check_path: Path answering health-check GET requests
    """

    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    provider: ClassVar[Provider]
    path_fields: ClassVar[tuple[str, ...]] = ("dockerfile_path", "environment_file")

    service_name: str = Field(
        ...,
        max_length=SERVICE_NAME_MAX_LENGTH,
        description="Base name for all derived resource names",
    )
    container_port: int = Field(
        default=8080, ge=1, le=65535, description="Port the workload listens on"
    )
    dockerfile_path: str = Field(
        default="Dockerfile", description="Dockerfile used to build the image"
    )
    environment_file: str = Field(
        default=".env", description="Dotenv file with workload environment"
    )
    health_check_path: str = Field(
        default="/api/health", description="Health-check path of the workload"
    )

    @field_validator("service_name")
    @classmethod
    def validate_service_name(cls, v: str) -> str:
        """Validate service name pattern."""
        if not SERVICE_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid service name: {v}. "
                "Must start with a letter and contain only letters, numbers, "
                "'-' and '_'"
            )
        return v

    @field_validator("health_check_path")
    @classmethod
    def validate_health_check_path(cls, v: str) -> str:
        """Validate that the health-check path is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"Health check path must start with '/': {v}")
        return v

    def with_resolved_paths(self, base_dir: Path) -> BaseDeploymentConfig:
        """Return a copy whose relative path fields are anchored at base_dir.

        Absolute paths pass through unchanged.

        Args:
            base_dir: Directory containing the configuration file

        Returns:
            New configuration instance with absolute path fields
        """
        updates: dict[str, str] = {}
        for field_name in self.path_fields:
            value = getattr(self, field_name)
            path = Path(value)
            if not path.is_absolute():
                updates[field_name] = os.path.abspath(base_dir / path)
        return self.model_copy(update=updates)

    @property
    def repository_name(self) -> str:
        return naming.repository_name(self.service_name)


class AwsServerlessConfig(BaseDeploymentConfig):
    """AWS Lambda container-image deployment configuration.

    Attributes:
        region: AWS region
        ecr_repository: Override for the ECR repository name
        memory_size: Function memory in MB
        timeout: Function timeout in seconds
    """

    provider: ClassVar[Provider] = Provider.AWS_SERVERLESS

    container_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        validation_alias=AliasChoices(
            "containerPort", "port", "container_port"
        ),
        description="Port the Lambda Web Adapter forwards requests to",
    )
    region: str = Field(default="us-east-1", description="AWS region")
    ecr_repository: str | None = Field(
        default=None, description="ECR repository name override"
    )
    memory_size: int = Field(
        default=1024, ge=128, le=10240, description="Function memory in MB"
    )
    timeout: int = Field(
        default=30, ge=1, le=900, description="Function timeout in seconds"
    )

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not AWS_REGION_PATTERN.match(v):
            raise ValueError(f"Invalid AWS region: {v}")
        return v

    @property
    def repository_name(self) -> str:
        return self.ecr_repository or naming.repository_name(self.service_name)

    @property
    def function_name(self) -> str:
        return naming.function_name(self.service_name)

    @property
    def role_name(self) -> str:
        return naming.function_role_name(self.service_name)

    @property
    def log_group_name(self) -> str:
        return naming.function_log_group(self.service_name)


class AwsClusterConfig(BaseDeploymentConfig):
    """AWS ECS Fargate deployment configuration.

    Attributes:
        region: AWS region
        cpu: Task CPU units (256 = 0.25 vCPU)
        memory: Task memory in MB
        desired_count: Number of running tasks
        health_check_interval_seconds: Target group health-check interval
        deployment_timeout_minutes: Upper bound on the wait for a stable service
    """

    provider: ClassVar[Provider] = Provider.AWS_CLUSTER

    region: str = Field(default="us-east-1", description="AWS region")
    cpu: int = Field(default=256, description="Task CPU units")
    memory: int = Field(default=512, description="Task memory in MB")
    desired_count: int = Field(default=1, ge=0, description="Running task count")
    health_check_interval_seconds: int = Field(
        default=30, ge=5, le=300, description="Health-check interval in seconds"
    )
    deployment_timeout_minutes: int = Field(
        default=10, ge=1, le=60, description="Wait-for-stable budget in minutes"
    )

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: str) -> str:
        """Validate AWS region format."""
        if not AWS_REGION_PATTERN.match(v):
            raise ValueError(f"Invalid AWS region: {v}")
        return v

    @field_validator("cpu")
    @classmethod
    def validate_cpu(cls, v: int) -> int:
        """Validate Fargate CPU units."""
        if v not in (256, 512, 1024, 2048, 4096, 8192, 16384):
            raise ValueError(f"Invalid Fargate cpu value: {v}")
        return v

    @property
    def cluster_name(self) -> str:
        return naming.cluster_name(self.service_name)

    @property
    def ecs_service_name(self) -> str:
        return naming.ecs_service_name(self.service_name)

    @property
    def task_family(self) -> str:
        return naming.task_family(self.service_name)

    @property
    def load_balancer_name(self) -> str:
        return naming.load_balancer_name(self.service_name)

    @property
    def target_group_name(self) -> str:
        return naming.target_group_name(self.service_name)

    @property
    def execution_role_name(self) -> str:
        return naming.execution_role_name(self.service_name)

    @property
    def task_role_name(self) -> str:
        return naming.task_role_name(self.service_name)

    @property
    def log_group_name(self) -> str:
        return naming.cluster_log_group(self.service_name)

    @property
    def service_security_group_name(self) -> str:
        return naming.service_security_group(self.service_name)

    @property
    def load_balancer_security_group_name(self) -> str:
        return naming.load_balancer_security_group(self.service_name)


class AzureContainerAppConfig(BaseDeploymentConfig):
    """Azure Container Apps deployment configuration.

    Attributes:
        subscription_id: Azure subscription ID (discovered via the az CLI when unset)
        resource_group: Resource group override
        location: Azure location
        cpu: vCPU allocation (e.g. "0.25")
        memory: Memory allocation (e.g. "0.5Gi")
        min_replicas: Minimum replicas
        max_replicas: Maximum replicas
        health_check_interval_seconds: Probe period
        health_check_timeout_seconds: Probe timeout
    """

    provider: ClassVar[Provider] = Provider.AZURE_CONTAINERAPP

    subscription_id: str | None = Field(
        default=None, description="Azure subscription ID"
    )
    resource_group: str | None = Field(
        default=None, description="Resource group name override"
    )
    location: str = Field(default="East US", description="Azure location")
    cpu: str = Field(default="0.25", description="vCPU allocation")
    memory: str = Field(default="0.5Gi", description="Memory allocation")
    min_replicas: int = Field(default=0, ge=0, le=300, description="Minimum replicas")
    max_replicas: int = Field(
        default=10, ge=1, le=300, description="Maximum replicas"
    )
    health_check_interval_seconds: int = Field(
        default=30, ge=1, le=240, description="Probe period in seconds"
    )
    health_check_timeout_seconds: int = Field(
        default=10, ge=1, le=240, description="Probe timeout in seconds"
    )

    @field_validator("subscription_id")
    @classmethod
    def validate_subscription_id(cls, v: str | None) -> str | None:
        """Treat the template placeholder as unset and validate the UUID."""
        if v is None or v == AZURE_SUBSCRIPTION_PLACEHOLDER or not v.strip():
            return None
        if not AZURE_UUID_PATTERN.match(v):
            raise ValueError(f"Invalid Azure subscription ID: {v}")
        return v

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        """Validate memory quantity format."""
        if not MEMORY_QUANTITY_PATTERN.match(v):
            raise ValueError(f"Invalid memory value: {v}. Use e.g. '0.5Gi'")
        return v

    @model_validator(mode="after")
    def validate_replica_range(self) -> AzureContainerAppConfig:
        """Validate that min_replicas <= max_replicas."""
        if self.min_replicas > self.max_replicas:
            raise ValueError(
                f"minReplicas ({self.min_replicas}) must be <= "
                f"maxReplicas ({self.max_replicas})"
            )
        return self

    @property
    def resource_group_name(self) -> str:
        return self.resource_group or naming.resource_group_name(self.service_name)

    @property
    def environment_name(self) -> str:
        return naming.container_app_environment(self.service_name)

    @property
    def container_app_name(self) -> str:
        return naming.container_app_name(self.service_name)

    @property
    def registry_name(self) -> str:
        return naming.container_registry_name(self.service_name)

    @property
    def workspace_name(self) -> str:
        return naming.log_workspace_name(self.service_name)

    @property
    def registry_server(self) -> str:
        return f"{self.registry_name}.azurecr.io"


class GcpRunConfig(BaseDeploymentConfig):
    """GCP Cloud Run deployment configuration.

    Attributes:
        project_id: GCP project ID
        region: GCP region
        cpu: vCPU limit (e.g. "1")
        memory: Memory limit (e.g. "512Mi")
        min_instances: Minimum instances
        max_instances: Maximum instances
        timeout_seconds: Request timeout
        allow_unauthenticated: Grant allUsers the invoker role
        environment_variables: Extra variables merged over the environment file
    """

    provider: ClassVar[Provider] = Provider.GCP_RUN

    project_id: str = Field(..., description="GCP project ID")
    region: str = Field(default="us-central1", description="GCP region")
    cpu: str = Field(default="1", description="vCPU limit")
    memory: str = Field(default="512Mi", description="Memory limit")
    min_instances: int = Field(default=0, ge=0, description="Minimum instances")
    max_instances: int = Field(default=10, ge=1, description="Maximum instances")
    timeout_seconds: int = Field(
        default=300, ge=1, le=3600, description="Request timeout in seconds"
    )
    allow_unauthenticated: bool = Field(
        default=True, description="Allow public unauthenticated invocations"
    )
    environment_variables: dict[str, str] = Field(
        default_factory=dict, description="Additional workload environment"
    )

    @field_validator("project_id")
    @classmethod
    def validate_project_id(cls, v: str) -> str:
        """Validate GCP project ID format."""
        if not GCP_PROJECT_ID_PATTERN.match(v):
            raise ValueError(
                f"Invalid GCP project ID: {v}. "
                "Must be 6-30 lowercase letters, numbers, and hyphens, "
                "starting with a letter and not ending with a hyphen."
            )
        return v

    @field_validator("memory")
    @classmethod
    def validate_memory(cls, v: str) -> str:
        """Validate memory quantity format."""
        if not MEMORY_QUANTITY_PATTERN.match(v):
            raise ValueError(f"Invalid memory value: {v}. Use e.g. '512Mi'")
        return v

    @model_validator(mode="after")
    def validate_instance_range(self) -> GcpRunConfig:
        """Validate that min_instances <= max_instances."""
        if self.min_instances > self.max_instances:
            raise ValueError(
                f"minInstances ({self.min_instances}) must be <= "
                f"maxInstances ({self.max_instances})"
            )
        return self

    @property
    def service_id(self) -> str:
        return naming.cloud_run_service(self.service_name)

    @property
    def artifact_repository(self) -> str:
        return naming.artifact_repository(self.service_name)

    @property
    def registry_host(self) -> str:
        return f"{self.region}-docker.pkg.dev"


CONFIG_MODELS: dict[Provider, type[BaseDeploymentConfig]] = {
    Provider.AWS_SERVERLESS: AwsServerlessConfig,
    Provider.AWS_CLUSTER: AwsClusterConfig,
    Provider.AZURE_CONTAINERAPP: AzureContainerAppConfig,
    Provider.GCP_RUN: GcpRunConfig,
}


class ImageArtifact(BaseModel):
    """Reference to a pushed container image.

    Attributes:
        registry: Registry host (e.g. 123456789012.dkr.ecr.us-east-1.amazonaws.com)
        repository: Repository path within the registry
        tag: Image tag
    """

    model_config = ConfigDict(frozen=True)

    registry: str
    repository: str
    tag: str = naming.IMAGE_TAG

    @property
    def name(self) -> str:
        """Image name without tag."""
        return f"{self.registry}/{self.repository}"

    @property
    def uri(self) -> str:
        """Full image reference (registry/repository:tag)."""
        return f"{self.name}:{self.tag}"


# Well-known path of the workload's tool-invocation endpoint
TOOL_ENDPOINT_PATH = "/mcp"


class DeployResult(BaseModel):
    """Outcome of a successful deploy.

    Attributes:
        provider: Provider that was deployed to
        service_name: Configured service name
        compute_name: Derived name of the deployed compute unit
        image_uri: Image the compute unit now references
        url: Externally reachable base URL, if the provider reported one
        health_check_path: Health-check path of the workload
        stable: False when the wait-for-stable budget ran out
    """

    model_config = ConfigDict(frozen=True)

    provider: Provider
    service_name: str
    compute_name: str
    image_uri: str
    url: str | None = None
    health_check_path: str = "/api/health"
    stable: bool = True

    @property
    def health_url(self) -> str | None:
        return f"{self.url}{self.health_check_path}" if self.url else None

    @property
    def tool_url(self) -> str | None:
        return f"{self.url}{TOOL_ENDPOINT_PATH}" if self.url else None


class StepOutcome(str, Enum):
    """Result of a single destroy step."""

    DELETED = "deleted"
    NOT_FOUND = "not found"
    FAILED = "failed"


class DestroyStepResult(BaseModel):
    """Outcome of one destroy step."""

    step: str
    outcome: StepOutcome
    error: str | None = None


class DestroyReport(BaseModel):
    """Ordered record of every destroy step and its outcome."""

    provider: Provider
    service_name: str
    steps: list[DestroyStepResult] = Field(default_factory=list)

    @property
    def failed_steps(self) -> list[DestroyStepResult]:
        return [s for s in self.steps if s.outcome == StepOutcome.FAILED]

    @property
    def succeeded(self) -> bool:
        return not self.failed_steps
