"""Derived resource names.

Every cloud resource LaunchDeck manages is identified by a name computed
from the configured ``serviceName``. These functions are pure: the same
service name yields the same resource names in every process, which is
what lets setup, deploy, destroy and logs find each other's resources
without any local state.
"""

from __future__ import annotations

import re

_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]")

IMAGE_TAG = "latest"


def repository_name(service_name: str) -> str:
    """Image repository name: lowercase, underscores replaced with hyphens."""
    return service_name.lower().replace("_", "-")


# aws-cluster


def cluster_name(service_name: str) -> str:
    return f"{service_name}-cluster"


def ecs_service_name(service_name: str) -> str:
    return f"{service_name}-service"


def task_family(service_name: str) -> str:
    return f"{service_name}-task"


def load_balancer_name(service_name: str) -> str:
    return f"{service_name}-alb"


def target_group_name(service_name: str) -> str:
    return f"{service_name}-tg"


def execution_role_name(service_name: str) -> str:
    return f"{service_name}-execution-role"


def task_role_name(service_name: str) -> str:
    return f"{service_name}-task-role"


def cluster_log_group(service_name: str) -> str:
    return f"/ecs/{service_name}"


def service_security_group(service_name: str) -> str:
    return f"{service_name}-sg"


def load_balancer_security_group(service_name: str) -> str:
    return f"{service_name}-alb-sg"


# aws-serverless


def function_name(service_name: str) -> str:
    return f"{service_name}-function"


def function_role_name(service_name: str) -> str:
    return f"{function_name(service_name)}-role"


def function_log_group(service_name: str) -> str:
    return f"/aws/lambda/{function_name(service_name)}"


# azure-containerapp


def resource_group_name(service_name: str) -> str:
    return f"{service_name}-rg"


def container_app_environment(service_name: str) -> str:
    return f"{service_name}-env"


def container_app_name(service_name: str) -> str:
    return f"{service_name}-app"


def container_registry_name(service_name: str) -> str:
    """Azure registry name: alphanumerics only, lowercase, ``registry`` suffix.

    Example:
        >>> container_registry_name("my_service")
        'myserviceregistry'
    """
    return _NON_ALNUM.sub("", service_name).lower() + "registry"


def log_workspace_name(service_name: str) -> str:
    return f"{service_name}-workspace"


# gcp-run


def artifact_repository(service_name: str) -> str:
    return repository_name(service_name)


def cloud_run_service(service_name: str) -> str:
    return repository_name(service_name)
