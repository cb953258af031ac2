"""Provider deployers for LaunchDeck services."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from launchdeck.config.loader import resolve_config
from launchdeck.deploy.deployers.base import BaseDeployer
from launchdeck.lib.errors import ConfigError
from launchdeck.models.deployment import BaseDeploymentConfig, Provider


def create_deployer(config: BaseDeploymentConfig, **kwargs: Any) -> BaseDeployer:
    """Create a deployer for the provider the configuration belongs to.

    Provider modules are imported lazily so that only the selected provider's
    SDK needs to be installed.

    Args:
        config: Resolved provider configuration
        **kwargs: Injected collaborators forwarded to the deployer constructor

    Returns:
        Authenticated deployer for ``config.provider``

    Raises:
        ConfigError: If the configuration type has no deployer
        CloudSDKNotInstalledError: If the provider SDK is not installed
        AuthError: If provider credentials are missing or invalid
    """
    if config.provider == Provider.AWS_SERVERLESS:
        from launchdeck.deploy.deployers.aws_serverless import AwsServerlessDeployer

        return AwsServerlessDeployer(config, **kwargs)  # type: ignore[arg-type]

    if config.provider == Provider.AWS_CLUSTER:
        from launchdeck.deploy.deployers.aws_cluster import AwsClusterDeployer

        return AwsClusterDeployer(config, **kwargs)  # type: ignore[arg-type]

    if config.provider == Provider.AZURE_CONTAINERAPP:
        from launchdeck.deploy.deployers.azure_containerapp import (
            AzureContainerAppDeployer,
        )

        return AzureContainerAppDeployer(config, **kwargs)  # type: ignore[arg-type]

    if config.provider == Provider.GCP_RUN:
        from launchdeck.deploy.deployers.gcp_run import GcpRunDeployer

        return GcpRunDeployer(config, **kwargs)  # type: ignore[arg-type]

    raise ConfigError("provider", f"Unsupported provider: {config.provider}")


def init_deployer(provider: Provider | str, config_path: str | Path) -> BaseDeployer:
    """Resolve a configuration file and authenticate against its provider."""
    return create_deployer(resolve_config(provider, config_path))


__all__ = ["BaseDeployer", "create_deployer", "init_deployer"]
