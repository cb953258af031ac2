"""Configuration loader for LaunchDeck deployments.

This module resolves a provider configuration file into an immutable
configuration model: it reads YAML with environment substitution,
validates it against the provider's schema and anchors relative path
fields at the configuration file's directory.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from launchdeck.config.env_loader import substitute_env_vars
from launchdeck.config.validator import flatten_pydantic_errors
from launchdeck.lib.errors import ConfigError
from launchdeck.lib.logging_config import get_logger
from launchdeck.models.deployment import (
    CONFIG_MODELS,
    BaseDeploymentConfig,
    Provider,
)

logger = get_logger(__name__)


def _read_yaml_with_env_substitution(path: Path) -> dict[str, Any] | None:
    """Read a YAML file with environment variable substitution.

    Args:
        path: Path to YAML file

    Returns:
        Parsed dictionary or None if empty

    Raises:
        OSError: If file cannot be read
        yaml.YAMLError: If YAML parsing fails
        ConfigError: If env var substitution fails
    """
    raw_text = path.read_text(encoding="utf-8")
    substituted = substitute_env_vars(raw_text)
    content = yaml.safe_load(substituted)
    return content if content else None


def resolve_config(
    provider: Provider | str, config_path: str | Path
) -> BaseDeploymentConfig:
    """Load, validate and normalize a provider configuration file.

    Args:
        provider: Target provider, selecting the configuration schema
        config_path: Path to the YAML (or JSON) configuration file

    Returns:
        Immutable provider configuration with absolute path fields

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    try:
        provider = Provider(provider)
    except ValueError as e:
        raise ConfigError("provider", f"Unknown provider: {provider}") from e

    path = Path(config_path)
    if not path.is_file():
        raise ConfigError(
            "config_file",
            f"Configuration file not found at {path}. "
            f"Please ensure the file exists at this path.",
        )

    try:
        data = _read_yaml_with_env_substitution(path)
    except OSError as e:
        raise ConfigError("config_file", f"Cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(
            "yaml_parse",
            f"Failed to parse YAML file {path}: {str(e)}",
        ) from e

    if data is None:
        raise ConfigError("config_file", f"Configuration file {path} is empty")
    if not isinstance(data, dict):
        raise ConfigError(
            "config_file",
            f"Configuration file {path} must contain a mapping of options",
        )

    model = CONFIG_MODELS[provider]
    try:
        config = model.model_validate(data)
    except PydanticValidationError as e:
        error_messages = flatten_pydantic_errors(e)
        error_text = "\n".join(error_messages)
        raise ConfigError(
            "config_validation",
            f"Invalid {provider.value} configuration in {path}:\n{error_text}",
        ) from e

    resolved = config.with_resolved_paths(path.absolute().parent)
    logger.debug(
        f"Resolved {provider.value} configuration for '{resolved.service_name}'"
    )
    return resolved
