"""Environment variable handling for configuration files.

Two concerns live here: ``${VAR}`` substitution in raw configuration text,
and reading the workload's dotenv environment file.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values

from launchdeck.lib.errors import ConfigError
from launchdeck.lib.logging_config import get_logger

logger = get_logger(__name__)

# Matches ${VAR_NAME} and ${VAR_NAME:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def substitute_env_vars(
    text: str, environ: Mapping[str, str] | None = None
) -> str:
    """Replace ``${VAR}`` references in text with environment values.

    Args:
        text: Raw configuration text
        environ: Environment mapping, defaults to ``os.environ``

    Returns:
        Text with every reference substituted

    Raises:
        ConfigError: If a referenced variable is unset and has no default

    Example:
        >>> substitute_env_vars("region: ${REGION:-us-east-1}", {})
        'region: us-east-1'
    """
    env = os.environ if environ is None else environ

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        if name in env:
            return env[name]
        if default is not None:
            return default
        raise ConfigError(
            name,
            f"Environment variable '{name}' is referenced but not set",
        )

    return ENV_VAR_PATTERN.sub(_replace, text)


def load_environment_file(path: str | Path) -> dict[str, str]:
    """Read a dotenv file into a dictionary.

    A missing file is not an error: the workload simply gets no extra
    variables. Keys declared without a value are skipped.

    Args:
        path: Path to the dotenv file

    Returns:
        Mapping of variable names to values
    """
    env_path = Path(path)
    if not env_path.is_file():
        logger.warning(f"Environment file not found, skipping: {env_path}")
        return {}

    values = dotenv_values(env_path)
    env = {key: value for key, value in values.items() if value is not None}
    logger.debug(f"Loaded {len(env)} variables from {env_path}")
    return env
