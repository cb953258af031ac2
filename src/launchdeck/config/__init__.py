"""Configuration loading and validation for LaunchDeck deployments.

Main components:
- resolve_config: Load a provider configuration file into an immutable model
- Environment variable substitution (${VAR_NAME} pattern)
- Dotenv environment file loading for the deployed workload
"""

from launchdeck.config.env_loader import load_environment_file, substitute_env_vars
from launchdeck.config.loader import resolve_config

__all__ = [
    "load_environment_file",
    "resolve_config",
    "substitute_env_vars",
]
