"""Pytest configuration and shared fixtures for LaunchDeck tests."""

import os
from collections.abc import Generator
from pathlib import Path

import pytest


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Saves current environment and restores after test.

    Yields:
        Dictionary of original environment variables
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a minimal service project with a Dockerfile and .env file.

    Returns:
        Path to the project root (contains pyproject.toml)
    """
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'todo'\n")
    (tmp_path / "Dockerfile").write_text(
        "FROM python:3.12-slim\nCOPY . /app\nCMD [\"python\", \"-m\", \"todo\"]\n"
    )
    (tmp_path / ".env").write_text("DATABASE_URL=sqlite:///todo.db\nDEBUG=false\n")
    return tmp_path


@pytest.fixture
def write_config(project_dir: Path):
    """Write a YAML config file under project_dir/deploy and return its path."""

    def _write(content: str, name: str = "config.yaml") -> Path:
        deploy_dir = project_dir / "deploy"
        deploy_dir.mkdir(exist_ok=True)
        path = deploy_dir / name
        path.write_text(content)
        return path

    return _write
