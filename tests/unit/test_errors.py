"""Tests for custom exception hierarchy in launchdeck.lib.errors."""

import pytest

from launchdeck.lib.errors import (
    AuthError,
    BuildError,
    CloudSDKNotInstalledError,
    CommandError,
    ConfigError,
    DeploymentError,
    DestroyStepError,
    DockerNotAvailableError,
    LaunchDeckError,
    LogSinkNotFoundError,
    ProvisionError,
)


class TestConfigError:
    """Tests for ConfigError exception."""

    def test_config_error_formats_message_with_field(self) -> None:
        """Test that ConfigError formats messages with field information."""
        error = ConfigError("serviceName", "Field 'serviceName' is required")
        assert "serviceName" in str(error)
        assert "required" in str(error).lower()

    def test_config_error_keeps_plain_message(self) -> None:
        """Test that .message excludes the field prefix."""
        error = ConfigError("region", "Invalid value")
        assert error.field == "region"
        assert error.message == "Invalid value"

    def test_config_error_with_multiline_message(self) -> None:
        """Test ConfigError handles multiline messages."""
        error = ConfigError("field", "Line 1\nLine 2")
        assert "Line 1" in str(error)
        assert "Line 2" in str(error)


class TestOperationalErrors:
    """Tests for errors raised by lifecycle operations."""

    @pytest.mark.parametrize(
        "error",
        [
            ConfigError("f", "m"),
            AuthError("aws-cluster", "m"),
            ProvisionError("ecr", "m"),
            BuildError("push", "m"),
            DestroyStepError("role", "m"),
            CommandError("az account show", 1),
            DeploymentError("deploy", "m"),
            CloudSDKNotInstalledError("gcp", "google-cloud-run"),
            DockerNotAvailableError("build"),
            LogSinkNotFoundError("/ecs/todo"),
        ],
    )
    def test_all_errors_share_base_class(self, error: Exception) -> None:
        """Test every error can be caught as LaunchDeckError."""
        assert isinstance(error, LaunchDeckError)

    def test_auth_error_names_provider(self) -> None:
        """Test AuthError includes the provider."""
        error = AuthError("azure-containerapp", "no token")
        assert "azure-containerapp" in str(error)
        assert error.message == "no token"

    def test_build_error_names_stage(self) -> None:
        """Test BuildError includes the failing stage."""
        error = BuildError("login", "denied")
        assert error.stage == "login"
        assert "login" in str(error)

    def test_command_error_includes_output(self) -> None:
        """Test CommandError appends captured output."""
        error = CommandError("gcloud services enable", 2, "permission denied\n")
        assert error.returncode == 2
        assert "status 2" in str(error)
        assert str(error).endswith("permission denied")

    def test_command_error_without_output(self) -> None:
        """Test CommandError message when output was streamed."""
        error = CommandError("az login", 1)
        assert str(error) == "Command 'az login' exited with status 1"

    def test_cloud_sdk_error_points_at_install_extra(self) -> None:
        """Test CloudSDKNotInstalledError suggests the provider extra."""
        error = CloudSDKNotInstalledError("aws-serverless", "boto3")
        assert "pip install 'launchdeck[aws]'" in error.message
        assert "boto3" in str(error)

    def test_destroy_step_error_names_step(self) -> None:
        """Test DestroyStepError carries the step name."""
        error = DestroyStepError("IAM role todo-task-role", "DeleteConflict")
        assert error.step == "IAM role todo-task-role"
        assert "DeleteConflict" in str(error)
