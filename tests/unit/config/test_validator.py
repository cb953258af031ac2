"""Tests for flattening pydantic validation errors."""

import pytest
from pydantic import ValidationError

from launchdeck.config.validator import flatten_pydantic_errors
from launchdeck.models.deployment import AwsClusterConfig, GcpRunConfig


class TestFlattenPydanticErrors:
    """Tests for flatten_pydantic_errors."""

    def test_missing_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            GcpRunConfig.model_validate({"serviceName": "todo"})
        messages = flatten_pydantic_errors(exc_info.value)
        assert any("required field is missing" in m for m in messages)
        assert any("projectId" in m for m in messages)

    def test_unknown_option(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            AwsClusterConfig.model_validate({"serviceName": "todo", "typo": 1})
        messages = flatten_pydantic_errors(exc_info.value)
        assert messages == ["Field 'typo': unknown option"]

    def test_value_error_includes_received_value(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            AwsClusterConfig.model_validate({"serviceName": "todo", "cpu": 300})
        messages = flatten_pydantic_errors(exc_info.value)
        assert len(messages) == 1
        assert "received: 300" in messages[0]
