"""Tests for configuration loading and validation."""

import pytest
from pydantic import ValidationError

from stackweave.config import Config, ConfigValidationError, RetrySettings, Settings, StackConfig


def write_config(tmp_path, text: str):
    path = tmp_path / "stackweave.yaml"
    path.write_text(text)
    return path


class TestConfig:
    """Tests for Config."""

    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        """Test that a missing config file is not an error."""
        config = Config(str(tmp_path / "absent.yaml")).load()

        assert config.settings.provider == "local"
        assert config.settings.parallelism == 4
        assert config.settings.rollback == "none"
        assert config.to_dict()["state_dir"] == ".stackweave/state"

    def test_overrides(self, tmp_path) -> None:
        """Test that values from the file replace defaults."""
        path = write_config(tmp_path, """
provider: cloudcontrol
region: eu-west-1
parallelism: 8
rollback: automatic
retry:
  max_retries: 2
imports:
  VPCId: vpc-0abc
""")
        settings = Config(str(path)).load().settings

        assert settings.provider == "cloudcontrol"
        assert settings.region == "eu-west-1"
        assert settings.parallelism == 8
        assert settings.rollback == "automatic"
        assert settings.retry.max_retries == 2
        assert settings.retry.max_delay == 60.0
        assert settings.imports == {"VPCId": "vpc-0abc"}

    def test_invalid_values(self, tmp_path) -> None:
        """Test that every invalid value is reported with its location."""
        path = write_config(tmp_path, "parallelism: 0\nregion: nowhere\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()

        locations = [error["loc"] for error in exc_info.value.errors]
        assert ["parallelism"] in locations
        assert ["region"] in locations
        assert "2 error(s)" in str(exc_info.value)
        assert "  - parallelism:" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path) -> None:
        """Test that unparsable YAML is a validation error."""
        path = write_config(tmp_path, "parallelism: [1, 2\n")

        with pytest.raises(ConfigValidationError, match="Failed to parse YAML"):
            Config(str(path)).load()

    def test_not_a_mapping(self, tmp_path) -> None:
        """Test that the document must be a mapping."""
        path = write_config(tmp_path, "- a\n- b\n")

        with pytest.raises(ConfigValidationError) as exc_info:
            Config(str(path)).load()
        assert exc_info.value.errors == [{"loc": [], "msg": "Configuration must be a mapping"}]

    def test_get_stack(self, tmp_path) -> None:
        """Test per-stack defaults and template path resolution."""
        path = write_config(tmp_path, """
stacks:
  app:
    template: templates/app.yaml
    parameters:
      InstanceCount: 3
      AMIId: ami-0abc
""")
        config = Config(str(path)).load()

        stack = config.get_stack("app")
        assert stack.template == str(tmp_path / "templates" / "app.yaml")
        assert stack.parameters == {"InstanceCount": "3", "AMIId": "ami-0abc"}
        assert config.get_stack("other") == StackConfig()


class TestSettings:
    """Tests for the settings models."""

    def test_retry_delays_ordered(self) -> None:
        """Test that max_delay may not undercut base_delay."""
        with pytest.raises(ValidationError, match="max_delay"):
            RetrySettings(base_delay=10, max_delay=1)

    def test_polling_intervals_ordered(self) -> None:
        """Test that max_interval may not undercut initial_interval."""
        with pytest.raises(ValidationError, match="max_interval"):
            Settings(polling={"initial_interval": 5, "max_interval": 1})

    def test_unknown_provider(self) -> None:
        """Test that only known providers are accepted."""
        with pytest.raises(ValidationError):
            Settings(provider="azure")

    def test_gov_region(self) -> None:
        """Test that GovCloud regions are valid."""
        assert Settings(region="us-gov-west-1").region == "us-gov-west-1"

    def test_to_strategy_and_backoff(self) -> None:
        """Test conversion to runtime policies."""
        settings = Settings(
            retry={"max_retries": 2, "base_delay": 0.5, "max_delay": 4, "jitter": False},
            polling={"initial_interval": 2, "max_interval": 10, "timeout": 60},
        )

        strategy = settings.retry.to_strategy()
        assert strategy.max_retries == 2
        assert strategy.get_delay(0) == 0.5
        assert strategy.get_delay(10) == 4

        backoff = settings.polling.to_backoff()
        assert backoff.initial_interval == 2
        assert backoff.max_interval == 10
        assert backoff.timeout == 60
