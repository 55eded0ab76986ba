"""YAML configuration parser for stackweave."""

from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import ValidationError

from .models import Settings, StackConfig

DEFAULT_CONFIG_FILE = "stackweave.yaml"


class ConfigValidationError(Exception):
    """Exception raised when configuration validation fails."""

    def __init__(self, message: str, errors: Optional[List[Dict]] = None):
        self.message = message
        self.errors = errors or []
        super().__init__(self.message)

    def __str__(self) -> str:
        """Format validation errors for display."""
        if not self.errors:
            return self.message

        error_lines = [self.message, ""]
        for error in self.errors:
            location = " -> ".join(str(loc) for loc in error.get("loc", []))
            msg = error.get("msg", "Unknown error")
            error_lines.append(f"  - {location}: {msg}")

        return "\n".join(error_lines)


class Config:
    """Configuration manager for stackweave."""

    def __init__(self, config_path: str = DEFAULT_CONFIG_FILE):
        """Initialize configuration manager.

        Args:
            config_path: Path to stackweave.yaml configuration file
        """
        self.config_path = Path(config_path)
        self.data: Dict = {}
        self.settings: Settings = Settings()

    def load(self) -> "Config":
        """Load and validate configuration from YAML file.

        A missing file leaves every setting at its default.

        Returns:
            Self for method chaining

        Raises:
            ConfigValidationError: If configuration is invalid
        """
        if not self.config_path.exists():
            self.data = {}
            self.settings = Settings()
            return self

        try:
            with open(self.config_path, "r") as f:
                self.data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigValidationError(f"Failed to parse YAML: {e}")

        validation_errors = self.validate()
        if validation_errors:
            raise ConfigValidationError(
                f"Configuration validation failed with {len(validation_errors)} error(s)",
                validation_errors,
            )

        self.settings = Settings(**self.data)
        return self

    def validate(self) -> List[Dict]:
        """Validate configuration against schema.

        Returns:
            List of validation errors (empty if valid)
        """
        if not isinstance(self.data, dict):
            return [{"loc": [], "msg": "Configuration must be a mapping"}]

        errors = []
        try:
            Settings(**self.data)
        except ValidationError as e:
            for error in e.errors():
                errors.append({"loc": list(error["loc"]), "msg": error["msg"]})
        return errors

    def get_stack(self, stack_name: str) -> StackConfig:
        """Get per-stack defaults, empty if the stack is not configured.

        A relative template path is resolved against the config file.
        """
        stack = self.settings.stacks.get(stack_name)
        if stack is None:
            return StackConfig()
        if stack.template and not Path(stack.template).is_absolute():
            return stack.model_copy(update={"template": str(self.config_path.parent / stack.template)})
        return stack

    def to_dict(self) -> Dict:
        """Convert configuration to dictionary.

        Returns:
            Dictionary representation of configuration
        """
        return self.settings.model_dump()
