"""Pydantic models for configuration schema."""

import re
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from stackweave.utils.retry import PollingBackoff, RetryStrategy

REGION_PATTERN = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")


class RetrySettings(BaseModel):
    """Retry policy for transient provider errors."""

    max_retries: int = Field(5, ge=0, le=20)
    base_delay: float = Field(1.0, gt=0)
    max_delay: float = Field(60.0, gt=0)
    jitter: bool = True

    @model_validator(mode="after")
    def validate_delays(self):
        """Validate that the delay bounds are ordered."""
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must not be smaller than base_delay")
        return self

    def to_strategy(self) -> RetryStrategy:
        return RetryStrategy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
        )


class PollingSettings(BaseModel):
    """Polling backoff while waiting for a provider operation."""

    initial_interval: float = Field(1.0, gt=0)
    max_interval: float = Field(30.0, gt=0)
    timeout: float = Field(1800.0, gt=0, description="Seconds before an operation is timed out")

    @model_validator(mode="after")
    def validate_intervals(self):
        """Validate that the interval bounds are ordered."""
        if self.max_interval < self.initial_interval:
            raise ValueError("max_interval must not be smaller than initial_interval")
        return self

    def to_backoff(self) -> PollingBackoff:
        return PollingBackoff(
            initial_interval=self.initial_interval,
            max_interval=self.max_interval,
            timeout=self.timeout,
        )


class StackConfig(BaseModel):
    """Per-stack defaults."""

    template: Optional[str] = Field(None, description="Template path, relative to the config file")
    parameters: Dict[str, str] = Field(default_factory=dict)

    @field_validator("parameters", mode="before")
    @classmethod
    def stringify_parameters(cls, v: Any) -> Any:
        """Accept YAML scalars such as numbers for parameter values."""
        if isinstance(v, dict):
            return {key: value if isinstance(value, str) else str(value) for key, value in v.items()}
        return v


class Settings(BaseModel):
    """Top-level stackweave.yaml settings."""

    state_dir: str = Field(".stackweave/state", min_length=1)
    local_cloud_file: str = Field(
        ".stackweave/local-cloud.json",
        description="Backing file of the local provider"
    )
    region: Optional[str] = None
    profile: Optional[str] = None
    provider: str = Field("local", pattern="^(local|cloudcontrol)$")
    parallelism: int = Field(4, ge=1, le=64)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    polling: PollingSettings = Field(default_factory=PollingSettings)
    lease_ttl: float = Field(900.0, gt=0)
    drift_interval: float = Field(300.0, gt=0)
    rollback: str = Field("none", pattern="^(none|automatic)$")
    log_level: str = Field("info", pattern="^(debug|info|warning|error)$")
    log_dir: Optional[str] = ".stackweave/logs"
    imports: Dict[str, Any] = Field(
        default_factory=dict,
        description="Exports owned by stacks outside the state directory"
    )
    stacks: Dict[str, StackConfig] = Field(default_factory=dict)

    @field_validator("region")
    @classmethod
    def validate_region(cls, v: Optional[str]) -> Optional[str]:
        """Validate AWS region format."""
        if v is not None and not REGION_PATTERN.match(v):
            raise ValueError(f"Invalid AWS region: {v}")
        return v

    @field_validator("imports")
    @classmethod
    def validate_imports(cls, v: Dict[str, Any]) -> Dict[str, Any]:
        """Validate export names."""
        for name in v:
            if not name or not isinstance(name, str):
                raise ValueError(f"Import name must be a non-empty string: {name}")
        return v
