"""Pydantic schemas for per-target deployment configuration."""
from __future__ import annotations

from typing import Dict, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .core.exceptions import ConfigError
from .deployment.models import (
    AlarmConfig,
    AutoScalingConfig,
    MissingDataPolicy,
    RolloutStrategy,
    StrategyType,
    WarmPool,
)
from .deployment.planner import DEPLOYMENT_PREFERENCES, strategy_from_preference


class StrategySchema(BaseModel):
    """Validated schema for an explicit rollout strategy."""

    type: Literal["LINEAR", "CANARY", "ALL_AT_ONCE"]
    step_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    step_interval: float = Field(default=0.0, ge=0.0)
    initial_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    bake_duration: float = Field(default=0.0, ge=0.0)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_parameters(self) -> "StrategySchema":
        """Ensure the parameters required by the strategy type are usable."""
        if self.type == "LINEAR" and self.step_percent <= 0:
            raise ValueError("LINEAR strategy requires step_percent > 0")
        if self.type == "CANARY" and not 0 < self.initial_percent < 100:
            raise ValueError(
                f"CANARY strategy requires initial_percent in (0, 100), got {self.initial_percent}"
            )
        return self

    def to_strategy(self) -> RolloutStrategy:
        return RolloutStrategy(
            StrategyType(self.type),
            step_percent=self.step_percent,
            step_interval=self.step_interval,
            initial_percent=self.initial_percent,
            bake_duration=self.bake_duration,
        )


class AlarmSchema(BaseModel):
    """Validated schema for the error-rate alarm."""

    enabled: bool = Field(default=True)
    error_rate_threshold: float = Field(default=0.05, gt=0.0, lt=1.0)
    evaluation_periods: int = Field(default=2, ge=1, le=1000)
    period: float = Field(default=60.0, gt=0.0)
    treat_missing_data: Literal["not_breaching", "breaching", "ignore"] = Field(
        default="not_breaching"
    )

    def to_alarm_config(self) -> AlarmConfig:
        return AlarmConfig(
            enabled=self.enabled,
            error_rate_threshold=self.error_rate_threshold,
            evaluation_periods=self.evaluation_periods,
            period=self.period,
            treat_missing_data=MissingDataPolicy(self.treat_missing_data),
        )


class AutoScalingSchema(BaseModel):
    """Validated schema for warm pool autoscaling."""

    enabled: bool = Field(default=False)
    min_capacity: int = Field(default=0, ge=0)
    max_capacity: int = Field(default=0, ge=0)
    utilization_target: float = Field(default=0.7, gt=0.0, le=1.0)

    @model_validator(mode="after")
    def validate_bounds(self) -> "AutoScalingSchema":
        """Ensure min_capacity does not exceed max_capacity."""
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"min_capacity ({self.min_capacity}) must not exceed "
                f"max_capacity ({self.max_capacity})"
            )
        return self

    def to_autoscaling_config(self) -> AutoScalingConfig:
        return AutoScalingConfig(
            enabled=self.enabled,
            min_capacity=self.min_capacity,
            max_capacity=self.max_capacity,
            utilization_target=self.utilization_target,
        )


class TargetDeploymentSchema(BaseModel):
    """Validated schema for a target's deployment configuration."""

    deployment_preference: Optional[str] = Field(default=None, min_length=1, max_length=100)
    strategy: Optional[StrategySchema] = Field(default=None)
    alarm: AlarmSchema = Field(default_factory=AlarmSchema)
    autoscaling: AutoScalingSchema = Field(default_factory=AutoScalingSchema)
    provisioned_concurrency: int = Field(default=0, ge=0)
    blue_green_enabled: bool = Field(default=False)

    @field_validator("deployment_preference")
    @classmethod
    def validate_preference(cls, v: Optional[str]) -> Optional[str]:
        """Ensure the named preference exists."""
        if v is None:
            return v
        name = v.upper()
        if name not in DEPLOYMENT_PREFERENCES:
            raise ValueError(
                f"Unknown deployment preference {v!r}. "
                f"Available: {', '.join(DEPLOYMENT_PREFERENCES)}"
            )
        return name

    @model_validator(mode="after")
    def validate_strategy_source(self) -> "TargetDeploymentSchema":
        """Require either a named preference or an explicit strategy."""
        if self.deployment_preference is None and self.strategy is None:
            raise ValueError("Either deployment_preference or strategy must be set")
        return self

    def to_strategy(self) -> RolloutStrategy:
        if self.strategy is not None:
            return self.strategy.to_strategy()
        return strategy_from_preference(self.deployment_preference)

    def to_alarm_config(self) -> AlarmConfig:
        return self.alarm.to_alarm_config()

    def to_warm_pool(self, target: str) -> Optional[WarmPool]:
        """Warm pool for the target, or None when no warm capacity is configured."""
        scaling = self.autoscaling.to_autoscaling_config()
        if not scaling.enabled and self.provisioned_concurrency == 0:
            return None
        if scaling.enabled:
            return WarmPool.from_autoscaling(target, scaling, current=self.provisioned_concurrency)
        # Fixed provisioned concurrency without autoscaling
        return WarmPool(
            target=target,
            current=self.provisioned_concurrency,
            min=self.provisioned_concurrency,
            max=self.provisioned_concurrency,
            utilization_target=scaling.utilization_target,
            enabled=False,
        )

    def tags(self) -> Dict[str, str]:
        if not self.blue_green_enabled:
            return {}
        return {
            "DeploymentStrategy": "BlueGreen",
            "TrafficShifting": self.deployment_preference or self.to_strategy().type.value,
        }


def validate_target_config(config_dict: dict) -> TargetDeploymentSchema:
    """
    Validate a target deployment configuration dictionary.

    Raises:
        ConfigError: With the pydantic validation details
    """
    try:
        return TargetDeploymentSchema.model_validate(config_dict or {})
    except ValidationError as e:
        raise ConfigError(
            f"Invalid deployment configuration: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e
