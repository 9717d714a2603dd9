"""Scaling parameter tables for the fast-scaling ECS service.

The autoscaling stack is a thin translation of these tables into Application
Auto Scaling resources. Keeping them as validated pydantic models means a bad
threshold or an overlapping interval fails at synth time, before anything
reaches CloudFormation.

The default tables live in ``configs/scaling_profile.yaml``.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

import yaml
from aws_cdk import aws_applicationautoscaling as appscaling
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

WEEK_DAYS = {"SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"}


class StepInterval(BaseModel):
    """One row of a step-scaling table: a metric range and its capacity delta."""

    lower: Optional[float] = Field(default=None, description="Inclusive lower bound")
    upper: Optional[float] = Field(default=None, description="Exclusive upper bound")
    change: int = Field(description="Tasks to add (positive) or remove (negative)")

    @model_validator(mode="after")
    def validate_bounds(self) -> "StepInterval":
        if self.lower is None and self.upper is None:
            raise ValueError("A scaling interval needs a lower or an upper bound")
        if self.lower is not None and self.upper is not None and self.lower >= self.upper:
            raise ValueError(f"Interval lower bound {self.lower} must be below upper bound {self.upper}")
        if self.change == 0:
            raise ValueError("A scaling interval must change capacity")
        return self

    @property
    def sort_key(self) -> float:
        return self.lower if self.lower is not None else self.upper

    def to_scaling_interval(self) -> appscaling.ScalingInterval:
        return appscaling.ScalingInterval(lower=self.lower, upper=self.upper, change=self.change)


class StepPolicyConfig(BaseModel):
    """A step-scaling policy driven by a single CloudWatch metric."""

    metric_namespace: str
    metric_name: str
    statistic: str = "Average"
    period_seconds: int = Field(description="Metric period; 10, 30 or a multiple of 60")
    cooldown_seconds: int = Field(ge=0)
    use_service_dimensions: bool = Field(
        default=False,
        description="Scope the metric to the ECS service with ServiceName/ClusterName",
    )
    steps: List[StepInterval]

    @field_validator("period_seconds")
    @classmethod
    def validate_period(cls, v: int) -> int:
        """CloudWatch accepts high-resolution periods of 10 or 30 seconds, else whole minutes."""
        if v in (10, 30) or (v > 0 and v % 60 == 0):
            return v
        raise ValueError(f"Metric period must be 10, 30 or a multiple of 60 seconds, got {v}")

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v: List[StepInterval]) -> List[StepInterval]:
        """Check the table can be completed into non-overlapping intervals.

        Missing bounds are filled from the neighbouring interval when the
        policy is synthesized, so two adjacent intervals may not both leave
        the shared edge open.
        """
        if len(v) < 2:
            raise ValueError("A step scaling policy needs at least 2 intervals")

        ordered = sorted(v, key=lambda step: step.sort_key)
        for current, following in zip(ordered, ordered[1:]):
            if current.upper is None and following.lower is None:
                raise ValueError(
                    f"Cannot determine the boundary between {current.model_dump()} "
                    f"and {following.model_dump()}"
                )
            # An upper-only interval starts where the previous one ends
            following_lower = following.lower if following.lower is not None else current.upper
            if (
                current.upper is None
                or current.upper > following_lower
                or (following.upper is not None and following_lower >= following.upper)
            ):
                raise ValueError(
                    f"Scaling intervals overlap: {current.model_dump()} and {following.model_dump()}"
                )
        return ordered

    @property
    def direction(self) -> str:
        """'out' when every step adds capacity, 'in' when every step removes it."""
        if all(step.change > 0 for step in self.steps):
            return "out"
        if all(step.change < 0 for step in self.steps):
            return "in"
        return "mixed"

    def to_scaling_intervals(self) -> List[appscaling.ScalingInterval]:
        return [step.to_scaling_interval() for step in self.steps]


class TargetTrackingConfig(BaseModel):
    """Backup target tracking on average service CPU."""

    target_value: float = Field(gt=0, le=100)
    scale_in_cooldown_seconds: int = Field(default=300, ge=0)
    scale_out_cooldown_seconds: int = Field(default=60, ge=0)


class ScheduledScalingConfig(BaseModel):
    """A cron-scheduled capacity change for predictable traffic."""

    name: str
    hour: str
    minute: str = "0"
    week_day: Optional[str] = None
    min_capacity: int = Field(ge=0)
    max_capacity: int = Field(ge=1)

    @field_validator("hour", "minute", mode="before")
    @classmethod
    def normalize_cron_field(cls, v: Union[int, str]) -> str:
        return str(v)

    @field_validator("week_day")
    @classmethod
    def validate_week_day(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        day = v.upper()
        if day not in WEEK_DAYS and not any(sep in day for sep in ("-", ",")):
            raise ValueError(f"Unknown week day: {v}")
        return day

    @model_validator(mode="after")
    def validate_capacity(self) -> "ScheduledScalingConfig":
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"Schedule {self.name}: min_capacity {self.min_capacity} "
                f"exceeds max_capacity {self.max_capacity}"
            )
        return self

    def to_schedule(self) -> appscaling.Schedule:
        if self.week_day:
            return appscaling.Schedule.cron(hour=self.hour, minute=self.minute, week_day=self.week_day)
        return appscaling.Schedule.cron(hour=self.hour, minute=self.minute)


class ScalingProfile(BaseModel):
    """Every scaling parameter applied to the ECS service's desired count."""

    min_capacity: int = Field(ge=0)
    max_capacity: int = Field(ge=1)
    rps_scale_out: StepPolicyConfig
    rps_scale_in: StepPolicyConfig
    cpu_scale_out: StepPolicyConfig
    memory_scale_out: StepPolicyConfig
    cpu_target_tracking: TargetTrackingConfig
    schedules: List[ScheduledScalingConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_profile(self) -> "ScalingProfile":
        if self.min_capacity > self.max_capacity:
            raise ValueError(
                f"min_capacity {self.min_capacity} exceeds max_capacity {self.max_capacity}"
            )

        names = [schedule.name for schedule in self.schedules]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate schedule names: {', '.join(duplicates)}")

        for schedule in self.schedules:
            if schedule.max_capacity > self.max_capacity:
                raise ValueError(
                    f"Schedule {schedule.name} max_capacity {schedule.max_capacity} "
                    f"exceeds profile max_capacity {self.max_capacity}"
                )

        if self.rps_scale_out.direction != "out":
            raise ValueError("rps_scale_out steps must all add capacity")
        if self.rps_scale_in.direction != "in":
            raise ValueError("rps_scale_in steps must all remove capacity")
        return self


def load_scaling_profile(path: Path) -> ScalingProfile:
    """Load and validate a scaling profile from a YAML file.

    Args:
        path: Path to the YAML profile.

    Returns:
        The validated ScalingProfile.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file does not contain a mapping.
        pydantic.ValidationError: If any table fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scaling profile not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ValueError(f"Scaling profile {path} must be a YAML mapping")

    profile = ScalingProfile.model_validate(data)
    logger.info(
        f"Loaded scaling profile from {path}: capacity {profile.min_capacity}-{profile.max_capacity}, "
        f"{len(profile.schedules)} schedules"
    )
    return profile
