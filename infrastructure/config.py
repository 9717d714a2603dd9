"""Configuration management for the CDK app.

Settings are loaded from environment variables prefixed with ``FAST_SCALING_``
(or a ``.env`` file at the repository root) with defaults for the
fast-scaling service resources.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

REPO_ROOT = Path(__file__).parent.parent
DEFAULT_PROFILE_PATH = Path(__file__).parent / "configs" / "scaling_profile.yaml"


class Settings(BaseSettings):
    """Deployment settings loaded from environment variables with defaults."""

    model_config = SettingsConfigDict(
        env_prefix="FAST_SCALING_",
        env_file=str(REPO_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # AWS environment
    account: Optional[str] = Field(
        default=None,
        description="Target AWS account; None leaves the stacks environment-agnostic",
    )
    region: str = Field(
        default="ap-northeast-2",
        description="Target AWS region",
    )

    # ECS resources
    cluster_name: str = Field(default="fast-scaling-cluster", description="ECS cluster name")
    service_name: str = Field(default="fast-scaling-service", description="ECS service name")
    ecr_repository_name: str = Field(
        default="fast-scaling-app",
        description="Existing ECR repository holding the application image",
    )
    image_tag: str = Field(default="latest", description="Image tag for the initial task definition")
    container_name: str = Field(
        default="app",
        description="Application container name; the build writes it into taskdef.json and appspec.yaml",
    )
    container_port: int = Field(default=8080, description="Port the container listens on")
    listener_port: int = Field(default=80, description="ALB production listener port")
    test_listener_port: int = Field(default=9000, description="ALB test listener port for blue/green validation")
    health_check_path: str = Field(default="/health", description="HTTP health check path")
    task_cpu: int = Field(default=512, description="Fargate task CPU units")
    task_memory_mib: int = Field(default=1024, description="Fargate task memory (MiB)")

    # CI/CD resources
    pipeline_name: str = Field(default="fast-scaling-pipeline", description="CodePipeline name")
    build_project_name: str = Field(default="fast-scaling-build", description="Pipeline CodeBuild project")
    github_build_project_name: str = Field(
        default="fast-scaling-github-build",
        description="Standalone GitHub CodeBuild project",
    )
    codedeploy_application_name: str = Field(default="fast-scaling-app", description="CodeDeploy application")
    deployment_group_name: str = Field(
        default="fast-scaling-deployment-group",
        description="CodeDeploy deployment group",
    )
    github_owner: str = Field(default="serithemage", description="GitHub repository owner")
    github_repo: str = Field(default="ecs-fargate-fast-scaleout", description="GitHub repository name")
    github_branch: str = Field(default="main", description="Branch the pipeline tracks")
    github_connection_arn: Optional[str] = Field(
        default=None,
        description="CodeStar connection ARN; when set the pipeline sources through it",
    )
    github_token_secret_name: Optional[str] = Field(
        default="github-token",
        description="Secrets Manager secret holding a GitHub OAuth token",
    )

    # Scaling
    scaling_profile_path: Path = Field(
        default=DEFAULT_PROFILE_PATH,
        description="YAML file with the scaling parameter tables",
    )
    schedule_time_zone: Optional[str] = Field(
        default=None,
        description="IANA time zone for scheduled scaling; None means UTC",
    )

    # Alarms
    alarm_email: Optional[str] = Field(default=None, description="Email subscribed to the alarm topic")

    log_level: str = Field(default="INFO", description="Logging level for synth output")

    @field_validator("container_port", "listener_port", "test_listener_port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        """Validate that port is within valid range."""
        if not (1 <= v <= 65535):
            raise ValueError("Port must be between 1 and 65535")
        return v

    @field_validator("health_check_path")
    @classmethod
    def validate_health_check_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("Health check path must start with '/'")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def github_url(self) -> str:
        """HTTPS URL of the application repository."""
        return f"https://github.com/{self.github_owner}/{self.github_repo}"

    @property
    def log_group_name(self) -> str:
        return f"/ecs/{self.service_name}"


# Singleton instance - import this in other modules
settings = Settings()
