# src/ecs_deploy/config/settings.py
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """
    Single source of truth for all controller settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from ecs_deploy.config.settings import get_settings
        settings = get_settings()
        ttl = settings.cache_ttl_seconds
    """

    # Application Settings
    app_name: str = Field(
        default="ecs-deploy",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    aws_account_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCOUNT_ID",
        description="AWS Account ID (resolved through STS if not provided)"
    )

    # Persistence
    db_path: str = Field(
        default="ecs_deploy.db",
        alias="DB_PATH",
        description="SQLite document store holding deployments, services and cluster snapshots"
    )

    # Provisioning collaborators
    ecs_service_role: str = Field(
        default="ecs-service-role",
        alias="AWS_ECS_SERVICE_ROLE",
        description="Role ECS uses to register load balanced services"
    )

    paramstore_enabled: bool = Field(
        default=False,
        alias="PARAMSTORE_ENABLED"
    )

    paramstore_prefix: str = Field(
        default="",
        alias="PARAMSTORE_PREFIX"
    )

    aws_account_env: str = Field(
        default="",
        alias="AWS_ACCOUNT_ENV",
        description="Environment suffix used in parameter paths and log groups"
    )

    cloudwatch_logs_enabled: bool = Field(
        default=False,
        alias="CLOUDWATCH_LOGS_ENABLED"
    )

    cloudwatch_logs_prefix: str = Field(
        default="",
        alias="CLOUDWATCH_LOGS_PREFIX"
    )

    default_container_cpu_limit: Optional[int] = Field(
        default=None,
        alias="DEFAULT_CONTAINER_CPU_LIMIT",
        description="CPU units applied to containers that do not set one"
    )

    # Resource cache and scaling
    cache_ttl_seconds: int = Field(
        default=240,
        description="Age after which a cluster snapshot is rebuilt from the platform"
    )

    scaling_cooldown_seconds: int = Field(
        default=300,
        description="Minimum interval between two fleet-size mutations of one cluster"
    )

    scale_down_memory_buffer_ratio: float = Field(
        default=0.5,
        description="Share of the worst-case memory reservation kept free on scale down"
    )

    scale_down_cpu_buffer_ratio: float = Field(
        default=0.0,
        description="Share of the worst-case cpu reservation kept free on scale down"
    )

    # Deployment watcher
    default_deploy_timeout_minutes: int = Field(
        default=15,
        description="Stability timeout when no health check grace period is set"
    )

    waiter_delay_seconds: int = Field(
        default=15,
        description="Delay between two stability polls"
    )

    rollback_history_limit: int = Field(
        default=10,
        description="Number of recent deployments examined for a rollback target"
    )

    # Drain watcher
    drain_poll_interval_seconds: int = Field(
        default=15
    )

    drain_max_attempts: int = Field(
        default=80
    )

    # Event transport
    sqs_queue_url: Optional[str] = Field(
        default=None,
        alias="SQS_QUEUE_URL",
        description="Queue receiving ECS state change and lifecycle notifications"
    )

    sqs_wait_time_seconds: int = Field(
        default=20,
        description="Long poll wait time for the event worker"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode', mode='before')
    @classmethod
    def normalize_deployment_mode(cls, v):
        """Normalize deployment mode values for backwards compatibility."""
        if v:
            mode_mapping = {
                "local-mock": "local-dev",
                "cloud": "aws-prod",
            }
            return mode_mapping.get(v, v)
        return v

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('default_container_cpu_limit', mode='before')
    @classmethod
    def empty_cpu_limit_is_unset(cls, v):
        if v == "":
            return None
        return v

    @property
    def uses_local_endpoint(self) -> bool:
        return self.deployment_mode in ["local-dev", "aws-mock"] and bool(self.aws_endpoint_url)

    @property
    def paramstore_path_prefix(self) -> str:
        """Parameter store path prefix shared by all services, e.g. /myorg-prod/"""
        return f"/{self.paramstore_prefix}-{self.aws_account_env}/"

    @property
    def cloudwatch_log_group(self) -> str:
        if not self.cloudwatch_logs_prefix:
            return ""
        return f"{self.cloudwatch_logs_prefix}-{self.aws_account_env}"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        extra="allow",
        populate_by_name=True
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Using lru_cache ensures we only create one Settings instance,
    which is more efficient and ensures consistency.
    """
    return Settings()
