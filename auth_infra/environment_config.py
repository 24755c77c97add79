"""Environment-specific settings for the auth infrastructure stacks."""

from dataclasses import dataclass, replace

from aws_cdk import Duration, RemovalPolicy
from aws_cdk import aws_logs as logs


@dataclass(frozen=True)
class EnvironmentConfig:
    removal_policy: RemovalPolicy
    log_retention: logs.RetentionDays
    enable_alarms: bool
    lambda_timeout: Duration
    max_retries: int = 5
    base_delay_ms: int = 1000
    backoff_multiplier: float = 2
    max_delay_ms: int = 30000


# Optimised for cost and a fast development loop
DEV_TEST_CONFIG = EnvironmentConfig(
    removal_policy=RemovalPolicy.DESTROY,
    log_retention=logs.RetentionDays.ONE_WEEK,
    enable_alarms=False,
    lambda_timeout=Duration.minutes(10),
)

PROD_CONFIG = EnvironmentConfig(
    removal_policy=RemovalPolicy.RETAIN,
    log_retention=logs.RetentionDays.ONE_MONTH,
    enable_alarms=True,
    lambda_timeout=Duration.minutes(10),
)


def get_environment_config(env_type: str) -> EnvironmentConfig:
    """Return the config for an environment name; anything unknown is dev-test."""
    if env_type.lower() in ("prod", "production"):
        return PROD_CONFIG
    return DEV_TEST_CONFIG


def merge_environment_config(base: EnvironmentConfig, **overrides) -> EnvironmentConfig:
    """Copy of ``base`` with individual settings overridden."""
    return replace(base, **overrides)
