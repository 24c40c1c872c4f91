from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    app_name: str = "tenantplane"
    log_level: str = "INFO"

    aws_region: str = "us-east-1"
    # Deployment environment; part of every stack and dedicated table name.
    environment: str = "dev"
    # Project prefix used for stack names, template bucket defaults and event buses.
    project_name: str = "app"

    # Shared multi-tenant table used by all public accounts.
    dynamodb_table_prefix: str = "app_"
    shared_table_name: str | None = None
    # Cross-account role assumed for dedicated (private) tenant tables when set.
    data_plane_role_arn: str | None = None
    # Keep assumed-role sessions short-lived; refresh ahead of expiry.
    data_plane_session_duration_s: int = 3600
    data_plane_refresh_buffer_s: int = 300

    # Bucket/key holding the private-account stack template.
    cfn_template_bucket: str | None = None
    cfn_template_key: str = "private-account-dynamodb.yaml"
    # Hard ceiling for a single stack create/delete wait.
    stack_max_wait_s: float = 600
    # Interval between stack status polls while waiting.
    stack_poll_interval_s: float = 10

    # Routing cache lifetime; invalidation after provisioning writes is explicit.
    routing_cache_ttl_s: float = 300

    # Provider selection: real AWS adapters or deterministic in-memory fakes.
    parameter_store_provider: str = "ssm"
    stack_provider: str = "cloudformation"
    data_store_provider: str = "dynamodb"
    events_provider: str = "eventbridge"
    metrics_provider: str = "cloudwatch"
    identity_provider: str = "none"

    # Toggle lifecycle event publication without changing provisioning behavior.
    provisioning_events_enabled: bool = True
    eventbridge_bus_name: str | None = None
    event_source: str = "com.platform.account-provisioning"
    # Optional SNS fan-out for immediate success/failure notifications.
    sns_provisioning_success_arn: str | None = None
    sns_provisioning_failure_arn: str | None = None

    # CloudWatch metrics sink; disabled sinks drop records silently.
    cloudwatch_metrics_enabled: bool = True
    cloudwatch_metrics_namespace: str | None = None

    # Identity provider used by bootstrap to create the platform admin.
    cognito_user_pool_id: str | None = None
    bootstrap_admin_email: str = "admin@adminplatform.com"
    bootstrap_admin_group: str = "PlatformAdmins"
    # Run the day-0 bootstrap on API startup when enabled.
    auto_bootstrap: bool = False

    # Job table backend: in-process map or Redis with compare-and-swap claims.
    job_store: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    job_redis_prefix: str = "tenantplane:provisioning"
    # Keep terminal job records around long enough for pollers to observe them.
    job_ttl_s: int = 86400
    # Active-claim lifetime must outlast the longest stack wait.
    job_claim_ttl_s: int = 1800

    # Centralize external call timeouts for AWS integrations (ms).
    ext_call_timeout_ms: int = 8000
    # Retry transient integration failures for a bounded number of attempts.
    ext_retry_max_attempts: int = 3
    # Base backoff between retry attempts (ms), jittered per call.
    ext_retry_backoff_ms: int = 200
    # Circuit breaker thresholds for external integrations.
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_half_open_trials: int = 2
    # Share breaker state across API instances through Redis.
    cb_shared_state: bool = False
    # Prefix circuit breaker keys to isolate environments.
    cb_redis_prefix: str = "tenantplane:cb"

    def resolved_shared_table_name(self) -> str:
        # Prefer an explicit table name; fall back to the prefix convention.
        return self.shared_table_name or f"{self.dynamodb_table_prefix}data"

    def resolved_template_bucket(self) -> str:
        return self.cfn_template_bucket or f"{self.project_name}-cfn-templates"

    def resolved_event_bus_name(self) -> str:
        return self.eventbridge_bus_name or f"{self.project_name}-{self.environment}-account-provisioning"

    def resolved_metrics_namespace(self) -> str:
        return self.cloudwatch_metrics_namespace or f"{self.project_name}/Application"


@lru_cache
def get_settings() -> Settings:
    return Settings()
