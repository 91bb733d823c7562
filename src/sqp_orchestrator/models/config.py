"""Configuration management for the SQP report orchestrator."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from sqp_orchestrator.models.data_models import ReportType


class OrchestratorConfig(BaseModel):
    """Orchestrator configuration injected into every component at construction."""

    # Run scope
    environment: str = Field(default="production", description="Deployment environment name")
    allowed_user_ids: List[int] = Field(
        default=[],
        description="Outside production, only these users are processed (empty = all)",
    )
    report_types: List[str] = Field(
        default=["WEEK", "MONTH", "QUARTER"],
        description="Report period types requested per run",
    )
    timezone: str = Field(default="UTC", description="Default timezone for sellers without one")

    # Availability thresholds
    week_unlock_weekday: int = Field(default=2, description="Sunday-based weekday WEEK reports unlock on (2 = Tuesday)")
    month_unlock_day: int = Field(default=3, description="Day of month MONTH reports unlock on")
    quarter_unlock_day: int = Field(default=5, description="Day of quarter QUARTER reports unlock on")
    month_rollback_days: int = Field(default=2, description="Early-month days treated as 'previous month unpublished'")

    # Retry configuration
    retry_max_attempts: int = Field(default=5, description="Maximum attempts per phase")
    retry_base_delay: float = Field(default=15.0, description="Backoff base delay in seconds")
    retry_step_seconds: float = Field(default=15.0, description="Backoff increase per attempt in seconds")
    retry_max_delay: float = Field(default=120.0, description="Backoff ceiling in seconds")
    initial_delay_seconds: float = Field(default=30.0, description="Wait between Request and the first status check")
    request_delay_seconds: float = Field(default=0.0, description="Pause after each report request")
    max_download_attempts: int = Field(default=3, description="Maximum attempts per download record")

    # Circuit breaker configuration
    circuit_breaker_threshold: int = Field(default=5, description="Consecutive failures before opening circuit")
    circuit_breaker_timeout: float = Field(default=60.0, description="Seconds a circuit stays open")

    # Rate limiting configuration
    rate_limit_points: int = Field(default=100, description="Outbound API calls per seller per window")
    rate_limit_duration: float = Field(default=60.0, description="Outbound rate limit window in seconds")
    api_rate_limit_points: int = Field(default=100, description="HTTP trigger requests per client per window")
    api_rate_limit_duration: float = Field(default=60.0, description="HTTP trigger rate limit window in seconds")

    # Watchdog configuration
    stuck_threshold_seconds: float = Field(default=3600.0, description="Idle time before a unit is considered stuck")
    stuck_retry_limit: int = Field(default=3, description="Watchdog recoveries before a type is marked Failed")

    # Batching
    max_asins_per_request: int = Field(default=200, description="Maximum ASINs selected per seller run")
    asin_chunk_chars: int = Field(default=200, description="Character budget of one ASIN batch")
    asin_stale_after_hours: float = Field(default=24.0, description="In-progress ASINs older than this are eligible again")

    # Initial pull
    initial_pull_weeks: int = Field(default=52, description="WEEK windows backfilled for a never-pulled seller")
    initial_pull_months: int = Field(default=12, description="MONTH windows backfilled for a never-pulled seller")
    initial_pull_quarters: int = Field(default=4, description="QUARTER windows backfilled for a never-pulled seller")

    # Reporting API
    api_base_url: str = Field(default="https://sellingpartnerapi-na.amazon.com", description="SP-API host")
    connect_timeout: float = Field(default=10.0, description="HTTP connect timeout in seconds")
    read_timeout: float = Field(default=60.0, description="HTTP read timeout in seconds")
    lwa_token_url: str = Field(default="https://api.amazon.com/auth/o2/token", description="LWA token endpoint")
    lwa_client_id: str = Field(default="", description="LWA client id")
    lwa_client_secret: str = Field(default="", description="LWA client secret")
    token_ttl_seconds: float = Field(default=3000.0, description="Access token cache TTL in seconds")
    lwa_refresh_tokens: Dict[str, str] = Field(default={}, description="Refresh token per Amazon seller id")

    # Notifications
    smtp_host: str = Field(default="", description="SMTP host; empty disables email")
    smtp_port: int = Field(default=587, description="SMTP port (465 uses SSL)")
    smtp_user: str = Field(default="", description="SMTP username")
    smtp_password: str = Field(default="", description="SMTP password")
    smtp_from: str = Field(default="", description="From address (defaults to smtp_user)")
    notify_to: List[str] = Field(default=[], description="Failure notification recipients")
    notify_cc: List[str] = Field(default=[], description="Failure notification CC recipients")
    notify_bcc: List[str] = Field(default=[], description="Failure notification BCC recipients")

    # Storage and output
    database_path: str = Field(default="data/sqp.db", description="SQLite database file")
    download_directory: str = Field(default="downloads", description="Directory for downloaded report artifacts")

    # HTTP trigger
    api_host: str = Field(default="127.0.0.1", description="HTTP trigger bind host")
    api_port: int = Field(default=8000, description="HTTP trigger port")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator('report_types')
    @classmethod
    def validate_report_types(cls, v: List[str]) -> List[str]:
        """Normalize report types to enum names."""
        if not v:
            raise ValueError("report_types must not be empty")
        return [ReportType.parse(item).value for item in v]

    @field_validator('retry_max_attempts', 'max_download_attempts', 'circuit_breaker_threshold',
                     'rate_limit_points', 'api_rate_limit_points', 'stuck_retry_limit',
                     'max_asins_per_request', 'initial_pull_weeks', 'initial_pull_months',
                     'initial_pull_quarters')
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v

    @field_validator('week_unlock_weekday')
    @classmethod
    def validate_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError(f"week_unlock_weekday must be between 0 (Sunday) and 6, got: {v}")
        return v

    @field_validator('asin_chunk_chars')
    @classmethod
    def validate_chunk_chars(cls, v: int) -> int:
        if v < 10:
            raise ValueError(f"asin_chunk_chars must hold at least one ASIN, got: {v}")
        return v

    @field_validator('api_base_url', 'lwa_token_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip('/')

    @property
    def enabled_report_types(self) -> List[ReportType]:
        return [ReportType.parse(item) for item in self.report_types]

    def initial_pull_depth(self, report_type: ReportType) -> int:
        return {
            ReportType.WEEK: self.initial_pull_weeks,
            ReportType.MONTH: self.initial_pull_months,
            ReportType.QUARTER: self.initial_pull_quarters,
        }[report_type]

    @property
    def restricts_users(self) -> bool:
        """True when only allowed_user_ids may be processed."""
        return self.environment != "production" and bool(self.allowed_user_ids)

    def is_user_allowed(self, user_id: int) -> bool:
        return not self.restricts_users or user_id in self.allowed_user_ids

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host and self.notify_to)

    # Environment variable overrides
    @classmethod
    def from_env(cls) -> "OrchestratorConfig":
        """Create configuration with environment variable overrides."""
        config = cls()

        env_mappings = {
            "SQP_ENVIRONMENT": "environment",
            "SQP_ALLOWED_USER_IDS": "allowed_user_ids",
            "SQP_REPORT_TYPES": "report_types",
            "SQP_TIMEZONE": "timezone",
            "SQP_RETRY_MAX_ATTEMPTS": "retry_max_attempts",
            "SQP_RETRY_BASE_DELAY": "retry_base_delay",
            "SQP_RETRY_STEP_SECONDS": "retry_step_seconds",
            "SQP_RETRY_MAX_DELAY": "retry_max_delay",
            "SQP_INITIAL_DELAY_SECONDS": "initial_delay_seconds",
            "SQP_REQUEST_DELAY_SECONDS": "request_delay_seconds",
            "SQP_CIRCUIT_BREAKER_THRESHOLD": "circuit_breaker_threshold",
            "SQP_CIRCUIT_BREAKER_TIMEOUT": "circuit_breaker_timeout",
            "SQP_RATE_LIMIT_POINTS": "rate_limit_points",
            "SQP_RATE_LIMIT_DURATION": "rate_limit_duration",
            "SQP_STUCK_THRESHOLD_SECONDS": "stuck_threshold_seconds",
            "SQP_MAX_ASINS_PER_REQUEST": "max_asins_per_request",
            "SQP_WEEKS_TO_PULL": "initial_pull_weeks",
            "SQP_MONTHS_TO_PULL": "initial_pull_months",
            "SQP_QUARTERS_TO_PULL": "initial_pull_quarters",
            "SQP_API_BASE_URL": "api_base_url",
            "SQP_LWA_CLIENT_ID": "lwa_client_id",
            "SQP_LWA_CLIENT_SECRET": "lwa_client_secret",
            "SMTP_HOST": "smtp_host",
            "SMTP_PORT": "smtp_port",
            "SMTP_USER": "smtp_user",
            "SMTP_PASS": "smtp_password",
            "NOTIFY_TO": "notify_to",
            "NOTIFY_CC": "notify_cc",
            "NOTIFY_BCC": "notify_bcc",
            "SQP_DATABASE_PATH": "database_path",
            "SQP_DOWNLOAD_DIRECTORY": "download_directory",
            "SQP_LOG_LEVEL": "log_level",
        }

        for env_var, field_name in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]
                # Convert to appropriate type based on field type
                field_info = cls.model_fields[field_name]
                if field_info.annotation == int:
                    setattr(config, field_name, int(value))
                elif field_info.annotation == float:
                    setattr(config, field_name, float(value))
                elif field_info.annotation == List[int]:
                    setattr(config, field_name, [int(v) for v in _split_list(value)])
                elif field_info.annotation == List[str]:
                    setattr(config, field_name, _split_list(value))
                else:
                    setattr(config, field_name, value)

        return config


def _split_list(value: str) -> List[str]:
    """Parse a comma-separated environment value."""
    return [item.strip() for item in value.split(",") if item.strip()]


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = config_file or Path("config/config.yaml")
        self._config: Optional[OrchestratorConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> OrchestratorConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged OrchestratorConfig instance

        Raises:
            ValueError: If configuration validation fails
        """
        config_dict = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        base_config = OrchestratorConfig(**config_dict)

        # Only env values that differ from defaults override YAML
        merged_dict = base_config.model_dump()
        env_dict = OrchestratorConfig.from_env().model_dump()
        default_dict = OrchestratorConfig().model_dump()
        for key, value in env_dict.items():
            if value != default_dict[key]:
                merged_dict[key] = value

        if cli_overrides:
            cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}
            merged_dict.update(cli_overrides)

        self._config = OrchestratorConfig(**merged_dict)
        return self._config

    @property
    def config(self) -> OrchestratorConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
