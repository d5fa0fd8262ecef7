"""
Configuration Module
====================

Process settings and domain constants for the SLA engine.

Settings are loaded from environment variables with Pydantic. Engine tuning
(thresholds for escalation, scoring weights, analysis sensitivity) lives in the
YAML-backed SLAEngineConfig, see sla.domain.value_objects.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Uses Pydantic for validation and type safety.
    """

    # ========== Application ==========
    app_name: str = Field(default="sla-engine", description="Application name")
    app_version: str = Field(default="1.0.0", description="Application version")
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Root log level")

    # ========== Database ==========
    database_url: str = Field(
        default="sqlite+aiosqlite:///./sla_engine.db",
        description="SQLAlchemy async connection URL"
    )
    db_pool_size: int = Field(default=5, description="Database connection pool size", ge=1)
    db_max_overflow: int = Field(default=10, description="Max overflow connections", ge=0)
    use_database: bool = Field(
        default=True,
        description="Persist engine state; in-memory only when disabled"
    )

    # ========== SLA Engine ==========
    sla_config_path: Path = Field(
        default=Path("sla_config.yaml"),
        description="Path to engine configuration YAML file"
    )
    sla_definitions_path: Optional[Path] = Field(
        default=None,
        description="Optional YAML file with SLA definitions registered at startup"
    )
    escalation_check_interval: int = Field(
        default=60,
        description="Seconds between escalation sweeps over active breaches",
        ge=1
    )
    analysis_interval: int = Field(
        default=3600,
        description="Seconds between periodic historical analysis runs (0 disables)",
        ge=0
    )

    # ========== Data Sources ==========
    prometheus_url: Optional[str] = Field(
        default=None,
        description="Prometheus base URL for the 'prometheus' data source"
    )
    prometheus_timeout_seconds: float = Field(default=10.0, ge=0.1, le=60)

    # ========== Slack Integration ==========
    slack_webhook_url: Optional[str] = Field(
        default=None,
        description="Slack webhook URL for breach notifications"
    )
    slack_channel: str = Field(
        default="#sla-alerts",
        description="Slack channel for SLA notifications"
    )
    slack_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for Slack API calls",
        ge=0.1,
        le=30
    )
    webhook_timeout_seconds: float = Field(
        default=5.0,
        description="Timeout for generic webhook notifications",
        ge=0.1,
        le=30
    )

    # ========== Grafana OTLP Metrics ==========
    grafana_host: Optional[str] = Field(
        default=None,
        description="Grafana OTLP gateway URL (e.g., https://otlp-gateway-prod-ap-south-1.grafana.net)"
    )
    grafana_api_key: Optional[str] = Field(
        default=None,
        description="Grafana API key for OTLP authentication"
    )
    grafana_instance_id: Optional[str] = Field(
        default=None,
        description="Grafana instance ID for OTLP authentication"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Ensure environment is one of allowed values."""
        allowed = {"development", "staging", "production", "test"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize log level names."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level: {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    """Returns cached Settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()


# ========== Constants ==========

class MetricType(str):
    """Measured quantity an SLA is defined over."""
    AVAILABILITY = "availability"
    UPTIME = "uptime"
    RESPONSE_TIME = "response_time"
    THROUGHPUT = "throughput"
    ERROR_RATE = "error_rate"
    TRANSACTION_SUCCESS_RATE = "transaction_success_rate"
    DATA_ACCURACY = "data_accuracy"
    RECOVERY_TIME = "recovery_time"


class SLAStatus(str):
    """Status of a calculated SLA metric."""
    COMPLIANT = "compliant"
    AT_RISK = "at_risk"
    BREACHED = "breached"
    UNKNOWN = "unknown"
    MAINTENANCE = "maintenance"


class Severity(str):
    """Breach, pattern and anomaly severities."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class BreachStatus(str):
    """Breach lifecycle states."""
    ACTIVE = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"


class ThresholdBand(str):
    """Threshold bands configurable per SLA."""
    TARGET = "target"
    WARNING = "warning"
    CRITICAL = "critical"
    ESCALATION = "escalation"
    ACCEPTABLE = "acceptable"
    EXCELLENT = "excellent"


class AggregationMethod(str):
    """Statistic used to collapse raw measurements into one value."""
    AVG = "avg"
    MIN = "min"
    MAX = "max"
    SUM = "sum"
    COUNT = "count"
    PERCENTILE = "percentile"


class TrendDirection(str):
    """Direction of a trend, relative to the metric's polarity."""
    IMPROVING = "improving"
    STABLE = "stable"
    DEGRADING = "degrading"


class NotificationChannel(str):
    """Delivery channels for notification intents."""
    EMAIL = "email"
    SLACK = "slack"
    SMS = "sms"
    WEBHOOK = "webhook"
    LOG = "log"


class NotificationStatus(str):
    """Delivery state of a notification record."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class NotificationEvent(str):
    """Engine events a notification rule can subscribe to."""
    THRESHOLD_BREACH = "threshold_breach"
    RECOVERY = "recovery"
    ESCALATION = "escalation"


class CriticalityLevel(str):
    """Business criticality of the service behind an SLA."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnalysisType(str):
    """Historical analysis kinds."""
    TRENDS = "trends"
    PATTERNS = "patterns"
    ANOMALIES = "anomalies"
    CORRELATIONS = "correlations"
    PREDICTIONS = "predictions"
    ROOT_CAUSE = "root_cause"


# ========== Lists for validation ==========

VALID_METRIC_TYPES = [
    MetricType.AVAILABILITY, MetricType.UPTIME, MetricType.RESPONSE_TIME,
    MetricType.THROUGHPUT, MetricType.ERROR_RATE,
    MetricType.TRANSACTION_SUCCESS_RATE, MetricType.DATA_ACCURACY,
    MetricType.RECOVERY_TIME
]
HIGHER_IS_BETTER_METRICS = [
    MetricType.AVAILABILITY, MetricType.UPTIME, MetricType.THROUGHPUT,
    MetricType.TRANSACTION_SUCCESS_RATE, MetricType.DATA_ACCURACY
]
LOWER_IS_BETTER_METRICS = [
    MetricType.RESPONSE_TIME, MetricType.ERROR_RATE, MetricType.RECOVERY_TIME
]
VALID_SEVERITIES = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]
SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}
FAILURE_BANDS = [ThresholdBand.WARNING, ThresholdBand.ESCALATION, ThresholdBand.CRITICAL]
OPEN_BREACH_STATUSES = [BreachStatus.ACTIVE, BreachStatus.ACKNOWLEDGED]
