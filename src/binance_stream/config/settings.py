"""Configuration settings using Pydantic for validation."""

from typing import List, Optional, Any
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re


class BinanceConfig(BaseModel):
    """Binance endpoint and credential configuration."""
    ws_base_url: str = Field(default="wss://stream.binance.com:9443/ws", description="Binance market stream URL")
    rest_base_url: str = Field(default="https://api.binance.com", description="Binance REST API base URL")
    request_timeout_seconds: int = Field(default=30, description="HTTP request timeout")
    recv_window_ms: int = Field(default=5000, description="recvWindow sent with signed requests")

    # Only signed REST calls need credentials
    api_key: Optional[str] = Field(default=None, description="Binance API key")
    api_secret: Optional[str] = Field(default=None, description="Binance API secret")


class StreamConfig(BaseModel):
    """Connection session and subscription configuration."""
    streams: List[str] = Field(default_factory=list, description="Stream identifiers subscribed at startup")
    max_reconnect_attempts: int = Field(default=10, ge=0, description="Consecutive reconnects before giving up")
    base_backoff_seconds: float = Field(default=5.0, gt=0, description="Delay before the first reconnect")
    max_backoff_seconds: float = Field(default=60.0, gt=0, description="Reconnect delay ceiling")
    heartbeat_window_seconds: float = Field(default=30.0, gt=0, description="Heartbeat window")
    liveness_grace_seconds: float = Field(default=5.0, ge=0, description="Grace added to the heartbeat window")
    close_timeout_seconds: float = Field(default=10.0, description="Graceful close handshake timeout")
    max_message_size: int = Field(default=2**20, description="Largest inbound frame accepted")

    @property
    def heartbeat_interval(self) -> float:
        """Seconds between outbound pings."""
        return self.heartbeat_window_seconds / 2

    @property
    def liveness_timeout(self) -> float:
        """Seconds of inbound silence tolerated before the socket is presumed dead."""
        return self.heartbeat_window_seconds + self.liveness_grace_seconds

    @field_validator('streams')
    @classmethod
    def normalize_streams(cls, v):
        return [s.strip().lower() for s in v if s.strip()]

    @model_validator(mode='after')
    def check_backoff_bounds(self):
        if self.max_backoff_seconds < self.base_backoff_seconds:
            raise ValueError("max_backoff_seconds must be >= base_backoff_seconds")
        return self


class RetryConfig(BaseModel):
    """Retry configuration for REST calls."""
    max_attempts: int = Field(default=3, description="Maximum retry attempts")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=10.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")


class HealthConfig(BaseModel):
    """HTTP server configuration."""
    enabled: bool = Field(default=True, description="Serve the HTTP endpoints")
    port: int = Field(default=3000, description="HTTP server port")
    host: str = Field(default="0.0.0.0", description="HTTP server host")


class MetricsConfig(BaseModel):
    """Prometheus metrics configuration."""
    enable_prometheus: bool = Field(default=True, description="Expose /metrics on the HTTP server")
    collection_interval_seconds: float = Field(default=10.0, gt=0, description="Gauge sampling interval")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('level')
    @classmethod
    def validate_level(cls, v):
        if v.upper() not in ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']:
            raise ValueError("Level must be one of DEBUG, INFO, WARNING, ERROR, CRITICAL")
        return v.upper()


class StreamSettings(BaseSettings):
    """Main stream service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    service_name: str = Field(default="binance-stream", description="Service name")
    environment: str = Field(default="development", description="Environment: development, production, test")

    binance: BinanceConfig = Field(default_factory=BinanceConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['development', 'production', 'test']:
            raise ValueError("Environment must be 'development', 'production', or 'test'")
        return v


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> StreamSettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        StreamSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return StreamSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    return StreamSettings()
