from .settings import (
    BinanceConfig,
    StreamConfig,
    RetryConfig,
    HealthConfig,
    MetricsConfig,
    LoggingConfig,
    StreamSettings,
    load_settings,
)

__all__ = [
    "BinanceConfig",
    "StreamConfig",
    "RetryConfig",
    "HealthConfig",
    "MetricsConfig",
    "LoggingConfig",
    "StreamSettings",
    "load_settings",
]
