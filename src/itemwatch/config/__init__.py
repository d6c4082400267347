"""Configuration module for itemwatch.

This module provides:
- Pydantic models for configuration validation
- YAML config file loading and discovery
- Default configuration values
- Environment variable expansion
- Clear error messages for config issues
"""

from itemwatch.config.defaults import DEFAULT_CONFIG
from itemwatch.config.loader import (
    Config,
    ConfigError,
    ConfigKeyError,
    ConfigSyntaxError,
    ConfigValidationError,
    FileOutputConfig,
    GeneralConfig,
    InfluxOutputConfig,
    LoggingConfig,
    OutputConfig,
    SentryConfig,
    get_config_path,
    load_config,
    parse_config,
)

__all__ = [
    "Config",
    "ConfigError",
    "ConfigKeyError",
    "ConfigSyntaxError",
    "ConfigValidationError",
    "FileOutputConfig",
    "GeneralConfig",
    "InfluxOutputConfig",
    "LoggingConfig",
    "OutputConfig",
    "SentryConfig",
    "DEFAULT_CONFIG",
    "get_config_path",
    "load_config",
    "parse_config",
]
