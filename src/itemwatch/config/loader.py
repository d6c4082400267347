"""Configuration loading and validation for itemwatch.

This module provides:
- Pydantic models for configuration validation
- YAML config file discovery and loading
- Environment variable expansion in config values
- Merging of config file with defaults
- Clear, user-friendly error messages for config issues

Example config file:

    general:
      shell: /bin/bash
    items:
      - key: os.loadavg
        interval: 10
        shell: cat /proc/loadavg
        digest:
          type: regex
          regex: '(?P<one>\\S+) (?P<five>\\S+) (?P<fifteen>\\S+)'
      - key: os.uptime
        interval: 60
        file: /proc/uptime
    outputs:
      - type: file
        base_path: ~/.local/share/itemwatch
      - type: influxdb
        username: itemwatch
        password: ${INFLUX_PASSWORD}
"""

from difflib import get_close_matches
import os
from pathlib import Path
import re
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)
import yaml

from itemwatch.config.defaults import DEFAULT_CONFIG, APP_NAME, default_data_dir, xdg_config_home
from itemwatch.models import Item
from itemwatch.models.base import KIND_KEYS


class ConfigError(Exception):
    """Base exception for configuration errors.

    Attributes:
        message: The main error message
        file_path: Path to the config file (if applicable)
        line_number: Line number where the error occurred (if known)
        suggestion: Helpful suggestion for fixing the error
    """

    def __init__(
        self,
        message: str,
        *,
        file_path: str | None = None,
        line_number: int | None = None,
        suggestion: str | None = None,
    ) -> None:
        self.message = message
        self.file_path = file_path
        self.line_number = line_number
        self.suggestion = suggestion
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message with location and suggestion."""
        if self.file_path:
            location = f"Error in {self.file_path}"
            if self.line_number:
                location += f" line {self.line_number}"
            parts = [location + ":"]
        else:
            parts = ["Configuration error:"]

        parts.append(f"  {self.message}")
        if self.suggestion:
            parts.extend(["", f"  Suggestion: {self.suggestion}"])
        return "\n".join(parts)


class ConfigSyntaxError(ConfigError):
    """Error for YAML syntax issues."""

    pass


class ConfigValidationError(ConfigError):
    """Error for configuration value validation failures."""

    pass


class ConfigKeyError(ConfigValidationError):
    """Error for unknown or invalid configuration keys."""

    pass


# Sections whose string values get environment variable expansion. Item
# definitions are left alone so shell scripts keep their own ${VAR} syntax.
EXPANDED_SECTIONS = ("general", "outputs", "logging", "sentry")

# Environment variable pattern: ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


class UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate keys in a mapping."""

    def construct_mapping(self, node: yaml.MappingNode, deep: bool = False) -> dict[Any, Any]:
        seen: set[Any] = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _known_keys(parent: tuple[Any, ...]) -> set[str]:
    """Return the keys accepted in the mapping at ``parent``."""
    if not parent:
        return set(Config.model_fields)
    if parent[0] == "items" and len(parent) == 2:
        # Items are written with the flat kind syntax
        return set(Item.model_fields) - {"kind"} | set(KIND_KEYS) | {"args"}
    sections: dict[Any, type[BaseModel]] = {
        "general": GeneralConfig,
        "logging": LoggingConfig,
        "sentry": SentryConfig,
    }
    if len(parent) == 1 and parent[0] in sections:
        return set(sections[parent[0]].model_fields)
    return set()


def _format_pydantic_error(
    error: ValidationError,
    file_path: str | None = None,
) -> ConfigValidationError:
    """Convert a Pydantic ValidationError to a user-friendly ConfigValidationError.

    Only the first error is reported.
    """
    first_error = error.errors()[0]
    loc = first_error.get("loc", ())
    msg = first_error.get("msg", "Invalid value")
    error_type = first_error.get("type", "")
    ctx = first_error.get("ctx", {})
    path = ".".join(str(part) for part in loc)

    suggestion = None
    error_class = ConfigValidationError

    if error_type in ("greater_than", "greater_than_equal", "less_than_equal"):
        message = f"Value for '{path}' is out of range: {first_error.get('input')}"
        if error_type == "greater_than":
            suggestion = f"Value must be greater than {ctx.get('gt')}"
        elif error_type == "greater_than_equal":
            suggestion = f"Value must be at least {ctx.get('ge')}"
        else:
            suggestion = f"Value must be at most {ctx.get('le')}"

    elif error_type == "literal_error":
        message = f"Invalid value for '{path}': {first_error.get('input')!r}"
        suggestion = f"Expected one of: {ctx.get('expected', '')}"

    elif error_type in ("union_tag_invalid", "union_tag_not_found"):
        message = f"Invalid type for '{path}': {msg}"
        suggestion = f"Expected 'type' to be one of: {ctx.get('expected_tags', '')}"

    elif error_type == "extra_forbidden":
        error_class = ConfigKeyError
        message = f"Unknown configuration key '{path}'"
        matches = get_close_matches(str(loc[-1]), sorted(_known_keys(loc[:-1])), n=1, cutoff=0.6)
        if matches:
            suggestion = f"Did you mean '{matches[0]}'?"

    elif error_type == "value_error":
        detail = str(msg).removeprefix("Value error, ")
        message = f"Invalid value for '{path}': {detail}" if path else detail

    else:
        message = f"Invalid value for '{path}': {msg}"

    return error_class(message, file_path=file_path, suggestion=suggestion)


def _format_yaml_error(error: yaml.YAMLError, file_path: str | None = None) -> ConfigSyntaxError:
    """Convert a YAML error to a user-friendly ConfigSyntaxError."""
    mark = getattr(error, "problem_mark", None)
    line_number = mark.line + 1 if mark is not None else None

    error_str = str(error).lower()
    suggestion = None
    if "could not find expected ':'" in error_str:
        suggestion = "Check for missing colons after keys (e.g., 'key: value')"
    elif "mapping values are not allowed" in error_str:
        suggestion = "Check your indentation - make sure nested keys are properly indented"
    elif "duplicate key" in error_str:
        suggestion = "Remove the duplicate key - each key can only appear once"

    problem = getattr(error, "problem", None)
    message = f"YAML syntax error: {problem}" if problem else "Invalid YAML syntax"
    return ConfigSyntaxError(
        message,
        file_path=file_path,
        line_number=line_number,
        suggestion=suggestion,
    )



def expand_env_vars(value: Any) -> Any:
    """Recursively expand environment variables in config values.

    Supports ${VAR} and ${VAR:-default} syntax.

    Args:
        value: The value to expand (string, dict, list, or other)

    Returns:
        The value with environment variables expanded
    """
    if isinstance(value, str):

        def replace_env_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default_value is not None:
                return default_value
            return match.group(0)  # Keep original if not found and no default

        return ENV_VAR_PATTERN.sub(replace_env_var, value)
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries, with override taking precedence.

    Lists are replaced, not concatenated.

    Args:
        base: Base dictionary with defaults
        override: Dictionary with overriding values

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Pydantic Configuration Models


class GeneralConfig(BaseModel):
    """Settings shared by every item."""

    model_config = ConfigDict(extra="forbid")

    shell: str = "/bin/sh"


class FileOutputConfig(BaseModel):
    """Configuration of the file output."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["file"] = "file"
    base_path: Path = Field(default_factory=default_data_dir)
    always_write_raw: bool = False
    use_raw_as_fallback: bool = True

    @field_validator("base_path", mode="after")
    @classmethod
    def expand_base_path(cls, v: Path) -> Path:
        """Expand ~ in the base path."""
        return v.expanduser()


class InfluxOutputConfig(BaseModel):
    """Configuration of the InfluxDB output."""

    model_config = ConfigDict(extra="forbid")

    type: Literal["influxdb"] = "influxdb"
    database: str = APP_NAME
    username: str | None = None
    password: str | None = None
    hosts: list[str] = Field(default_factory=lambda: ["http://localhost:8086"], min_length=1)
    always_write_raw: bool = False
    use_raw_as_fallback: bool = False
    timeout: float = Field(default=5.0, gt=0, le=300)


OutputConfig = Annotated[FileOutputConfig | InfluxOutputConfig, Field(discriminator="type")]


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: str | None = None


class SentryConfig(BaseModel):
    """Error reporting configuration."""

    model_config = ConfigDict(extra="forbid")

    dsn: str | None = None
    environment: str = "production"
    traces_sample_rate: float = Field(default=0.0, ge=0.0, le=1.0)


class Config(BaseModel):
    """Main configuration model for itemwatch.

    Holds the items to monitor, the outputs they write to, and the ambient
    settings of the process.
    """

    model_config = ConfigDict(extra="forbid")

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    items: list[Item] = Field(default_factory=list)
    outputs: list[OutputConfig] = Field(default_factory=list)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    sentry: SentryConfig = Field(default_factory=SentryConfig)

    @model_validator(mode="after")
    def check_unique_keys(self) -> "Config":
        """Reject item sets that use the same key twice."""
        seen: set[str] = set()
        for item in self.items:
            if item.key in seen:
                raise ValueError(f"duplicate item key '{item.key}'")
            seen.add(item.key)
        return self

    def get_item(self, key: str) -> Item | None:
        """Get a configured item by key.

        Args:
            key: Item key

        Returns:
            The Item, or None if no item has that key
        """
        for item in self.items:
            if item.key == key:
                return item
        return None


def get_config_path(custom_path: str | None = None) -> Path | None:
    """Determine the configuration file path.

    Checks locations in this order:
    1. Custom path (if provided via --config flag)
    2. ITEMWATCH_CONFIG_PATH environment variable
    3. $XDG_CONFIG_HOME/itemwatch/config.yaml

    Args:
        custom_path: Optional custom config path from CLI

    Returns:
        Path to config file if found, None otherwise

    Raises:
        FileNotFoundError: If the custom path does not exist
    """
    if custom_path:
        path = Path(custom_path).expanduser()
        if path.exists():
            return path
        raise FileNotFoundError(f"Config file not found: {custom_path}")

    env_path = os.environ.get("ITEMWATCH_CONFIG_PATH")
    if env_path:
        path = Path(env_path).expanduser()
        if path.exists():
            return path
        return None

    xdg_path = xdg_config_home() / APP_NAME / "config.yaml"
    if xdg_path.exists():
        return xdg_path

    return None


def parse_config(
    config_data: dict[str, Any],
    file_path: str | None = None,
) -> Config:
    """Merge raw config data with the defaults and validate it.

    Args:
        config_data: Parsed YAML content
        file_path: Path of the source file, for error messages

    Returns:
        Validated Config object

    Raises:
        ConfigValidationError: If config values are invalid
    """
    if not isinstance(config_data, dict):
        raise ConfigValidationError(
            f"Expected a mapping at the top level, got {type(config_data).__name__}",
            file_path=file_path,
        )

    merged = deep_merge(DEFAULT_CONFIG, config_data)
    for section in EXPANDED_SECTIONS:
        if section in merged:
            merged[section] = expand_env_vars(merged[section])

    try:
        return Config(**merged)
    except ValidationError as e:
        raise _format_pydantic_error(e, file_path) from e


def load_config(config_path: str | None = None) -> Config:
    """Load and validate configuration.

    Configuration is merged in this order (later overrides earlier):
    1. Default configuration
    2. Config file (if found)

    Args:
        config_path: Optional custom config file path

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If custom config path doesn't exist
        ConfigSyntaxError: If config file has invalid YAML syntax
        ConfigValidationError: If config values are invalid
    """
    path = get_config_path(config_path)
    if path is None:
        return parse_config({})

    with open(path, encoding="utf-8") as f:
        content = f.read()
    try:
        file_config = yaml.load(content, Loader=UniqueKeyLoader) or {}
    except yaml.YAMLError as e:
        raise _format_yaml_error(e, str(path)) from e

    return parse_config(file_config, str(path))
