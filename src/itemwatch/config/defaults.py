"""Default configuration values for itemwatch.

This module defines the default configuration used when no config file exists
or when config values are not specified. All configuration options are documented
here for reference.

Environment Variables:
    ITEMWATCH_CONFIG_PATH: Override default config file path
    XDG_CONFIG_HOME, XDG_DATA_HOME: Base directories for config and data
    Values in the general, logging, sentry and outputs sections can reference
    environment variables using ${VAR} syntax

Config File Locations (in order of precedence):
    1. Path specified via --config CLI flag
    2. Path specified via ITEMWATCH_CONFIG_PATH environment variable
    3. $XDG_CONFIG_HOME/itemwatch/config.yaml (~/.config/itemwatch/config.yaml)
"""

import os
from pathlib import Path
from typing import Any

APP_NAME = "itemwatch"


def xdg_config_home() -> Path:
    """Return the XDG config base directory."""
    return Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")


def xdg_data_home() -> Path:
    """Return the XDG data base directory."""
    return Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")


def default_data_dir() -> Path:
    """Return the default base directory of the file output."""
    return xdg_data_home() / APP_NAME


# Default configuration dictionary
DEFAULT_CONFIG: dict[str, Any] = {
    "general": {
        "shell": "/bin/sh",  # Interpreter used for shell items (<shell> -c <script>)
    },
    # Items to monitor; see the example config in config/loader.py
    "items": [],
    # Outputs every item writes to
    "outputs": [
        {
            "type": "file",  # Base path defaults to $XDG_DATA_HOME/itemwatch
            "always_write_raw": False,
            "use_raw_as_fallback": True,
        },
    ],
    "logging": {
        "level": "WARNING",  # DEBUG, INFO, WARNING, ERROR
        "file": None,  # Optional log file in addition to stderr
    },
    # Error reporting, disabled unless a DSN is configured
    "sentry": {
        "dsn": None,
        "environment": "production",
        "traces_sample_rate": 0.0,
    },
}
