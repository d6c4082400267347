"""Sentry SDK integration for itemwatch.

This module provides:
- Sentry initialization with asyncio support
- Logging integration (ERROR log records become Sentry events)
- Context and tags describing the running collector

Reporting is opt-in: nothing is initialized unless a DSN is configured.

Usage:
    from itemwatch.sentry import init_sentry, set_itemwatch_context

    if init_sentry(config.sentry):
        set_itemwatch_context(items=config.items, outputs=outputs)
"""

from __future__ import annotations

from collections.abc import Sequence
import logging
import os
import platform
from typing import TYPE_CHECKING, Any

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from itemwatch import __version__

if TYPE_CHECKING:
    from itemwatch.config import SentryConfig
    from itemwatch.models import Item
    from itemwatch.outputs import Output


def init_sentry(config: SentryConfig, *, debug: bool = False) -> bool:
    """Initialize Sentry SDK from the sentry config section.

    Configures Sentry with:
    - AsyncioIntegration for errors escaping item tasks
    - LoggingIntegration: INFO+ as breadcrumbs, ERROR+ as events
    - Default tags for filtering

    Args:
        config: Sentry configuration
        debug: Enable Sentry debug mode for troubleshooting

    Returns:
        True if Sentry was initialized, False if no DSN is configured
    """
    if not config.dsn:
        return False

    sentry_sdk.init(
        dsn=config.dsn,
        traces_sample_rate=config.traces_sample_rate,
        debug=debug,
        send_default_pii=False,
        environment=config.environment,
        release=f"itemwatch@{__version__}",
        integrations=[
            AsyncioIntegration(),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],
        before_send=_before_send,
    )

    sentry_sdk.set_tag("app.version", __version__)
    sentry_sdk.set_tag("python.version", platform.python_version())
    sentry_sdk.set_tag("os.name", platform.system())
    sentry_sdk.set_tag("os.version", platform.release())
    sentry_sdk.set_tag("arch", platform.machine())
    return True


def _before_send(
    event: dict[str, Any],
    hint: dict[str, Any],
) -> dict[str, Any] | None:
    """Process events before sending to Sentry.

    Args:
        event: The event dictionary
        hint: Additional context about the event

    Returns:
        The event to send, or None to drop it
    """
    event.setdefault("extra", {})["cwd"] = os.getcwd()

    if "exc_info" in hint:
        exc_type, _, _ = hint["exc_info"]
        if exc_type is KeyboardInterrupt:
            return None

    return event


def set_itemwatch_context(
    *,
    items: Sequence[Item],
    outputs: Sequence[Output],
    config_path: str | None = None,
) -> None:
    """Set itemwatch-specific context for error tracking.

    Args:
        items: Configured items
        outputs: Prepared outputs
        config_path: Path to config file if custom
    """
    context: dict[str, Any] = {
        "item_count": len(items),
        "items": [item.key for item in items],
        "outputs": [type(output).__name__ for output in outputs],
    }
    if config_path is not None:
        context["config_path"] = config_path
        sentry_sdk.set_tag("itemwatch.custom_config", "true")

    sentry_sdk.set_context("itemwatch", context)
