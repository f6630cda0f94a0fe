"""
Main — Logging Setup and the ``taskfork`` Entry Point.

Library modules only ever call ``structlog.get_logger(__name__)``. Entry
points call ``configure_logging()`` once, before anything logs, so every
process renders logs the same way and never writes full prompts or reports.
"""

from __future__ import annotations

import logging
import os

import structlog

# Fields that may carry whole prompts, reports or tool arguments.
_LONG_FIELDS = {"prompt", "report", "args", "arguments", "stderr"}
_MAX_DISPLAY_LEN = 120


def _truncate_long_fields(logger, method_name, event_dict):
    """Structlog processor that shortens prompt-sized values."""
    for key in _LONG_FIELDS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(level: str | None = None) -> None:
    """Configure structlog over standard-library logging.

    Safe to call more than once; later calls are no-ops. ``level`` defaults
    to ``TASKFORK_LOG_LEVEL`` or WARNING.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    level_name = (level or os.environ.get("TASKFORK_LOG_LEVEL") or "WARNING").upper()
    logging.basicConfig(format="%(message)s", level=getattr(logging, level_name, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            _truncate_long_fields,
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def main() -> None:
    """Entry point for the taskfork command."""
    configure_logging()

    from taskfork.cli.app import cli

    cli()


if __name__ == "__main__":
    main()
