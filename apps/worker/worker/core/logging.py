"""Structured logging via structlog.

Worker modules log through the stdlib (`logging.getLogger(__name__)`). This
module installs a `structlog.stdlib.ProcessorFormatter` on the root handler so
those records are rendered by structlog:

  debug=True  — `ConsoleRenderer` with colours for local runs.
  debug=False — `JSONRenderer` for machine-parseable logs in production.

ContextVar injection:
  Each version task calls `bind_task()` with its ``package/version`` label.
  asyncio copies the context into every task, so log lines emitted while that
  task runs carry a ``task`` field without passing it around explicitly.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token

import structlog

_task_var: ContextVar[str] = ContextVar("task", default="")


def get_task_label() -> str:
    """Return the current version task label, or empty string if not set."""
    return _task_var.get()


def bind_task(package: str, version: str) -> Token[str]:
    """Bind ``package/version`` to the current context."""
    return _task_var.set(f"{package}/{version}")


def unbind_task(token: Token[str]) -> None:
    _task_var.reset(token)


def _inject_context_vars(
    logger: logging.Logger,
    method: str,
    event_dict: dict,
) -> dict:
    """Structlog processor: inject the task label from the ContextVar."""
    task = get_task_label()
    if task:
        event_dict["task"] = task
    return event_dict


def configure_logging(debug: bool = False) -> None:
    """Configure stdlib logging to render through structlog.

    Call once from the entry point. Calling again replaces the root handler.
    """
    shared_processors: list = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _inject_context_vars,
        structlog.processors.StackInfoRenderer(),
    ]

    if debug:
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            renderer,
        ],
    )

    # Logs go to stderr; stdout carries the CLI's JSON report.
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if debug else logging.INFO)

    # httpx logs every request at INFO; keep that for debug runs only.
    logging.getLogger("httpx").setLevel(logging.DEBUG if debug else logging.WARNING)
