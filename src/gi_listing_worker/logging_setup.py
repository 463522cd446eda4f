from __future__ import annotations

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any

from rich.console import Console
from rich.logging import RichHandler

logger = logging.getLogger("gi_listing_worker")

_CONFIGURED = False


def configure_logging(level: str | int = "INFO", console: Console | None = None) -> None:
    """Route all log records through a single rich handler."""
    global _CONFIGURED
    root = logging.getLogger()
    root.setLevel(level)
    if _CONFIGURED:
        return

    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.handlers = [handler]
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers = []
        uv_logger.propagate = True
    _CONFIGURED = True


def _log_uncaught(
    exc_type: type[BaseException],
    exc: BaseException,
    tb: TracebackType | None,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    logger.error("Uncaught exception", exc_info=(exc_type, exc, tb))


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
    exc = context.get("exception")
    message = context.get("message", "Unhandled error in event loop")
    if exc is not None:
        logger.error("%s", message, exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logger.error("%s", message)


def install_exception_hooks(loop: asyncio.AbstractEventLoop | None = None) -> None:
    """Log otherwise-unhandled errors instead of letting them end the process."""
    sys.excepthook = _log_uncaught
    if loop is not None:
        loop.set_exception_handler(_log_loop_exception)
