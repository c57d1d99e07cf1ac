"""
Runtime Safety Hooks

Makes failures in background tasks observable: per-user cycle loops, the
reconciliation loop and the feed connection all run as asyncio tasks whose
exceptions would otherwise only surface as "Task exception was never
retrieved" at garbage collection time.
"""

from __future__ import annotations

import asyncio
import sys
import traceback
from typing import Any, Dict

# Per-user cycle tasks are named "bot-cycle-<user_id>".
CYCLE_TASK_PREFIX = "bot-cycle-"


def _fmt_tb(exc: BaseException) -> str:
    try:
        return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    except Exception:
        return "traceback_unavailable"


def install_global_exception_handler(logger: Any) -> None:
    """Log uncaught main-thread exceptions before the interpreter exits."""
    prev_hook = sys.excepthook

    def _sys_hook(exctype, value, tb):  # type: ignore[no-untyped-def]
        try:
            logger.critical(
                "Unhandled exception",
                error_type=getattr(exctype, "__name__", str(exctype)),
                error=str(value),
                traceback="".join(traceback.format_exception(exctype, value, tb)),
            )
        finally:
            if prev_hook is not _sys_hook:
                prev_hook(exctype, value, tb)

    sys.excepthook = _sys_hook


def _task_context(context: dict) -> Dict[str, Any]:
    """Name the task an exception escaped from; cycle tasks also carry the user id."""
    task = context.get("task") or context.get("future")
    get_name = getattr(task, "get_name", None)
    if get_name is None:
        return {}
    name = get_name()
    fields: Dict[str, Any] = {"task": name}
    if name.startswith(CYCLE_TASK_PREFIX):
        suffix = name[len(CYCLE_TASK_PREFIX):]
        if suffix.isdigit():
            fields["user_id"] = int(suffix)
    return fields


def install_asyncio_exception_handler(loop: asyncio.AbstractEventLoop, logger: Any) -> None:
    """Log exceptions that escape bot, reconcile and feed tasks instead of losing them."""
    def _handler(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
        msg = context.get("message", "asyncio_exception")
        exc = context.get("exception")
        fields = _task_context(context)
        if isinstance(exc, BaseException):
            logger.error(
                "Background task failed",
                message=msg,
                error_type=type(exc).__name__,
                error=str(exc),
                traceback=_fmt_tb(exc),
                **fields,
            )
        else:
            extra = {k: repr(v) for k, v in context.items() if k not in ("handle", "future", "task")}
            logger.error("Background task failed", message=msg, context=extra, **fields)

    loop.set_exception_handler(_handler)
