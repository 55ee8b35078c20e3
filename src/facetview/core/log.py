# log.py
# SPDX-License-Identifier: MIT
"""Utilities for package-wide logging configuration.

Installs a NullHandler on the package logger to avoid noisy warnings from
importing clients and exposes helpers for runtime configuration and
per-run context fields (dataset key, attempt, step) that are stamped onto
every log line emitted while a run is active.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

__all__ = [
    "PACKAGE_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "RunContextFilter",
    "configure_logging",
    "current_run_context",
    "get_logger",
    "run_context",
]

PACKAGE_LOGGER_NAME = "facetview"
DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s%(run_context)s: %(message)s"

# Install a NullHandler on the package logger so importing libraries
# don't emit warnings if the application hasn't configured logging.
logging.getLogger(PACKAGE_LOGGER_NAME).addHandler(logging.NullHandler())

_RUN_CONTEXT: ContextVar[Mapping[str, Any]] = ContextVar("facetview_run_context", default={})


def get_logger(name: str | None = None) -> logging.Logger:
    """Return a named logger scoped to facetview.

    Args:
        name (str | None): Fully qualified logger name. Defaults to the
            package logger when omitted.

    Returns:
        logging.Logger: Logger instance for the requested name.
    """
    return logging.getLogger(name or PACKAGE_LOGGER_NAME)


def current_run_context() -> dict[str, Any]:
    """Return a copy of the fields bound by the innermost :func:`run_context`."""
    return dict(_RUN_CONTEXT.get())


@contextmanager
def run_context(**fields: Any) -> Iterator[dict[str, Any]]:
    """Bind run-level fields (e.g. ``datasetKey``, ``attempt``, ``step``).

    Fields are layered on top of any context already bound, so a nested
    ``run_context(step="publish")`` keeps the dataset key of the outer one.
    Values of ``None`` remove a field for the duration of the block.

    Yields:
        dict[str, Any]: The effective context inside the block.
    """
    merged = dict(_RUN_CONTEXT.get())
    for key, value in fields.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    token = _RUN_CONTEXT.set(merged)
    try:
        yield dict(merged)
    finally:
        _RUN_CONTEXT.reset(token)


class RunContextFilter(logging.Filter):
    """Expose the bound run context as ``record.run_context``.

    The attribute renders as `` [datasetKey=... attempt=... step=...]`` or
    an empty string when no run is active, so format strings can always
    reference ``%(run_context)s``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = _RUN_CONTEXT.get()
        if ctx:
            rendered = " ".join(f"{key}={value}" for key, value in ctx.items())
            record.run_context = f" [{rendered}]"
        else:
            record.run_context = ""
        return True


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream = None,
    fmt: str | None = None,
    datefmt: str | None = None,
    propagate: bool | None = None,
    logger_name: str = PACKAGE_LOGGER_NAME,
) -> logging.Logger:
    """Configure a stream handler for a facetview logger.

    Args:
        level (int | str): Logging level or level name. Defaults to
            logging.INFO.
        stream (IO[str] | None): Target stream; defaults to sys.stderr.
        fmt (str | None): Log format string. Defaults to
            :data:`DEFAULT_FORMAT`, which includes the run context.
        datefmt (str | None): Date format string for the handler.
        propagate (bool | None): Whether log records bubble up to ancestor loggers.
            When None, defaults to True to allow root handlers (e.g., pytest caplog).
        logger_name (str): Logger name to configure. Defaults to the package
            logger.

    Returns:
        logging.Logger: Logger configured with a single StreamHandler.
    """
    logger = get_logger(logger_name or PACKAGE_LOGGER_NAME)

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(level)
    if propagate is None:
        logger.propagate = True
    else:
        logger.propagate = bool(propagate)

    if stream is None:
        stream = sys.stderr
    if fmt is None:
        fmt = DEFAULT_FORMAT

    # Add a single StreamHandler if none present; refresh closed streams.
    has_stream = False
    for handler in logger.handlers:
        if not isinstance(handler, logging.StreamHandler):
            continue
        has_stream = True
        if getattr(getattr(handler, "stream", None), "closed", False):
            handler.stream = stream
        if not any(isinstance(f, RunContextFilter) for f in handler.filters):
            handler.addFilter(RunContextFilter())
    if not has_stream:
        handler = logging.StreamHandler(stream)
        handler.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        handler.addFilter(RunContextFilter())
        logger.addHandler(handler)

    return logger
