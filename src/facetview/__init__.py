# __init__.py
# SPDX-License-Identifier: MIT
"""
Top-level package exports for :mod:`facetview`.

facetview joins independently produced, per-record facet datasets into one
denormalized record per key, writes the records in batches to a staging
location, and atomically swaps the new output into its published place.

Typical use::

    >>> from facetview import load_config_from_path, run_view
    >>> cfg = load_config_from_path("view.toml")
    >>> report = run_view(cfg)

Anything not listed in :data:`__all__` is an expert surface and may change
between releases.
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Package version
# ---------------------------------------------------------------------------
try:
    from importlib.metadata import version as _pkg_version

    __version__ = _pkg_version("facetview")
except Exception:  # PackageNotFoundError or runtime env oddities
    __version__ = "0.0.0+unknown"

from .core.config import ViewConfig, load_config_from_path
from .core.controller import RunController, RunReport
from .core.errors import (
    ConfigurationError,
    ConversionError,
    FacetViewError,
    LoadError,
    LockError,
    PublishError,
    RunError,
    WriteError,
)
from .core.log import configure_logging, get_logger
from .core.runner import preview_view, run_view
from .core.state import RunState

__all__ = [
    "__version__",
    "ViewConfig",
    "load_config_from_path",
    "run_view",
    "preview_view",
    "RunController",
    "RunReport",
    "RunState",
    "FacetViewError",
    "ConfigurationError",
    "LoadError",
    "ConversionError",
    "WriteError",
    "LockError",
    "PublishError",
    "RunError",
    "configure_logging",
    "get_logger",
]
