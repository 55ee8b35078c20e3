# paths.py
# SPDX-License-Identifier: MIT
"""Path layout for interpreted inputs, staged output, and published views.

Layout::

    {input}/{dataset}/{attempt}/interpreted/{facet}/...   facet datasets
    {input}/{dataset}/{attempt}/{metrics file}            run counters
    {temp}/{view}/{dataset}/{attempt}-{run_id}/           staged output
    {target}/{view}/{dataset}                             published view
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .config import DatasetConfig

__all__ = [
    "INTERPRETED_DIR",
    "dataset_attempt_path",
    "interpreted_path",
    "view_destination",
    "staging_path",
    "temp_dir",
    "metrics_path",
]

INTERPRETED_DIR = "interpreted"
_WILDCARD = "*"


def _dataset_segment(dataset_id: str | None) -> str:
    if dataset_id is None or dataset_id.strip().lower() == "all":
        return _WILDCARD
    return dataset_id


def dataset_attempt_path(root: str | Path, dataset_id: str | None, attempt: int, name: str) -> Path:
    """Return ``{root}/{dataset_id}/{attempt}/{name}`` with a lowercased name.

    A ``None`` or ``"all"`` dataset id becomes ``*`` so the path can be
    used as a glob over every dataset.
    """
    return Path(root) / _dataset_segment(dataset_id) / str(int(attempt)) / name.lower()


def interpreted_path(input_root: str | Path, dataset_id: str | None, attempt: int, facet: str) -> Path:
    """Directory holding the interpreted records of one facet."""
    return dataset_attempt_path(input_root, dataset_id, attempt, INTERPRETED_DIR) / facet.lower()


def view_destination(target_root: str | Path, view_name: str, dataset_id: str) -> Path:
    """Visible location of a dataset's published view."""
    if not dataset_id:
        raise ValueError("view_destination requires a dataset id")
    return Path(target_root) / view_name.lower() / dataset_id


def staging_path(temp_root: str | Path, view_name: str, dataset_id: str, attempt: int, run_id: str) -> Path:
    """Run-private directory where sinks write before publish."""
    return Path(temp_root) / view_name.lower() / dataset_id / f"{int(attempt)}-{run_id}"


def temp_dir(dataset_cfg: DatasetConfig) -> Path:
    """Configured temp location, or ``{target_path}/tmp`` when unset."""
    if dataset_cfg.temp_location:
        return Path(dataset_cfg.temp_location)
    return Path(dataset_cfg.target_path) / "tmp"


def metrics_path(input_root: str | Path, dataset_id: str, attempt: int, file_name: str) -> Path:
    """Where run counters are written for a dataset attempt."""
    return Path(input_root) / _dataset_segment(dataset_id) / str(int(attempt)) / file_name
