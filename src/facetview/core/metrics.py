# metrics.py
# SPDX-License-Identifier: MIT
"""Run counters and the sinks that receive them when a run completes."""

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from pathlib import Path

import yaml

from .log import get_logger

log = get_logger(__name__)

__all__ = [
    "RunMetrics",
    "LoggingMetricsSink",
    "YamlMetricsSink",
    "LOADED_PREFIX",
]

LOADED_PREFIX = "loaded."


class RunMetrics:
    """Thread-safe counters for one run.

    Counter names used by the engine: ``loaded.<facet>``, ``load_errors``,
    ``joined``, ``dropped``, ``written``, ``batches``.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[str, int] = {}

    def inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + int(amount)

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    @property
    def loaded(self) -> int:
        """Total records loaded across every facet dataset."""
        with self._lock:
            return sum(v for k, v in self._counters.items() if k.startswith(LOADED_PREFIX))

    @property
    def joined(self) -> int:
        return self.get("joined")

    @property
    def dropped(self) -> int:
        return self.get("dropped")

    @property
    def written(self) -> int:
        return self.get("written")

    def summary(self) -> dict[str, int]:
        """Headline counts reported with run success or failure."""
        return {
            "loaded": self.loaded,
            "joined": self.joined,
            "dropped": self.dropped,
            "written": self.written,
        }

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return dict(sorted(self._counters.items()))


class LoggingMetricsSink:
    """Log the final counters at INFO."""

    def flush(self, counters: Mapping[str, int]) -> None:
        rendered = " ".join(f"{k}={v}" for k, v in sorted(counters.items()))
        log.info("Run counters: %s", rendered or "(none)")


class YamlMetricsSink:
    """Write the final counters to a YAML file next to the run inputs.

    The file is written to a temp sibling and moved into place so readers
    never see a partial document.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def flush(self, counters: Mapping[str, int]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.parent / f"{self._path.name}.tmp"
        payload = {str(k): int(v) for k, v in sorted(counters.items())}
        with open(tmp_path, "w", encoding="utf-8", newline="") as fp:
            yaml.safe_dump(payload, fp, default_flow_style=False, sort_keys=True)
        os.replace(tmp_path, self._path)
        log.info("Metrics written to %s", self._path)
