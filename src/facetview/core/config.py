# config.py
# SPDX-License-Identifier: MIT
"""Configuration models and helpers for view runs.

This module defines declarative dataclasses for the dataset being
processed, the facets to join, pipeline concurrency, the dataset store and
sink, publishing, metrics, and logging, along with helpers for serializing
and loading configurations from JSON, TOML, and YAML.
"""
from __future__ import annotations

import json
import re
import tomllib
import types
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

import yaml

from .errors import ConfigurationError
from .log import DEFAULT_FORMAT, PACKAGE_LOGGER_NAME, configure_logging
from .records import FacetRole, FacetType

# ---------------------------------------------------------------------------
# Duration helper
# ---------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.IGNORECASE)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Union[int, float, str, None]) -> Optional[float]:
    """Convert a duration to seconds.

    Accepts numbers (seconds) or strings such as ``"500ms"``, ``"30s"``,
    ``"5m"`` and ``"1h"``. ``None`` means "no limit" and is returned as-is.

    Raises:
        ConfigurationError: If the value cannot be parsed or is negative.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(str(value))
        if not match:
            raise ConfigurationError(f"Invalid duration {value!r}; expected e.g. '30s', '5m', '500ms'.")
        amount, unit = match.groups()
        seconds = float(amount) * _DURATION_UNITS[(unit or "s").lower()]
    if seconds < 0:
        raise ConfigurationError(f"Duration must be non-negative; got {value!r}")
    return seconds


# ---------------------------------------------------------------------------
# Dataset / facets
# ---------------------------------------------------------------------------

DEFAULT_OPTIONAL_FACETS: Tuple[str, ...] = (
    "verbatim",
    "temporal",
    "location",
    "taxonomy",
    "grscicoll",
    "multimedia",
    "image",
    "audubon",
    "measurement_or_fact",
)


@dataclass(slots=True)
class DatasetConfig:
    """Which dataset attempt to process and where its data lives.

    Attributes:
        dataset_id (str): Dataset identifier.
        attempt (int): Crawl/interpretation attempt number.
        input_path (str): Root of interpreted inputs.
        target_path (str): Root under which views are published.
        view_name (str): View directory name under ``target_path``.
        temp_location (str | None): Root for staged output; defaults to
            ``{target_path}/tmp`` so staging and target share a filesystem.
    """
    dataset_id: str = ""
    attempt: int = 1
    input_path: str = "."
    target_path: str = "."
    view_name: str = "occurrence"
    temp_location: Optional[str] = None


@dataclass(slots=True)
class FacetsConfig:
    """Names of the facet datasets taking part in the join.

    ``primary`` drives the join (one output record per primary key) and,
    like ``metadata``, is mandatory. Every name in ``optional`` is joined
    when present and defaults to an empty value when absent.
    """
    primary: str = "basic"
    metadata: str = "metadata"
    optional: List[str] = field(default_factory=lambda: list(DEFAULT_OPTIONAL_FACETS))

    def facet_types(self) -> List[FacetType]:
        """Return the facet types in load order: metadata, primary, optional."""
        out = [
            FacetType(self.metadata, FacetRole.METADATA),
            FacetType(self.primary, FacetRole.PRIMARY),
        ]
        out.extend(FacetType(name, FacetRole.FACET) for name in self.optional)
        return out


# ---------------------------------------------------------------------------
# Pipeline / IO specs
# ---------------------------------------------------------------------------

@dataclass(slots=True)
class PipelineConfig:
    """
    Controls batching and concurrency of the write phase.

    concurrency = 0 → auto (os.cpu_count or 1)
    submit_window = None → defaults to concurrency * 2 in-flight batches
    sync_mode = True → batches are dispatched inline on the calling thread
    max_dropped_rate = None → conversion drops never fail the run
    """
    batch_max_size: int = 1000
    concurrency: int = 0
    sync_mode: bool = False
    submit_window: Optional[int] = None
    max_dropped_rate: Optional[float] = None


@dataclass(slots=True)
class StoreSpec:
    """Declarative dataset store entry; factories map kind -> concrete stores.

    Known kinds:
    - "jsonl": options key_field, pattern
    - "parquet": options key_field, columns
    """

    kind: str = "jsonl"
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SinkSpec:
    """Declarative sink entry; factories map kind -> concrete sinks.

    Known kinds:
    - "jsonl": options compress
    - "parquet": options compression, row_group_size
    """

    kind: str = "jsonl"
    options: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class PublishConfig:
    """Lock and swap settings for the publish step.

    Attributes:
        lock_kind (str): ``"local"`` (threads of this process) or
            ``"file"`` (``flock`` on files under ``lock_dir``, shared by
            processes on the same host).
        lock_timeout (float | str | None): Maximum wait for the lock;
            ``None`` waits indefinitely.
        lock_dir (str | None): Directory for lock files; defaults to
            ``{target_path}/.locks``.
        poll_interval (float): Seconds between file-lock attempts.
        keep_versions (int): Previously published versions kept on disk
            after a successful swap.
    """
    lock_kind: str = "local"
    lock_timeout: Union[float, str, None] = None
    lock_dir: Optional[str] = None
    poll_interval: float = 0.05
    keep_versions: int = 1

    @property
    def lock_timeout_seconds(self) -> Optional[float]:
        return parse_duration(self.lock_timeout)


@dataclass(slots=True)
class MetricsConfig:
    """Where run counters go once a run completes."""

    enabled: bool = True
    file_name: str = "interpreted-to-view.yml"


@dataclass(slots=True)
class LoggingConfig:
    """Controls the package logger; set propagate=True/logger_name to
    integrate with host apps.
    """
    level: Union[int, str] = "INFO"
    propagate: bool = False
    fmt: Optional[str] = DEFAULT_FORMAT
    logger_name: str = PACKAGE_LOGGER_NAME

    def apply(self) -> None:
        """Apply this logging configuration to the package logger."""
        configure_logging(
            level=self.level,
            propagate=self.propagate,
            fmt=self.fmt,
            logger_name=self.logger_name or PACKAGE_LOGGER_NAME,
        )


# ---------------------------------------------------------------------------
# Master config
# ---------------------------------------------------------------------------

T = TypeVar("T")

_LOCK_KINDS = {"local", "file"}


@dataclass(slots=True)
class ViewConfig:
    """Declarative spec for one view run.

    This object must remain purely declarative and serializable. Stores,
    sinks, lock services, worker pools and other live objects are built
    from it at run time by :mod:`facetview.core.factories`.
    """
    dataset: DatasetConfig = field(default_factory=DatasetConfig)
    facets: FacetsConfig = field(default_factory=FacetsConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    store: StoreSpec = field(default_factory=StoreSpec)
    sink: SinkSpec = field(default_factory=SinkSpec)
    publish: PublishConfig = field(default_factory=PublishConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def validate(self) -> None:
        """Validate the configuration for internal consistency.

        Normalizes ``publish.lock_kind`` and the facet names, and raises
        :class:`ConfigurationError` when a value is out of range.
        """
        pc = self.pipeline
        if pc.batch_max_size is None or int(pc.batch_max_size) <= 0:
            raise ConfigurationError(f"pipeline.batch_max_size must be > 0; got {pc.batch_max_size!r}.")
        if pc.concurrency is None or int(pc.concurrency) < 0:
            raise ConfigurationError(
                f"pipeline.concurrency must be >= 1 (or 0 for auto); got {pc.concurrency!r}."
            )
        if pc.submit_window is not None and int(pc.submit_window) < 1:
            raise ConfigurationError(f"pipeline.submit_window must be >= 1 when set; got {pc.submit_window!r}.")
        if pc.max_dropped_rate is not None:
            try:
                rate_val = float(pc.max_dropped_rate)
            except (TypeError, ValueError):
                raise ConfigurationError("pipeline.max_dropped_rate must be a float between 0.0 and 1.0 when set.")
            if rate_val < 0.0 or rate_val > 1.0:
                raise ConfigurationError("pipeline.max_dropped_rate must be between 0.0 and 1.0 when set.")
            pc.max_dropped_rate = rate_val

        ds = self.dataset
        if not ds.dataset_id or ds.dataset_id.strip().lower() == "all":
            raise ConfigurationError("dataset.dataset_id must name a single dataset.")
        if int(ds.attempt) < 0:
            raise ConfigurationError(f"dataset.attempt must be >= 0; got {ds.attempt!r}.")

        self._validate_facets()

        pub = self.publish
        kind = (pub.lock_kind or "local").strip().lower()
        if kind not in _LOCK_KINDS:
            raise ConfigurationError(f"publish.lock_kind must be one of {sorted(_LOCK_KINDS)}; got {pub.lock_kind!r}.")
        pub.lock_kind = kind
        pub.lock_timeout = parse_duration(pub.lock_timeout)
        if pub.poll_interval <= 0:
            raise ConfigurationError("publish.poll_interval must be positive.")
        if pub.keep_versions < 0:
            raise ConfigurationError("publish.keep_versions must be >= 0.")

    def _validate_facets(self) -> None:
        fc = self.facets
        fc.primary = (fc.primary or "").strip().lower()
        fc.metadata = (fc.metadata or "").strip().lower()
        if not fc.primary or not fc.metadata:
            raise ConfigurationError("facets.primary and facets.metadata must be set.")
        if fc.primary == fc.metadata:
            raise ConfigurationError("facets.primary and facets.metadata must differ.")
        optional: list[str] = []
        for name in fc.optional or ():
            norm = str(name).strip().lower()
            if not norm:
                continue
            if norm in (fc.primary, fc.metadata):
                raise ConfigurationError(f"Facet {norm!r} is listed as optional and mandatory.")
            if norm in optional:
                raise ConfigurationError(f"Facet {norm!r} is listed twice in facets.optional.")
            optional.append(norm)
        fc.optional = optional

    # -------------------------
    # Serialization helpers
    # -------------------------
    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable representation of this configuration."""
        return _dataclass_to_dict(self)

    def to_json(self, path: Path | str, *, indent: int = 2) -> str:
        """Serialize the configuration to JSON and write it to disk.

        Args:
            path (Path | str): Target file path.
            indent (int): Indentation level passed to ``json.dumps``.

        Returns:
            str: String path to the written file.
        """
        data = self.to_dict()
        target = Path(path)
        target.write_text(json.dumps(data, indent=indent, sort_keys=True), encoding="utf-8")
        return str(target)

    @classmethod
    def from_dict(cls: Type[T], data: Mapping[str, Any]) -> T:
        """Instantiate a ViewConfig from a mapping.

        Args:
            data (Mapping[str, Any]): Mapping produced by
                :meth:`to_dict` or loaded from JSON/TOML/YAML.

        Returns:
            ViewConfig: Parsed configuration instance.
        """
        return _dataclass_from_dict(cls, data)

    @classmethod
    def from_json(cls: Type[T], path: Path | str) -> T:
        """Load a configuration from a JSON file."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(_require_mapping(payload, path))

    @classmethod
    def from_toml(cls: Type[T], path: Path | str) -> T:
        """
        Load a ViewConfig from a TOML file.

        The TOML layout mirrors the structure of this dataclass: top-level
        tables like [dataset], [facets], [pipeline], [store], [sink],
        [publish], [metrics] and [logging].
        """
        data = tomllib.loads(Path(path).read_bytes().decode("utf-8"))
        return cls.from_dict(_require_mapping(data, path))

    @classmethod
    def from_yaml(cls: Type[T], path: Path | str) -> T:
        """Load a ViewConfig from a YAML file with the same layout as TOML."""
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
        return cls.from_dict(_require_mapping(data or {}, path))


def _require_mapping(data: Any, path: Path | str) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Top-level document in {path} must be a mapping; got {type(data).__name__}.")
    return data


def load_config_from_path(path: str | Path) -> ViewConfig:
    """Load a ViewConfig from a TOML, JSON, or YAML file.

    Args:
        path (Path | str): Path to a ``.toml``, ``.json``, ``.yaml`` or
            ``.yml`` config file.

    Returns:
        ViewConfig: Parsed configuration instance.

    Raises:
        ConfigurationError: If the extension is unsupported or the file
            cannot be read or parsed.
    """
    p = Path(path)
    suffix = p.suffix.lower()
    loaders = {
        ".toml": ViewConfig.from_toml,
        ".json": ViewConfig.from_json,
        ".yaml": ViewConfig.from_yaml,
        ".yml": ViewConfig.from_yaml,
    }
    loader = loaders.get(suffix)
    if loader is None:
        raise ConfigurationError(f"Unsupported config extension {p.suffix!r}; expected .toml, .json or .yaml.")
    try:
        return loader(p)
    except ConfigurationError:
        raise
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        raise ConfigurationError(f"Config could not be read from {p}: {exc}") from exc


C = TypeVar("C")


def validate_options_for_dataclass(
    cfg_type: Type[C],
    *,
    options: Mapping[str, Any] | None,
    ignore_keys: Iterable[str] = (),
    context: str | None = None,
) -> None:
    """
    Validate that options only contain known dataclass fields or ignore_keys.

    Raises:
        ConfigurationError: If unknown option keys are present.
    """
    if not options:
        return

    field_names = {f.name for f in fields(cfg_type)}
    allowed = field_names | set(ignore_keys)
    unknown = sorted(k for k in options.keys() if k not in allowed)

    if unknown:
        label = context or cfg_type.__name__
        allowed_list = ", ".join(sorted(allowed))
        unknown_list = ", ".join(unknown)
        raise ConfigurationError(
            f"Unsupported options for {label}: {unknown_list}. "
            f"Allowed keys: {allowed_list}"
        )


def build_config_from_options(cfg_type: Type[C], options: Mapping[str, Any] | None, *, context: str) -> C:
    """Construct an options dataclass from a spec's ``options`` mapping.

    Unknown keys are rejected so typos in config files surface early.
    """
    validate_options_for_dataclass(cfg_type, options=options, context=context)
    return _dataclass_from_dict(cfg_type, dict(options or {}))


def _dataclass_to_dict(obj: Any) -> Dict[str, Any]:
    """Serialize dataclasses to JSON-friendly dicts, skipping None fields."""
    result: Dict[str, Any] = {}
    for f in fields(obj):
        value = getattr(obj, f.name)
        if value is None:
            continue
        serialized = _serialize_value(value)
        if serialized is not None:
            result[f.name] = serialized
    return result


def _serialize_value(value: Any) -> Any:
    """Best-effort JSON-friendly coercion; drops values that cannot be serialized."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, set):
        items = [_serialize_value(v) for v in value]
        try:
            return sorted(items)
        except Exception:
            return items
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    if isinstance(value, dict):
        out: Dict[str, Any] = {}
        for k, v in value.items():
            serialized = _serialize_value(v)
            if serialized is not None:
                out[str(k)] = serialized
        return out
    if is_dataclass(value):
        return _dataclass_to_dict(value)
    return None


def _dataclass_from_dict(cls: Type[T], data: Mapping[str, Any] | None) -> T:
    """Instantiate a dataclass of type `cls` from a mapping.

    Unknown keys are rejected with :class:`ConfigurationError` naming the
    dataclass, so misspelled sections do not silently fall back to defaults.
    """
    if data is None:
        return cls()  # type: ignore[call-arg]
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{cls.__name__} expects a mapping; got {type(data).__name__}.")
    type_hints = get_type_hints(cls)
    known = {f.name for f in fields(cls)}
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")

    kwargs: Dict[str, Any] = {}
    for f in fields(cls):
        if f.name not in data:
            continue
        field_type = type_hints.get(f.name, f.type)
        try:
            kwargs[f.name] = _coerce_value(field_type, data[f.name])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for {cls.__name__}.{f.name}: {data[f.name]!r}") from exc
    return cls(**kwargs)  # type: ignore[arg-type]


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _coerce_value(expected_type: Any, value: Any) -> Any:
    """Coerce `value` into the shape implied by `expected_type`.

    This handles nested dataclasses, container types, optionals, and
    Paths, recursing into sequences and mappings when necessary.
    """
    base_type, _ = _strip_optional(expected_type)
    if value is None:
        return None
    if is_dataclass_type(base_type):
        return _dataclass_from_dict(base_type, value)
    origin = get_origin(base_type)
    if origin in (list, tuple):
        args = get_args(base_type)
        inner = args[0] if args else Any
        items = [_coerce_value(inner, v) for v in value]
        return tuple(items) if origin is tuple else list(items)
    if origin is dict:
        key_type, val_type = get_args(base_type) if get_args(base_type) else (Any, Any)
        return {_coerce_value(key_type, k): _coerce_value(val_type, v) for k, v in value.items()}
    if base_type is Path:
        return Path(value)
    if base_type is bool:
        if isinstance(value, str):
            token = value.strip().lower()
            if token in _TRUE_STRINGS:
                return True
            if token in _FALSE_STRINGS:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        return bool(value)
    if base_type in {str, int, float}:
        return base_type(value)
    return value


def _strip_optional(typ: Any) -> Tuple[Any, bool]:
    """Strip Optional from a type annotation.

    Args:
        typ (Any): Type annotation that may be a Union including ``None``.

    Returns:
        tuple[Any, bool]: A pair ``(base_type, is_optional)`` where
        ``is_optional`` is True if ``None`` was present in the union.
    """
    origin = get_origin(typ)
    if origin is Union or origin is types.UnionType:
        args = [arg for arg in get_args(typ) if arg is not type(None)]
        if len(args) == 1:
            base, _ = _strip_optional(args[0])
            return base, True
    return typ, False


def is_dataclass_type(typ: Any) -> bool:
    """Return True if `typ` is a dataclass type (not an instance)."""
    try:
        return isinstance(typ, type) and is_dataclass(typ)
    except Exception:
        return False


__all__ = [
    "ViewConfig",
    "DatasetConfig",
    "FacetsConfig",
    "PipelineConfig",
    "StoreSpec",
    "SinkSpec",
    "PublishConfig",
    "MetricsConfig",
    "LoggingConfig",
    "DEFAULT_OPTIONAL_FACETS",
    "build_config_from_options",
    "load_config_from_path",
    "parse_duration",
    "validate_options_for_dataclass",
]
