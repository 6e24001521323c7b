# SPDX-License-Identifier: Apache-2.0

"""Configuration for chunkwise.

Rule #1: **One config system.**
If a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is intentionally strict: mis-typed keys or invalid values should fail
fast with error messages that tell you exactly what to fix.

Design stance:
- The randomization is a pure function of (catalog, sweep, seed). Nothing in
  here may depend on the worker, otherwise workers stop agreeing on the order.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

# 100 frames per second is assumed throughout for the default sizes.
_FRAMES_PER_SEC = 100


@dataclass(frozen=True)
class CatalogConfig:
    """How recordings are validated and grouped into chunks.

    A chunk is the unit of I/O and residency. The default targets 15 minutes
    of audio per chunk, i.e. one large sequential read per page-in.
    """

    # YAML/JSON manifest listing locators per stream (see chunkwise.catalog).
    manifest: str | None = None

    chunk_frames: int = 15 * 60 * _FRAMES_PER_SEC
    max_units_per_chunk: int = 65535

    # Recordings outside [min_unit_frames, max_unit_frames] are dropped.
    min_unit_frames: int = 2
    max_unit_frames: int = 65535

    # Declared label dimension per label set; ids >= dim invalidate a recording.
    label_dims: tuple[int, ...] = ()

    # Fail the whole load if more than this fraction of recordings is invalid.
    max_invalid_fraction: float = 0.5


@dataclass(frozen=True)
class RandomizerConfig:
    """Two-level randomization knobs.

    `randomization_range` is the *full* window in frames (half on each side of
    a chunk), not the half window.
    """

    randomization_range: int = 48 * 3600 * _FRAMES_PER_SEC
    frame_mode: bool = False
    # Added to the sweep index when seeding; 0 => the order is seeded by the sweep alone.
    seed: int = 0


@dataclass(frozen=True)
class PagerConfig:
    """Chunk paging behavior."""

    max_attempts: int = 5
    retry_delay_sec: float = 0.5


@dataclass(frozen=True)
class AssemblerConfig:
    """Minibatch assembly.

    Context extents are per feature stream. A stream with 0/0 context derives a
    symmetric extent from `augmented_dims` (the declared output width) instead.
    """

    frames_per_batch: int = 256
    left_context: tuple[int, ...] = (0,)
    right_context: tuple[int, ...] = (0,)
    # Declared augmented width per stream; 0 => no augmentation for that stream.
    augmented_dims: tuple[int, ...] = (0,)

    worker_index: int = 0
    worker_count: int = 1
    # If True, every worker truncates its share to the smallest share of the call.
    align_workers: bool = False

    # If True, device_put the returned buffers onto the default JAX device.
    device_put: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for console, log file and metrics output."""

    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = None
    metrics_file: str | None = "metrics.jsonl"


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs."""

    catalog: CatalogConfig = CatalogConfig()
    randomizer: RandomizerConfig = RandomizerConfig()
    pager: PagerConfig = PagerConfig()
    assembler: AssemblerConfig = AssemblerConfig()
    logging: LoggingConfig = LoggingConfig()

    @property
    def num_streams(self) -> int:
        """Number of feature streams implied by the per-stream context lists.

        :return int: Stream count.
        """
        return len(self.assembler.left_context)

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------

_SECTIONS = {
    "catalog": CatalogConfig,
    "randomizer": RandomizerConfig,
    "pager": PagerConfig,
    "assembler": AssemblerConfig,
    "logging": LoggingConfig,
}


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="pager.max_attempts", raw_value="3"

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field.
    :param str raw_value: String value to set, cast to the field's current type.
    :raises ValueError: If the path is invalid or contains unknown keys.
    :return Any: New dataclass with the field updated.
    """

    parts = path.split(".")
    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not leaf or not hasattr(cur, leaf) or leaf.startswith("_"):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    new = _cast_like(getattr(cur, leaf), raw_value)

    # Rebuild frozen dataclasses from the bottom up
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    Tuples accept a YAML list (``[3,3]``) or a bare scalar (``3``).

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ValueError: If the cast fails.
    :return Any: Value cast to the type of `old`.
    """
    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if isinstance(old, tuple):
        parsed = yaml.safe_load(raw)
        if not isinstance(parsed, list):
            parsed = [parsed]
        return tuple(int(x) for x in parsed)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        return raw
    return raw


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Convert nested dict into Config dataclasses.

    :param dict[str, Any] data: Nested dictionary from YAML parsing.
    :raises ValueError: On unknown top-level sections or keys.
    :return Config: Fully constructed Config.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections: {unknown}")

    kwargs: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        section = dict(data.get(name) or {})
        for key, value in section.items():
            if isinstance(value, list):
                section[key] = tuple(value)
        try:
            kwargs[name] = cls(**section)
        except TypeError as exc:
            raise ValueError(f"Invalid keys in config section {name!r}: {exc}") from exc
    return Config(**kwargs)


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load YAML config file + apply dot-path overrides.

    Overrides format: "pager.max_attempts=3".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides.
    :raises ValueError: If override format is invalid or validation fails.
    :return Config: Validated configuration object.
    """

    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}

    cfg = _from_nested_dict(data)

    if overrides:
        for o in overrides:
            if "=" not in o:
                raise ValueError(f"Invalid override {o!r}. Expected format like pager.max_attempts=3")
            k, v = o.split("=", 1)
            cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always raised with formatted message.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_catalog(cfg: Config) -> None:
    """Validate catalog-related config fields."""
    c = cfg.catalog
    if c.chunk_frames <= 0:
        _vfail(f"catalog.chunk_frames must be positive, got {c.chunk_frames}")
    if c.max_units_per_chunk <= 0:
        _vfail(f"catalog.max_units_per_chunk must be positive, got {c.max_units_per_chunk}")
    if c.min_unit_frames < 1:
        _vfail(f"catalog.min_unit_frames must be >= 1, got {c.min_unit_frames}")
    if c.max_unit_frames < c.min_unit_frames:
        _vfail(
            f"catalog.max_unit_frames ({c.max_unit_frames}) must be >= "
            f"catalog.min_unit_frames ({c.min_unit_frames})"
        )
    if any(d <= 0 for d in c.label_dims):
        _vfail(f"catalog.label_dims must all be positive, got {list(c.label_dims)}")
    if not 0.0 <= c.max_invalid_fraction < 1.0:
        _vfail(f"catalog.max_invalid_fraction must be in [0, 1), got {c.max_invalid_fraction}")


def _validate_randomizer(cfg: Config) -> None:
    """Validate randomizer-related config fields."""
    if cfg.randomizer.randomization_range <= 0:
        _vfail(
            "randomizer.randomization_range must be positive, "
            f"got {cfg.randomizer.randomization_range}"
        )
    if cfg.randomizer.seed < 0:
        _vfail(f"randomizer.seed must be >= 0, got {cfg.randomizer.seed}")


def _validate_pager(cfg: Config) -> None:
    """Validate pager-related config fields."""
    if cfg.pager.max_attempts <= 0:
        _vfail(f"pager.max_attempts must be positive, got {cfg.pager.max_attempts}")
    if cfg.pager.retry_delay_sec < 0:
        _vfail(f"pager.retry_delay_sec must be >= 0, got {cfg.pager.retry_delay_sec}")


def _validate_assembler(cfg: Config) -> None:
    """Validate assembler-related config fields."""
    a = cfg.assembler
    if a.frames_per_batch <= 0:
        _vfail(f"assembler.frames_per_batch must be positive, got {a.frames_per_batch}")
    if a.worker_count <= 0:
        _vfail(f"assembler.worker_count must be positive, got {a.worker_count}")
    if not 0 <= a.worker_index < a.worker_count:
        _vfail(
            f"assembler.worker_index must be in [0, {a.worker_count}), got {a.worker_index}"
        )
    n = len(a.left_context)
    if n == 0:
        _vfail("assembler.left_context must list one entry per feature stream")
    if len(a.right_context) != n or len(a.augmented_dims) != n:
        _vfail(
            "assembler.left_context, right_context and augmented_dims must have the same "
            f"length (one per stream), got {len(a.left_context)}, {len(a.right_context)}, "
            f"{len(a.augmented_dims)}"
        )
    if any(x < 0 for x in a.left_context + a.right_context + a.augmented_dims):
        _vfail("assembler context extents and augmented_dims must be >= 0")


def _validate_logging(cfg: Config) -> None:
    """Validate logging-related config fields."""
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_catalog(cfg)
    _validate_randomizer(cfg)
    _validate_pager(cfg)
    _validate_assembler(cfg)
    _validate_logging(cfg)
