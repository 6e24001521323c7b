"""Recording catalog: validated units grouped into pageable chunks.

The catalog is built once per process and never changes afterwards:
- a `Unit` is one recording (locator + frame count [+ labels])
- a `Chunk` is a run of consecutive units that is paged in/out as one I/O
- every feature stream gets its own chunk list, but the lists are aligned by
  index: chunk k of stream 0 and chunk k of stream 1 cover the same recordings

Chunk buffers start empty ("paged out"). Only `ChunkPager` installs or evicts
them; everybody else may only read a resident chunk.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from chunkwise.config import CatalogConfig
from chunkwise.errors import CatalogError, ContractViolation

from .readers import unit_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class Unit:
    """One recording. Immutable once built."""

    locator: str
    num_frames: int
    key: str
    # One int32 array of length num_frames per label set; None when unsupervised.
    labels: tuple[np.ndarray, ...] | None = None


class Chunk:
    """A run of units that is paged in and out together.

    The buffer is dense: all frames of all units, concatenated in unit order.
    """

    def __init__(self, index: int, units: Sequence[Unit]):
        """Create a paged-out chunk.

        :param int index: Position in the (non-randomized) catalog order.
        :param units: Units owned by this chunk, in order.
        :raises ValueError: If `units` is empty.
        """
        if not units:
            raise ValueError("a chunk must hold at least one unit")
        self.index = int(index)
        self.units: tuple[Unit, ...] = tuple(units)
        offsets = np.cumsum([0] + [u.num_frames for u in self.units])
        self.first_frames: tuple[int, ...] = tuple(int(x) for x in offsets[:-1])
        self.total_frames = int(offsets[-1])
        self._frames: np.ndarray | None = None
        self._lattices: tuple[Any, ...] | None = None

    def __repr__(self) -> str:
        state = "resident" if self.is_resident else "paged-out"
        return (
            f"Chunk(index={self.index}, units={self.num_units}, "
            f"frames={self.total_frames}, {state})"
        )

    @property
    def num_units(self) -> int:
        return len(self.units)

    @property
    def is_resident(self) -> bool:
        """True if the frame buffer is populated.

        :return bool: Residency state.
        """
        return self._frames is not None

    @property
    def feature_dim(self) -> int | None:
        """Feature dimension of the resident buffer, None when paged out.

        :return int | None: Columns of the frame buffer.
        """
        return None if self._frames is None else int(self._frames.shape[1])

    def unit_frames(self, i: int) -> np.ndarray:
        """Return a read-only view of unit `i`'s frames.

        :param int i: Unit index within this chunk.
        :raises ContractViolation: If the chunk is paged out.
        :return np.ndarray: [num_frames, dim] view into the chunk buffer.
        """
        if self._frames is None:
            raise ContractViolation(f"unit_frames: chunk {self.index} has not been paged in")
        ts = self.first_frames[i]
        return self._frames[ts : ts + self.units[i].num_frames]

    def unit_lattice(self, i: int) -> Any | None:
        """Return unit `i`'s auxiliary graph (None if the source had none).

        :param int i: Unit index within this chunk.
        :raises ContractViolation: If the chunk is paged out.
        :return Any | None: Auxiliary graph.
        """
        if self._frames is None:
            raise ContractViolation(f"unit_lattice: chunk {self.index} has not been paged in")
        if self._lattices is None:
            return None
        return self._lattices[i]

    # -------- pager-only --------

    def install(self, frames: np.ndarray, lattices: Sequence[Any] | None) -> None:
        """Commit a fully read buffer. Only `ChunkPager` calls this.

        :param np.ndarray frames: [total_frames, dim] buffer.
        :param lattices: One entry per unit, or None when there is no lattice source.
        :raises ContractViolation: If already resident or the buffer has the wrong shape.
        """
        if self._frames is not None:
            raise ContractViolation(f"install: chunk {self.index} is already resident")
        if frames.ndim != 2 or frames.shape[0] != self.total_frames:
            raise ContractViolation(
                f"install: chunk {self.index} expects {self.total_frames} frames, "
                f"got buffer of shape {frames.shape}"
            )
        if lattices is not None and len(lattices) != self.num_units:
            raise ContractViolation(
                f"install: chunk {self.index} expects {self.num_units} lattices, got {len(lattices)}"
            )
        frames.setflags(write=False)
        self._frames = frames
        self._lattices = None if lattices is None else tuple(lattices)

    def evict(self) -> None:
        """Drop the buffer. Only `ChunkPager` calls this.

        :raises ContractViolation: If the chunk is not resident.
        """
        if self._frames is None:
            raise ContractViolation(f"evict: chunk {self.index} is not resident")
        self._frames = None
        self._lattices = None


def partition_units(
    units: Sequence[Unit], *, chunk_frames: int, max_units_per_chunk: int = 65535
) -> list[list[int]]:
    """Group consecutive units into chunks of about `chunk_frames` frames.

    A unit starts a new chunk if adding it would push a non-empty chunk past
    `chunk_frames`, or if the chunk already holds `max_units_per_chunk` units.
    A single unit longer than `chunk_frames` gets a chunk of its own.

    :param units: Units in catalog order.
    :param int chunk_frames: Target frames per chunk.
    :param int max_units_per_chunk: Hard cap on units per chunk.
    :return list[list[int]]: Unit indices per chunk.
    """
    groups: list[list[int]] = []
    frames = 0
    for i, unit in enumerate(units):
        if (
            not groups
            or frames + unit.num_frames > chunk_frames
            or len(groups[-1]) >= max_units_per_chunk
        ):
            groups.append([])
            frames = 0
        groups[-1].append(i)
        frames += unit.num_frames
    return groups


@dataclass(frozen=True)
class Catalog:
    """Chunk store for all streams, aligned by chunk index."""

    streams: tuple[tuple[Chunk, ...], ...]
    total_frames: int
    num_units: int
    num_label_sets: int = 0
    label_dims: tuple[int, ...] = field(default=())

    @property
    def num_streams(self) -> int:
        return len(self.streams)

    @property
    def num_chunks(self) -> int:
        return len(self.streams[0])

    @property
    def primary(self) -> tuple[Chunk, ...]:
        """Chunks of stream 0, which define windows, labels and lattices.

        :return tuple[Chunk, ...]: Primary stream chunks.
        """
        return self.streams[0]

    @property
    def supervised(self) -> bool:
        return self.num_label_sets > 0

    def unit_counts(self, label_set: int = 0) -> np.ndarray:
        """Label occurrence counts over the whole catalog (e.g. for priors).

        :param int label_set: Which label set to count.
        :raises ValueError: If the catalog is unsupervised.
        :return np.ndarray: int64 counts indexed by label id.
        """
        if not self.supervised:
            raise ValueError("unit_counts: catalog has no labels")
        minlength = self.label_dims[label_set] if label_set < len(self.label_dims) else 0
        counts = np.zeros((minlength,), dtype=np.int64)
        for chunk in self.primary:
            for unit in chunk.units:
                assert unit.labels is not None
                c = np.bincount(unit.labels[label_set], minlength=minlength)
                if c.size > counts.size:
                    counts = np.pad(counts, (0, c.size - counts.size))
                counts[: c.size] += c
        return counts


class CatalogBuilder:
    """Validates recordings and partitions them into aligned chunks.

    Invalid recordings are dropped with a logged count per reason. If more
    than `max_invalid_fraction` of recordings are invalid, something is wrong
    with the inputs as a whole, and the load fails.
    """

    def __init__(
        self,
        *,
        chunk_frames: int,
        max_units_per_chunk: int = 65535,
        min_unit_frames: int = 2,
        max_unit_frames: int = 65535,
        label_dims: Sequence[int] = (),
        max_invalid_fraction: float = 0.5,
    ):
        """Initialize the builder.

        :param int chunk_frames: Target frames per chunk.
        :param int max_units_per_chunk: Hard cap on units per chunk.
        :param int min_unit_frames: Shortest acceptable recording.
        :param int max_unit_frames: Longest acceptable recording.
        :param label_dims: Declared label dimension per label set (optional).
        :param float max_invalid_fraction: Failure threshold for invalid recordings.
        """
        self.chunk_frames = int(chunk_frames)
        self.max_units_per_chunk = int(max_units_per_chunk)
        self.min_unit_frames = int(min_unit_frames)
        self.max_unit_frames = int(max_unit_frames)
        self.label_dims = tuple(int(d) for d in label_dims)
        self.max_invalid_fraction = float(max_invalid_fraction)

    @classmethod
    def from_config(cls, cfg: CatalogConfig) -> CatalogBuilder:
        """Build from the `catalog` config section.

        :param CatalogConfig cfg: Catalog config.
        :return CatalogBuilder: Configured builder.
        """
        return cls(
            chunk_frames=cfg.chunk_frames,
            max_units_per_chunk=cfg.max_units_per_chunk,
            min_unit_frames=cfg.min_unit_frames,
            max_unit_frames=cfg.max_unit_frames,
            label_dims=cfg.label_dims,
            max_invalid_fraction=cfg.max_invalid_fraction,
        )

    def _check_unit(
        self,
        durations: list[int],
        key: str,
        labels: Sequence[Mapping[str, np.ndarray]],
    ) -> tuple[str | None, tuple[np.ndarray, ...] | None]:
        """Validate one recording across all streams.

        :return tuple: (reason it is invalid or None, label arrays or None).
        """
        n = durations[0]
        if any(d != n for d in durations[1:]):
            return "duration mismatch across streams", None
        if n < self.min_unit_frames:
            return f"fewer than {self.min_unit_frames} frames", None
        if n > self.max_unit_frames:
            return f"more than {self.max_unit_frames} frames", None
        if not labels:
            return None, None

        out = []
        for j, table in enumerate(labels):
            if key not in table:
                return "missing labels", None
            lab = np.asarray(table[key], dtype=np.int32).reshape(-1)
            if lab.size != n:
                return "duration mismatch between labels and features", None
            if lab.size and lab.min() < 0:
                return "negative label id", None
            if j < len(self.label_dims) and lab.size and lab.max() >= self.label_dims[j]:
                return "label id exceeds label dimension", None
            lab.setflags(write=False)
            out.append(lab)
        return None, tuple(out)

    def build(
        self,
        streams: Sequence[Sequence[str]],
        frame_counters: Sequence[Callable[[str], int]],
        *,
        labels: Sequence[Mapping[str, np.ndarray]] = (),
    ) -> Catalog:
        """Validate recordings and group them into chunks.

        :param streams: Per-stream locator lists, aligned by recording.
        :param frame_counters: One `num_frames(locator)` callable per stream.
        :param labels: One key -> frame-label-array mapping per label set.
        :raises ValueError: If stream lists are malformed.
        :raises CatalogError: If too many recordings are invalid (or none are valid),
            or two recordings share a unit key.
        :return Catalog: The chunk store.
        """
        if not streams:
            raise ValueError("CatalogBuilder.build: need at least one feature stream")
        if len(frame_counters) != len(streams):
            raise ValueError(
                f"CatalogBuilder.build: got {len(frame_counters)} frame counters "
                f"for {len(streams)} streams"
            )
        num_recordings = len(streams[0])
        for m, locs in enumerate(streams):
            if len(locs) != num_recordings:
                raise ValueError(
                    f"feature stream {m} lists {len(locs)} recordings, stream 0 lists {num_recordings}"
                )

        units: list[list[Unit]] = [[] for _ in streams]
        reasons: Counter[str] = Counter()
        for i in range(num_recordings):
            durations = [int(count(locs[i])) for count, locs in zip(frame_counters, streams)]
            key = unit_key(streams[0][i])
            reason, unit_labels = self._check_unit(durations, key, labels)
            if reason is not None:
                reasons[reason] += 1
                logger.debug("Skipping recording %d (%s): %s", i, streams[0][i], reason)
                continue
            for m, locs in enumerate(streams):
                units[m].append(
                    Unit(
                        locator=locs[i],
                        num_frames=durations[m],
                        key=unit_key(locs[i]),
                        labels=unit_labels if m == 0 else None,
                    )
                )

        invalid = sum(reasons.values())
        if invalid:
            for reason, count in sorted(reasons.items()):
                logger.warning("%d of %d recordings dropped: %s", count, num_recordings, reason)
        if num_recordings == 0 or invalid > self.max_invalid_fraction * num_recordings:
            raise CatalogError(
                f"{invalid} of {num_recordings} recordings are invalid "
                f"(threshold {self.max_invalid_fraction:.0%}); refusing to load: {dict(reasons)}"
            )
        dupes = [k for k, n in Counter(u.key for u in units[0]).items() if n > 1]
        if dupes:
            raise CatalogError(
                f"{len(dupes)} unit keys are shared by several recordings, e.g. {dupes[:3]}; "
                "give ranged locators a logical name (name=archive[start,end])"
            )

        groups = partition_units(
            units[0],
            chunk_frames=self.chunk_frames,
            max_units_per_chunk=self.max_units_per_chunk,
        )
        chunk_streams = tuple(
            tuple(Chunk(k, [stream_units[i] for i in group]) for k, group in enumerate(groups))
            for stream_units in units
        )
        total_frames = sum(u.num_frames for u in units[0])
        num_units = len(units[0])
        logger.info(
            "%d utterances grouped into %d chunks, av. chunk size: %.1f utterances, %.1f frames",
            num_units,
            len(groups),
            num_units / len(groups),
            total_frames / len(groups),
        )
        return Catalog(
            streams=chunk_streams,
            total_frames=total_frames,
            num_units=num_units,
            num_label_sets=len(labels),
            label_dims=self.label_dims,
        )


# ------------------------------ Manifest ---------------------------------


@dataclass(frozen=True)
class Manifest:
    """Parsed manifest: where the recordings, labels and lattices live."""

    streams: tuple[tuple[str, ...], ...]
    labels: tuple[str, ...] = ()
    lattices: str | None = None
    root: str | None = None


def load_manifest(path: str | Path) -> Manifest:
    """Load a YAML or JSON manifest.

    Expected layout::

        root: /data/features          # optional, relative paths resolve here
        streams:                       # one list per feature stream
          - [utt1.npy, utt2=sess.npy[0,99], utt3=sess.npy[100,180]]
          - [utt1.ivec.npy, utt2=sess.ivec.npy[0,99], utt3=sess.ivec.npy[100,180]]
        labels: [states.npz]           # optional, one npz per label set
        lattices: lattices.npz         # optional

    :param path: Manifest path (.yaml/.yml/.json).
    :raises ValueError: If required keys are missing.
    :return Manifest: Parsed manifest; label/lattice paths are resolved.
    """
    path = Path(path)
    text = path.read_text()
    data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    if not isinstance(data, dict) or not data.get("streams"):
        raise ValueError(f"Manifest {path} must define a non-empty 'streams' list")
    streams = data["streams"]
    if not all(isinstance(s, list) for s in streams):
        raise ValueError(f"Manifest {path}: 'streams' must be a list of locator lists")

    base = path.parent
    root = data.get("root")
    if root is not None:
        root = str((base / root).resolve()) if not Path(root).is_absolute() else str(root)
    labels = tuple(str(base / p) for p in (data.get("labels") or []))
    lattices = data.get("lattices")
    return Manifest(
        streams=tuple(tuple(str(x) for x in s) for s in streams),
        labels=labels,
        lattices=None if lattices is None else str(base / lattices),
        root=root if root is not None else str(base),
    )


def load_label_tables(paths: Sequence[str]) -> list[dict[str, np.ndarray]]:
    """Load one key -> label-array table per ``.npz`` path.

    :param paths: ``.npz`` files keyed by unit key.
    :return list[dict[str, np.ndarray]]: Label tables.
    """
    tables = []
    for p in paths:
        with np.load(p, allow_pickle=False) as npz:
            tables.append({k: np.asarray(npz[k]) for k in npz.files})
    return tables
