"""Storage collaborators: feature readers and auxiliary-graph (lattice) sources.

The core never touches files directly. It asks a `FeatureReader` for the frames
of one recording and, optionally, a `LatticeSource` for that recording's
auxiliary graph. Both may fail transiently; the pager owns the retry policy, so
readers should simply raise.

Locators follow the HTK archive convention: ``path``, ``path[start,end]`` or
``logical=path[start,end]``. The frame range is *inclusive* on both ends. The
optional logical name is the key that labels and lattices are looked up by;
without one, the key is the path without extension plus the range, if any.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

import numpy as np

_RANGE_RE = re.compile(r"^(?P<path>.+)\[(?P<start>\d+),(?P<end>\d+)\]$")


class FeatureReader(Protocol):
    """Reads the frames of one recording."""

    def read(self, locator: str) -> np.ndarray:
        """Return a [frames, dim] array for the recording at `locator`."""
        ...

    def num_frames(self, locator: str) -> int:
        """Return the frame count without reading the frames."""
        ...

    def feature_dim(self, locator: str) -> int:
        """Return the frame dimension without reading the frames."""
        ...


class LatticeSource(Protocol):
    """Looks up an auxiliary graph for one recording."""

    def lookup(self, key: str, num_frames: int) -> Any | None:
        """Return the graph for `key`, or None if there is none."""
        ...


@dataclass(frozen=True)
class ParsedLocator:
    """A locator split into logical name, archive path and inclusive frame range."""

    path: str
    start: int | None = None
    end: int | None = None
    logical: str | None = None

    @property
    def key(self) -> str:
        """Lookup key for labels and lattices.

        The logical name when there is one, otherwise the archive path without
        extension, followed by the frame range so that several utterances cut
        from one archive get distinct keys.

        :return str: Key used for labels and lattices.
        """
        if self.logical:
            return self.logical
        p = Path(self.path)
        key = str(p.with_suffix("")) if p.suffix else str(p)
        if self.start is not None:
            key += f"[{self.start},{self.end}]"
        return key

    @property
    def num_frames(self) -> int | None:
        """Frame count implied by the range, or None if there is no range.

        :return int | None: end - start + 1 when a range is given.
        """
        if self.start is None or self.end is None:
            return None
        return self.end - self.start + 1


def parse_locator(locator: str) -> ParsedLocator:
    """Split ``logical=archive[start,end]`` into its parts.

    :param str locator: Raw locator string.
    :raises ValueError: If the range is reversed or the logical name is empty.
    :return ParsedLocator: Parsed locator.
    """
    logical = None
    if "=" in locator:
        logical, locator = locator.split("=", 1)
        if not logical:
            raise ValueError(f"Empty logical name in locator {locator!r}")
    m = _RANGE_RE.match(locator)
    if m is None:
        return ParsedLocator(path=locator, logical=logical)
    start, end = int(m.group("start")), int(m.group("end"))
    if end < start:
        raise ValueError(f"Invalid frame range in locator {locator!r}: end < start")
    return ParsedLocator(path=m.group("path"), start=start, end=end, logical=logical)


def unit_key(locator: str) -> str:
    """Return the label/lattice lookup key for a locator.

    :param str locator: Raw locator string.
    :return str: Logical name, or path without extension plus frame range.
    """
    return parse_locator(locator).key


class NpyFeatureReader:
    """Reads features from numpy ``.npy`` archives.

    Each archive holds a [frames, dim] array. Frame counts are answered from a
    memory-mapped header, so building a catalog does not read any frames.
    """

    def __init__(self, root: str | Path | None = None, *, dtype: str = "float32"):
        """Initialize the reader.

        :param root: Optional directory that relative archive paths resolve against.
        :param str dtype: dtype of the returned frames.
        """
        self._root = None if root is None else Path(root)
        self._dtype = np.dtype(dtype)

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        if self._root is not None and not p.is_absolute():
            p = self._root / p
        return p

    def _open(self, parsed: ParsedLocator) -> np.ndarray:
        arr = np.load(self._resolve(parsed.path), mmap_mode="r")
        if arr.ndim != 2:
            raise ValueError(f"Feature archive {parsed.path!r} must be 2-D, got shape {arr.shape}")
        if parsed.start is not None and parsed.end is not None:
            if parsed.end >= arr.shape[0]:
                raise ValueError(
                    f"Frame range [{parsed.start},{parsed.end}] exceeds archive "
                    f"{parsed.path!r} with {arr.shape[0]} frames"
                )
            arr = arr[parsed.start : parsed.end + 1]
        return arr

    def num_frames(self, locator: str) -> int:
        """Return the frame count of a recording.

        :param str locator: Archive locator, optionally with a frame range.
        :return int: Number of frames.
        """
        parsed = parse_locator(locator)
        if parsed.num_frames is not None:
            return parsed.num_frames
        return int(self._open(parsed).shape[0])

    def feature_dim(self, locator: str) -> int:
        """Return the frame dimension from the archive header.

        :param str locator: Archive locator, optionally with a frame range.
        :return int: Columns per frame.
        """
        return int(self._open(parse_locator(locator)).shape[1])

    def read(self, locator: str) -> np.ndarray:
        """Read a recording's frames into memory.

        :param str locator: Archive locator, optionally with a frame range.
        :return np.ndarray: [frames, dim] array.
        """
        return np.array(self._open(parse_locator(locator)), dtype=self._dtype)


class ArrayFeatureReader:
    """Mapping-backed reader for recordings that already live in memory."""

    def __init__(self, arrays: Mapping[str, np.ndarray]):
        """Initialize the reader.

        :param Mapping[str, np.ndarray] arrays: locator -> [frames, dim] array.
        """
        self._arrays = dict(arrays)

    def num_frames(self, locator: str) -> int:
        """Return the frame count of a recording.

        :param str locator: Key into the mapping.
        :return int: Number of frames.
        """
        return int(self._arrays[locator].shape[0])

    def feature_dim(self, locator: str) -> int:
        return int(self._arrays[locator].shape[1])

    def read(self, locator: str) -> np.ndarray:
        """Return a copy of the recording's frames.

        :param str locator: Key into the mapping.
        :return np.ndarray: [frames, dim] float32 array.
        """
        return np.array(self._arrays[locator], dtype=np.float32)


class MappingLatticeSource:
    """Lattice source over an in-memory mapping keyed by unit key."""

    def __init__(self, lattices: Mapping[str, Any]):
        """Initialize the source.

        :param Mapping[str, Any] lattices: key -> auxiliary graph.
        """
        self._lattices = dict(lattices)

    def __len__(self) -> int:
        return len(self._lattices)

    def lookup(self, key: str, num_frames: int) -> Any | None:
        """Return the graph for `key`, or None.

        :param str key: Unit key.
        :param int num_frames: Frame count of the recording (unused here).
        :return Any | None: Graph object or None.
        """
        return self._lattices.get(key)


class NpzLatticeSource(MappingLatticeSource):
    """Lattice source backed by an ``.npz`` file with one array per unit key."""

    def __init__(self, path: str | Path):
        """Load all graphs from `path`.

        :param path: ``.npz`` archive path.
        """
        with np.load(Path(path), allow_pickle=False) as npz:
            super().__init__({k: np.asarray(npz[k]) for k in npz.files})
