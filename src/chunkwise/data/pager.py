"""Chunk residency: page chunks in and out across all feature streams at once.

The pager does not decide *what* to keep in memory; the assembler does, based
on the randomizer's windows. The pager only executes those decisions and
guards one invariant: for any chunk index, either every stream's chunk is
resident or none is. A mix means we would silently return frames from one
stream without the matching frames of another, so it is fatal.

Page-in reads from storage that may be flaky (network filesystems). Each read
is one attempt that either produces a complete buffer or nothing; the chunk is
only touched once all streams have a complete buffer. Attempts that fail with
an `OSError` are retried with exponential backoff, up to `max_attempts` in
total. Malformed data fails on the first attempt.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from chunkwise.errors import ConsistencyError, ContractViolation, PageInError

from .catalog import Chunk
from .randomizer import Randomizer
from .readers import FeatureReader, LatticeSource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageInResult:
    """Outcome of one read attempt for one stream's chunk."""

    frames: np.ndarray | None = None
    lattices: list[Any] | None = None
    error: OSError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ChunkPager:
    """Keeps chunk buffers resident or paged out, in lockstep across streams.

    Chunks are addressed by their *randomized* position in the current sweep,
    the same index space the windows are expressed in.
    """

    def __init__(
        self,
        randomizer: Randomizer,
        streams: Sequence[Sequence[Chunk]],
        readers: Sequence[FeatureReader],
        *,
        lattices: LatticeSource | None = None,
        max_attempts: int = 5,
        retry_delay_sec: float = 0.0,
    ):
        """Initialize the pager.

        :param Randomizer randomizer: Source of the current randomized chunk order.
        :param streams: Per-stream chunk stores, aligned by chunk index.
        :param readers: One feature reader per stream.
        :param lattices: Optional auxiliary-graph source (primary stream only).
        :param int max_attempts: Read attempts per chunk before giving up.
        :param float retry_delay_sec: Backoff base; attempt k sleeps delay * 2**k.
        :raises ValueError: On mismatched streams/readers or bad retry settings.
        """
        if len(streams) != len(readers):
            raise ValueError(f"got {len(readers)} readers for {len(streams)} feature streams")
        if len({len(s) for s in streams}) != 1:
            raise ValueError("all feature streams must have the same number of chunks")
        if max_attempts <= 0:
            raise ValueError(f"max_attempts must be positive, got {max_attempts}")
        self._randomizer = randomizer
        self._streams = [list(s) for s in streams]
        self._readers = list(readers)
        self._lattices = lattices
        self.max_attempts = int(max_attempts)
        self.retry_delay_sec = float(retry_delay_sec)
        # Feature dimension per stream, taken from the first unit's header so
        # empty batches have the right width before anything is paged in.
        self.feature_dims: list[int] = []
        for m, (stream, reader) in enumerate(zip(self._streams, self._readers)):
            dim = int(reader.feature_dim(stream[0].units[0].locator))
            logger.info("feature set %d: determined feature dimension %d", m, dim)
            self.feature_dims.append(dim)

        # diagnostics only
        self.resident_count = 0
        self.page_in_count = 0
        self.page_out_count = 0

    @property
    def num_streams(self) -> int:
        return len(self._streams)

    @property
    def has_lattices(self) -> bool:
        return self._lattices is not None

    def _chunks_at(self, position: int) -> list[Chunk]:
        idx = self._randomizer.current.chunks[position].chunk_index
        return [stream[idx] for stream in self._streams]

    def is_resident(self, position: int) -> bool:
        """Whether the chunk at a randomized position is resident.

        :param int position: Randomized chunk position.
        :raises ConsistencyError: If only some streams are resident.
        :return bool: True if all streams are resident, False if none are.
        """
        chunks = self._chunks_at(position)
        n = sum(c.is_resident for c in chunks)
        if n == 0:
            return False
        if n == len(chunks):
            return True
        raise ConsistencyError(
            f"chunk at position {position}: {n} of {len(chunks)} streams resident"
        )

    # -------- page in --------

    def _read_chunk(self, m: int, chunk: Chunk) -> PageInResult:
        """One attempt at reading every unit of `chunk` for stream `m`.

        Storage errors (`OSError`) are returned instead of raised, and `chunk`
        is left untouched. Data that has the wrong shape will not get better
        on a retry, so that raises `ValueError` right away.
        """
        try:
            parts = [np.asarray(self._readers[m].read(u.locator)) for u in chunk.units]
            lattices = None
            if m == 0 and self._lattices is not None:
                lattices = [self._lattices.lookup(u.key, u.num_frames) for u in chunk.units]
        except OSError as exc:
            return PageInResult(error=exc)

        dim = self.feature_dims[m]
        for u, part in zip(chunk.units, parts):
            if part.ndim != 2 or part.shape[0] != u.num_frames:
                raise ValueError(
                    f"{u.locator}: expected {u.num_frames} frames, got shape {part.shape}"
                )
            if part.shape[1] != dim:
                raise ValueError(
                    f"feature set {m}: {u.locator} has dimension {part.shape[1]}, expected {dim}"
                )
        frames = np.concatenate(parts, axis=0).astype(np.float32, copy=False)
        return PageInResult(frames=frames, lattices=lattices)

    def _read_with_retry(self, m: int, chunk: Chunk) -> PageInResult:
        """Read a chunk with retries.

        :raises PageInError: If every attempt failed, or the data is malformed.
        :return PageInResult: The successful attempt.
        """
        result = PageInResult()
        for attempt in range(self.max_attempts):
            try:
                result = self._read_chunk(m, chunk)
            except ValueError as exc:
                raise PageInError(
                    f"feature set {m}: chunk {chunk.index} holds malformed data, not retrying"
                ) from exc
            if result.ok:
                return result
            logger.warning(
                "feature set %d: reading chunk %d failed (attempt %d/%d): %s",
                m,
                chunk.index,
                attempt + 1,
                self.max_attempts,
                result.error,
            )
            if attempt + 1 < self.max_attempts and self.retry_delay_sec > 0:
                time.sleep(self.retry_delay_sec * (2**attempt))
        raise PageInError(
            f"feature set {m}: could not page in chunk {chunk.index} "
            f"after {self.max_attempts} attempts"
        ) from result.error

    def ensure_resident(self, position: int, window_begin: int, window_end: int) -> bool:
        """Page in the chunk at `position` for all streams if it is not resident.

        :param int position: Randomized chunk position.
        :param int window_begin: First position of the caller's current window.
        :param int window_end: One past the last position of the window.
        :raises ContractViolation: If `position` is outside the window.
        :raises ConsistencyError: If the chunk is partially resident.
        :raises PageInError: If reading failed after all retries.
        :return bool: True if anything was read from storage.
        """
        if not window_begin <= position < window_end:
            raise ContractViolation(
                f"ensure_resident: chunk {position} outside in-memory window "
                f"[{window_begin}, {window_end})"
            )
        if self.is_resident(position):
            return False

        chunks = self._chunks_at(position)
        results = [self._read_with_retry(m, chunk) for m, chunk in enumerate(chunks)]

        # All streams read fine: commit them together.
        for m, (chunk, res) in enumerate(zip(chunks, results)):
            assert res.frames is not None
            chunk.install(res.frames, res.lattices)
        self.resident_count += 1
        self.page_in_count += 1
        rc = self._randomizer.current.chunks[position]
        logger.debug(
            "Paged in randomized chunk %d (frame range [%d..%d]), %d resident in RAM",
            position,
            rc.global_ts,
            rc.global_te - 1,
            self.resident_count,
        )
        return True

    # -------- page out --------

    def release(self, position: int) -> None:
        """Page out the chunk at `position` for all streams.

        :param int position: Randomized chunk position.
        :raises ContractViolation: If the chunk is not resident.
        :raises ConsistencyError: If the chunk is partially resident.
        """
        if not self.is_resident(position):
            raise ContractViolation(f"release: chunk {position} is not resident")
        for chunk in self._chunks_at(position):
            chunk.evict()
        self.resident_count -= 1
        self.page_out_count += 1
        logger.debug(
            "Paged out randomized chunk %d, %d resident in RAM", position, self.resident_count
        )

    def release_outside(self, window_begin: int, window_end: int) -> int:
        """Page out every resident chunk outside ``[window_begin, window_end)``.

        :param int window_begin: First position to keep.
        :param int window_end: One past the last position to keep.
        :return int: Number of chunks released.
        """
        released = 0
        for position in range(self._randomizer.num_chunks):
            if window_begin <= position < window_end:
                continue
            if self.is_resident(position):
                self.release(position)
                released += 1
        return released

    def release_all(self) -> int:
        """Page out everything (e.g. before shutting down).

        :return int: Number of chunks released.
        """
        if not self._randomizer.resolved:
            return 0
        return self.release_outside(0, 0)
