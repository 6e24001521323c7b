"""Cursor -> minibatch translation.

Every `get_batch` call runs the same fixed sequence:

  resolve sweep -> compute window -> page (release, then acquire) -> copy

The window step runs on every call, not just on sweep changes: the cursor
moves forward each call, and the set of chunks that must be resident moves
with it.

Data parallelism works without any communication. Every worker computes the
same randomization (it only depends on the sweep), then keeps only samples
whose randomized chunk index satisfies ``chunk % worker_count == worker_index``.
Each worker therefore pages in only its own chunks, and `frames_advanced` is
still the *logical* number of frames the shared cursor moves.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import jax
import numpy as np

from chunkwise.errors import ConsistencyError
from chunkwise.types import BatchResult, Minibatch

from .augment import augment_neighbors, augment_utterance, augmentation_extent
from .catalog import Catalog
from .pager import ChunkPager
from .randomizer import Randomizer, SweepRandomization

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamContext:
    """Neighbor context for one feature stream.

    With 0/0 extents the stream falls back to a symmetric extent derived from
    `augmented_dim`; with `augmented_dim` also 0 frames are returned as-is.
    """

    left: int = 0
    right: int = 0
    augmented_dim: int = 0

    def extents(self, feature_dim: int) -> tuple[int, int]:
        """Resolve (left, right) for a stream with raw dimension `feature_dim`.

        :param int feature_dim: Raw frame dimension.
        :return tuple[int, int]: Left and right extents.
        """
        if self.left or self.right:
            return self.left, self.right
        if self.augmented_dim:
            e = augmentation_extent(feature_dim, self.augmented_dim)
            return e, e
        return 0, 0


def _check_worker(worker_index: int, worker_count: int) -> None:
    if worker_count <= 0:
        raise ValueError(f"worker_count must be positive, got {worker_count}")
    if not 0 <= worker_index < worker_count:
        raise ValueError(f"worker_index must be in [0, {worker_count}), got {worker_index}")


class MinibatchAssembler:
    """Serves minibatches from a sweep-repeating cursor.

    Single-threaded: calls must come in sequence, with a non-decreasing cursor
    except when restarting at a sweep boundary.
    """

    def __init__(
        self,
        catalog: Catalog,
        randomizer: Randomizer,
        pager: ChunkPager,
        *,
        contexts: Sequence[StreamContext] | None = None,
        align_workers: bool = False,
        device_put: bool = False,
    ):
        """Initialize the assembler.

        :param Catalog catalog: Chunk store for all streams.
        :param Randomizer randomizer: Randomizer over the primary stream.
        :param ChunkPager pager: Pager over the same chunk store.
        :param contexts: One `StreamContext` per stream (default: no augmentation).
        :param bool align_workers: Truncate every worker's share to the smallest share.
        :param bool device_put: Place the returned buffers on the default JAX device.
        :raises ValueError: If the number of contexts does not match the streams.
        """
        if contexts is None:
            contexts = [StreamContext()] * catalog.num_streams
        if len(contexts) != catalog.num_streams:
            raise ValueError(
                f"got {len(contexts)} stream contexts for {catalog.num_streams} feature streams"
            )
        self._catalog = catalog
        self._randomizer = randomizer
        self._pager = pager
        self._contexts = tuple(contexts)
        self._align_workers = bool(align_workers)
        self._device_put = bool(device_put)

    @property
    def frame_mode(self) -> bool:
        return self._randomizer.frame_mode

    @property
    def total_frames(self) -> int:
        return self._randomizer.total_frames

    def first_valid_cursor(self, global_ts: int) -> int:
        """First cursor at or after `global_ts` that `get_batch` accepts.

        Utterance mode rounds up to the next utterance boundary; frame mode
        accepts any frame and returns `global_ts` unchanged.

        :param int global_ts: Arbitrary global frame index (e.g. an epoch start).
        :return int: Valid cursor.
        """
        self._randomizer.resolve_sweep(global_ts)
        return self._randomizer.current.first_valid_ts(global_ts)

    def get_batch(
        self,
        global_ts: int,
        frames_requested: int,
        worker_index: int = 0,
        worker_count: int = 1,
    ) -> BatchResult:
        """Assemble the minibatch starting at `global_ts`.

        :param int global_ts: Cursor; in utterance mode it must sit on an utterance boundary.
        :param int frames_requested: Requested logical frames.
        :param int worker_index: This worker's index.
        :param int worker_count: Number of workers sharing the cursor.
        :raises ValueError: On a non-positive request or bad worker parameters.
        :raises ContractViolation: If the cursor is not a valid sample boundary.
        :raises PageInError: If a needed chunk could not be read.
        :return BatchResult: Buffers plus cursor bookkeeping.
        """
        if frames_requested <= 0:
            raise ValueError(f"frames_requested must be positive, got {frames_requested}")
        _check_worker(worker_index, worker_count)

        sweep = self._randomizer.resolve_sweep(global_ts)
        r = self._randomizer.current

        # window
        if self.frame_mode:
            begin, end, window = self._frame_window(r, global_ts, frames_requested)
        else:
            begin, end, window = self._utterance_window(r, global_ts, frames_requested)
        wb, we = window
        mbframes = int(r.seq_frames[begin:end].sum())

        chunk_pos = r.seq_chunk[begin:end]
        if chunk_pos.size and (chunk_pos.min() < wb or chunk_pos.max() >= we):
            raise ConsistencyError(
                f"get_batch: samples [{begin}, {end}) reach outside chunk window [{wb}, {we})"
            )
        subset = chunk_pos % worker_count
        subset_sizes = tuple(
            int(x)
            for x in np.bincount(subset, weights=r.seq_frames[begin:end], minlength=worker_count)
        )
        mine = begin + np.flatnonzero(subset == worker_index)

        # page
        self._pager.release_outside(wb, we)
        if self.frame_mode:
            needed = [k for k in range(wb, we) if k % worker_count == worker_index]
        else:
            needed = sorted({int(k) for k in r.seq_chunk[mine]})
        paged = False
        for k in needed:
            paged |= self._pager.ensure_resident(k, wb, we)

        if self._align_workers:
            mine = self._clip_to(r, mine, min(subset_sizes))

        # copy
        logger.debug(
            "getbatch: positions %d..%d (%d subset of %d frames out of %d requested) "
            "in sweep %d; chunk window [%d, %d)",
            begin,
            end - 1,
            int(r.seq_frames[mine].sum()),
            mbframes,
            frames_requested,
            sweep,
            wb,
            we,
        )
        batch, utterance_ends, lattices = self._copy(r, mine)
        if self._device_put:
            batch = jax.device_put(batch)

        return BatchResult(
            frames_advanced=mbframes,
            batch=batch,
            sweep=sweep,
            paged_from_storage=paged,
            subset_sizes=subset_sizes,
            utterance_ends=utterance_ends,
            lattices=lattices,
        )

    # -------- window --------

    def _utterance_window(
        self, r: SweepRandomization, global_ts: int, frames_requested: int
    ) -> tuple[int, int, tuple[int, int]]:
        """Whole utterances from `global_ts` while they fit (at least one)."""
        spos = r.position_for(global_ts)
        mbframes = int(r.seq_frames[spos])
        epos = spos + 1
        while epos < len(r) and mbframes + int(r.seq_frames[epos]) <= frames_requested:
            mbframes += int(r.seq_frames[epos])
            epos += 1
        window = (int(r.pos_window_begin[spos]), int(r.pos_window_end[epos - 1]))
        return spos, epos, window

    def _frame_window(
        self, r: SweepRandomization, global_ts: int, frames_requested: int
    ) -> tuple[int, int, tuple[int, int]]:
        """Frames from `global_ts`, clipped at the end of the sweep."""
        global_te = min(global_ts + frames_requested, r.sweep_te)
        first = r.chunk_for_frame(global_ts)
        last = r.chunk_for_frame(global_te - 1)
        window = (r.chunks[first].window_begin, r.chunks[last].window_end)
        begin = global_ts - r.sweep_ts
        return begin, begin + (global_te - global_ts), window

    @staticmethod
    def _clip_to(r: SweepRandomization, mine: np.ndarray, limit: int) -> np.ndarray:
        """Keep the longest prefix of `mine` whose frames fit in `limit`."""
        cum = np.cumsum(r.seq_frames[mine])
        return mine[: int(np.searchsorted(cum, limit, side="right"))]

    # -------- copy --------

    def _copy(
        self, r: SweepRandomization, positions: np.ndarray
    ) -> tuple[Minibatch, tuple[int, ...], tuple[object, ...]]:
        """Copy (augmented) frames, labels and lattices for `positions`."""
        refs = [r.sequence(int(p)) for p in positions]
        primary = [
            self._catalog.primary[r.chunks[ref.chunk_position].chunk_index] for ref in refs
        ]

        features = []
        for m, stream in enumerate(self._catalog.streams):
            rows = []
            for ref in refs:
                chunk = stream[r.chunks[ref.chunk_position].chunk_index]
                frames = chunk.unit_frames(ref.unit_index)
                left, right = self._contexts[m].extents(frames.shape[1])
                if self.frame_mode:
                    rows.append(augment_neighbors(frames, ref.frame_index, left, right)[None, :])
                else:
                    rows.append(augment_utterance(frames, left, right))
            features.append(self._stack(rows, m))

        labels = []
        for j in range(self._catalog.num_label_sets):
            parts = []
            for ref, chunk in zip(refs, primary):
                unit_labels = chunk.units[ref.unit_index].labels
                assert unit_labels is not None
                lab = unit_labels[j]
                if self.frame_mode:
                    parts.append(lab[ref.frame_index : ref.frame_index + 1])
                else:
                    parts.append(lab)
            labels.append(
                np.concatenate(parts).astype(np.int32) if parts else np.zeros((0,), np.int32)
            )

        utterance_ends: tuple[int, ...] = ()
        lattices: tuple[object, ...] = ()
        if not self.frame_mode:
            utterance_ends = tuple(int(x) for x in np.cumsum([ref.num_frames for ref in refs]))
            if self._pager.has_lattices:
                lattices = tuple(
                    chunk.unit_lattice(ref.unit_index) for ref, chunk in zip(refs, primary)
                )

        return Minibatch(features=tuple(features), labels=tuple(labels)), utterance_ends, lattices

    def _stack(self, rows: list[np.ndarray], m: int) -> np.ndarray:
        if rows:
            return np.concatenate(rows, axis=0).astype(np.float32, copy=False)
        dim = self._pager.feature_dims[m]
        left, right = self._contexts[m].extents(dim)
        return np.zeros((0, (left + right + 1) * dim), dtype=np.float32)
