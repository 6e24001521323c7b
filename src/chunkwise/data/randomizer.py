"""Two-level, windowed randomization over a sweep-repeating time axis.

The training loop addresses data by a global frame index `t` on an axis that
repeats the whole dataset forever: sweep `s` covers
``[s * total_frames, (s + 1) * total_frames)``. For each sweep we compute a
different, reproducible order:

1. **Chunks** are permuted (seeded by the sweep) and laid end to end on the
   sweep's time axis.
2. Each randomized chunk gets a **window** ``[window_begin, window_end)`` of
   randomized-chunk indices around it, about `randomization_range` frames wide.
3. **Samples** (utterances, or single frames in frame mode) are shuffled by
   random swaps that keep every sample inside the window of the position it
   lands on.

Step 3 is what makes paging work: whatever sits at position `p` lives in a
chunk inside p's window, so the assembler only ever needs the chunks of the
current window resident.

Everything about one sweep lives in an immutable `SweepRandomization`. When the
sweep changes the randomizer builds a new one and swaps it in; nothing is ever
patched in place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

import numpy as np

from chunkwise.errors import ConsistencyError, ContractViolation

from .catalog import Chunk

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RandomizedChunk:
    """A catalog chunk at its randomized position for one sweep."""

    position: int  # index in the randomized chunk order
    chunk_index: int  # index into the catalog's chunk store
    global_ts: int
    num_frames: int
    sequence_begin: int  # first sample position this chunk defines
    num_sequences: int
    window_begin: int
    window_end: int

    @property
    def global_te(self) -> int:
        return self.global_ts + self.num_frames

    @property
    def sequence_end(self) -> int:
        return self.sequence_begin + self.num_sequences


@dataclass(frozen=True)
class SequenceRef:
    """The sample found at one position of the randomized order."""

    chunk_position: int  # randomized chunk that holds the data
    unit_index: int  # unit within that chunk
    frame_index: int  # frame within the unit; 0 in utterance mode
    global_ts: int
    num_frames: int

    @property
    def global_te(self) -> int:
        return self.global_ts + self.num_frames


def _readonly(a: np.ndarray) -> np.ndarray:
    a.setflags(write=False)
    return a


@dataclass(frozen=True, eq=False)
class SweepRandomization:
    """Immutable snapshot of the randomized order for one sweep.

    Per-position data is kept in flat read-only arrays; `sequence(pos)` builds
    a `SequenceRef` on demand. In frame mode there is one position per frame.
    """

    sweep: int
    sweep_ts: int
    total_frames: int
    frame_mode: bool
    chunks: tuple[RandomizedChunk, ...]
    chunk_ends: np.ndarray
    seq_chunk: np.ndarray
    seq_unit: np.ndarray
    seq_frame: np.ndarray
    seq_ts: np.ndarray
    seq_frames: np.ndarray
    # Window of each position's defining chunk (the chunk the position belongs to).
    pos_window_begin: np.ndarray
    pos_window_end: np.ndarray

    def __len__(self) -> int:
        return int(self.seq_ts.shape[0])

    @property
    def sweep_te(self) -> int:
        return self.sweep_ts + self.total_frames

    def sequence(self, pos: int) -> SequenceRef:
        """Return the sample at position `pos`.

        :param int pos: Sample position in [0, len(self)).
        :return SequenceRef: The sample there.
        """
        return SequenceRef(
            chunk_position=int(self.seq_chunk[pos]),
            unit_index=int(self.seq_unit[pos]),
            frame_index=int(self.seq_frame[pos]),
            global_ts=int(self.seq_ts[pos]),
            num_frames=int(self.seq_frames[pos]),
        )

    def sequences(self, begin: int, end: int) -> Iterator[SequenceRef]:
        """Iterate samples at positions [begin, end).

        :param int begin: First position.
        :param int end: One past the last position.
        :return Iterator[SequenceRef]: Samples in order.
        """
        for pos in range(begin, end):
            yield self.sequence(pos)

    def position_window(self, pos: int) -> tuple[int, int]:
        """Admissible randomized-chunk range for position `pos`.

        :param int pos: Sample position.
        :return tuple[int, int]: (window_begin, window_end).
        """
        return int(self.pos_window_begin[pos]), int(self.pos_window_end[pos])

    def position_for(self, global_ts: int) -> int:
        """Map a cursor to the position of the sample that starts there.

        :param int global_ts: Global frame index; must be a sample boundary of this sweep.
        :raises ContractViolation: If no sample starts at `global_ts`.
        :return int: Sample position.
        """
        pos = int(np.searchsorted(self.seq_ts, global_ts, side="left"))
        if pos >= len(self) or int(self.seq_ts[pos]) != global_ts:
            raise ContractViolation(
                f"invalid cursor {global_ts}: must match an existing sample boundary "
                f"in sweep {self.sweep}"
            )
        return pos

    def chunk_for_frame(self, t: int) -> int:
        """Return the randomized chunk whose time span contains frame `t`.

        :param int t: Global frame index within this sweep.
        :raises ContractViolation: If `t` lies outside the sweep.
        :return int: Randomized chunk position.
        """
        if not self.sweep_ts <= t < self.sweep_te:
            raise ContractViolation(
                f"frame {t} is outside sweep {self.sweep} [{self.sweep_ts}, {self.sweep_te})"
            )
        return int(np.searchsorted(self.chunk_ends, t, side="right"))

    def first_valid_ts(self, global_ts: int) -> int:
        """Nearest sample boundary at or after `global_ts`.

        Frame mode accepts any frame, so the cursor comes back unchanged.

        :param int global_ts: Arbitrary global frame index within this sweep.
        :return int: Valid cursor (may be the sweep end).
        """
        if self.frame_mode:
            return int(global_ts)
        pos = int(np.searchsorted(self.seq_ts, global_ts, side="left"))
        if pos < len(self):
            return int(self.seq_ts[pos])
        # requested time falls inside the last utterance
        return self.sweep_te


def compute_windows(
    global_ts: Sequence[int], global_te: Sequence[int], randomization_range: int
) -> tuple[list[int], list[int]]:
    """Sliding admissible window for every randomized chunk.

    Each window starts from its predecessor's and is adjusted: chunks that
    start more than half a range before this chunk's start drop off the
    front, and chunks that end less than half a range after it join at the
    back. A chunk is always inside its own window.

    :param global_ts: Start frame per randomized chunk.
    :param global_te: End frame per randomized chunk.
    :param int randomization_range: Full window width in frames.
    :return tuple[list[int], list[int]]: (window_begin, window_end) per chunk.
    """
    n = len(global_ts)
    half = randomization_range // 2
    begins: list[int] = []
    ends: list[int] = []
    b, e = 0, 1
    for k in range(n):
        e = max(e, k + 1)
        while global_ts[k] - global_ts[b] > half:
            b += 1
        while e < n and global_te[e] - global_ts[k] < half:
            e += 1
        begins.append(b)
        ends.append(e)
    return begins, ends


def _uniforms(rng: np.random.Generator, block: int = 8192) -> Iterator[float]:
    """Endless stream of U[0, 1) draws, pulled from `rng` in blocks."""
    while True:
        yield from rng.random(block).tolist()


def _aranges(counts: np.ndarray) -> np.ndarray:
    """Concatenation of ``arange(n)`` for every n in `counts`, without a Python loop."""
    counts = np.asarray(counts, dtype=np.int64)
    total = int(counts.sum())
    starts = np.cumsum(counts) - counts
    return np.arange(total, dtype=np.int64) - np.repeat(starts, counts)


def constrained_shuffle(
    defining: np.ndarray,
    seq_begin: np.ndarray,
    seq_end: np.ndarray,
    window_begin: Sequence[int],
    window_end: Sequence[int],
    rng: np.random.Generator,
) -> np.ndarray:
    """Shuffle samples without leaving their admissible windows.

    Position i initially holds its own sample, which lives in randomized chunk
    ``defining[i]``. For each i, draw j uniformly from the positions covered by
    i's window and swap the samples at i and j only if each one's chunk stays
    inside the window of the position it moves to. Rejected draws are retried;
    j == i ends the attempt, so the loop always terminates.

    Only the permutation is swapped; callers gather whatever per-sample arrays
    they need through it afterwards.

    :param np.ndarray defining: Randomized chunk of every position, in chunk order.
    :param np.ndarray seq_begin: First position of every randomized chunk.
    :param np.ndarray seq_end: One past the last position of every randomized chunk.
    :param window_begin: Window begin per randomized chunk.
    :param window_end: Window end per randomized chunk.
    :param np.random.Generator rng: Seeded generator.
    :return np.ndarray: int64 permutation; position i ends up with sample ``perm[i]``.
    """
    # plain lists: the loop is element-wise, and list indexing is much faster
    # than numpy scalar indexing
    chunk_of = defining.tolist()
    wb, we = list(window_begin), list(window_end)
    range_begin = seq_begin[np.asarray(wb, dtype=np.int64)].tolist()
    range_end = seq_end[np.asarray(we, dtype=np.int64) - 1].tolist()
    perm = list(range(len(chunk_of)))

    draws = _uniforms(rng)
    for k in range(len(wb)):
        lo = range_begin[k]
        span = range_end[k] - lo
        wb_i, we_i = wb[k], we[k]
        for i in range(int(seq_begin[k]), int(seq_end[k])):
            while True:
                j = lo + int(next(draws) * span)
                if j == i:
                    break
                # sample at j must be allowed at i, and sample at i allowed at j
                cj = chunk_of[perm[j]]
                if not wb_i <= cj < we_i:
                    continue
                k_j = chunk_of[j]
                if not wb[k_j] <= chunk_of[perm[i]] < we[k_j]:
                    continue
                perm[i], perm[j] = perm[j], perm[i]
                break
    return np.asarray(perm, dtype=np.int64)


class Randomizer:
    """Builds and caches the `SweepRandomization` for the current sweep.

    Works on the primary stream's chunks only. The other streams are aligned
    by chunk index, so the same permutation applies to all of them.
    """

    def __init__(
        self,
        chunks: Sequence[Chunk],
        *,
        randomization_range: int,
        frame_mode: bool = False,
        seed: int = 0,
    ):
        """Initialize the randomizer.

        :param chunks: Primary-stream chunks in catalog order.
        :param int randomization_range: Full window width in frames.
        :param bool frame_mode: Randomize single frames instead of utterances.
        :param int seed: Added to the sweep index when seeding.
        :raises ValueError: If there is no data or the range is not positive.
        """
        if not chunks:
            raise ValueError("Randomizer needs at least one chunk")
        if randomization_range <= 0:
            raise ValueError(f"randomization_range must be positive, got {randomization_range}")
        self.randomization_range = int(randomization_range)
        self.frame_mode = bool(frame_mode)
        self.seed = int(seed)

        self._chunk_frames = np.asarray([c.total_frames for c in chunks], dtype=np.int64)
        self._chunk_units = np.asarray([c.num_units for c in chunks], dtype=np.int64)
        self._unit_frames = [np.asarray([u.num_frames for u in c.units], dtype=np.int64) for c in chunks]
        self._unit_offsets = np.concatenate(([0], np.cumsum(self._chunk_units)[:-1]))
        self._unit_frames_flat = np.concatenate(self._unit_frames)
        self.total_frames = int(self._chunk_frames.sum())
        if self.total_frames <= 0:
            raise ValueError("Randomizer: catalog holds no frames")

        self._current: SweepRandomization | None = None
        # Number of full re-randomizations performed (diagnostics).
        self.randomization_count = 0

    @property
    def num_chunks(self) -> int:
        return int(self._chunk_frames.shape[0])

    @property
    def resolved(self) -> bool:
        return self._current is not None

    @property
    def current(self) -> SweepRandomization:
        """The randomization of the most recently resolved sweep.

        :raises ContractViolation: If no sweep has been resolved yet.
        :return SweepRandomization: Current snapshot.
        """
        if self._current is None:
            raise ContractViolation("Randomizer.current: call resolve_sweep() first")
        return self._current

    def resolve_sweep(self, global_ts: int) -> int:
        """Make sure the randomization for `global_ts`'s sweep is in place.

        Same sweep as last time => O(1) no-op.

        :param int global_ts: Global frame index.
        :raises ValueError: If `global_ts` is negative.
        :return int: The sweep index.
        """
        if global_ts < 0:
            raise ValueError(f"global_ts must be >= 0, got {global_ts}")
        sweep = int(global_ts) // self.total_frames
        if self._current is not None and self._current.sweep == sweep:
            return sweep
        logger.info(
            "Re-randomizing for sweep %d in %s mode",
            sweep,
            "frame" if self.frame_mode else "utterance",
        )
        self._current = self.randomize(sweep)
        self.randomization_count += 1
        return sweep

    def randomize(self, sweep: int) -> SweepRandomization:
        """Compute the randomization for `sweep` from scratch.

        Pure function of (catalog, sweep, seed, range, mode).

        :param int sweep: Sweep index.
        :raises ConsistencyError: If the result violates a window or frame-count invariant.
        :return SweepRandomization: Fresh snapshot.
        """
        sweep_ts = sweep * self.total_frames

        # ---- chunk level ----
        chunk_rng = np.random.default_rng([self.seed, sweep, 0])
        order = chunk_rng.permutation(self.num_chunks)
        frames = self._chunk_frames[order]
        chunk_te = sweep_ts + np.cumsum(frames)
        chunk_ts = chunk_te - frames
        nseq = frames if self.frame_mode else self._chunk_units[order]
        seq_end = np.cumsum(nseq)
        seq_begin = seq_end - nseq

        wb, we = compute_windows(chunk_ts.tolist(), chunk_te.tolist(), self.randomization_range)
        chunks = tuple(
            RandomizedChunk(
                position=k,
                chunk_index=int(order[k]),
                global_ts=int(chunk_ts[k]),
                num_frames=int(frames[k]),
                sequence_begin=int(seq_begin[k]),
                num_sequences=int(nseq[k]),
                window_begin=wb[k],
                window_end=we[k],
            )
            for k in range(self.num_chunks)
        )
        for c in chunks:
            if not c.window_begin <= c.position < c.window_end <= self.num_chunks:
                raise ConsistencyError(
                    f"randomize: chunk {c.position} has malformed window "
                    f"[{c.window_begin}, {c.window_end})"
                )

        # ---- sample level: start in chunk order ----
        defining = np.repeat(np.arange(self.num_chunks, dtype=np.int64), nseq)
        pos_wb = np.asarray(wb, dtype=np.int64)[defining]
        pos_we = np.asarray(we, dtype=np.int64)[defining]

        # unit within its chunk, for every unit in randomized chunk order
        unit_counts = self._chunk_units[order]
        local_unit = _aranges(unit_counts)
        if self.frame_mode:
            flat_unit = np.repeat(self._unit_offsets[order], unit_counts) + local_unit
            unit_frames = self._unit_frames_flat[flat_unit]
            unit0 = np.repeat(local_unit, unit_frames)
            frame0 = _aranges(unit_frames)
        else:
            unit0 = local_unit
            frame0 = np.zeros_like(local_unit)

        sample_rng = np.random.default_rng([self.seed, sweep, 1])
        perm = constrained_shuffle(defining, seq_begin, seq_end, wb, we, sample_rng)

        seq_chunk_a = defining[perm]
        seq_unit_a = unit0[perm]
        seq_frame_a = frame0[perm]
        if self.frame_mode:
            seq_frames = np.ones_like(seq_chunk_a)
        else:
            seq_frames = self._unit_frames_flat[self._unit_offsets[order[seq_chunk_a]] + seq_unit_a]
        seq_ts = sweep_ts + np.concatenate(([0], np.cumsum(seq_frames)[:-1]))

        if int(seq_frames.sum()) != self.total_frames:
            raise ConsistencyError(
                f"randomize: sweep {sweep} covers {int(seq_frames.sum())} frames, "
                f"expected {self.total_frames}"
            )
        bad = (seq_chunk_a < pos_wb) | (seq_chunk_a >= pos_we)
        if bad.any():
            raise ConsistencyError(
                f"randomize: randomization logic mangled at {int(bad.sum())} positions "
                f"in sweep {sweep}"
            )

        return SweepRandomization(
            sweep=sweep,
            sweep_ts=sweep_ts,
            total_frames=self.total_frames,
            frame_mode=self.frame_mode,
            chunks=chunks,
            chunk_ends=_readonly(chunk_te.astype(np.int64)),
            seq_chunk=_readonly(seq_chunk_a),
            seq_unit=_readonly(seq_unit_a),
            seq_frame=_readonly(seq_frame_a),
            seq_ts=_readonly(seq_ts.astype(np.int64)),
            seq_frames=_readonly(seq_frames.astype(np.int64)),
            pos_window_begin=_readonly(pos_wb),
            pos_window_end=_readonly(pos_we),
        )
