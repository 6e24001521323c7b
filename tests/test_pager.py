"""Chunk paging: residency atomicity across streams, retries and misuse."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from chunkwise.data.catalog import CatalogBuilder
from chunkwise.data.pager import ChunkPager
from chunkwise.data.randomizer import Randomizer
from chunkwise.data.readers import MappingLatticeSource
from chunkwise.errors import ConsistencyError, ContractViolation, PageInError
from tests.helpers.fakes import MANY_LENGTHS, CountingReader, FlakyReader, make_streams


def _setup(lengths=MANY_LENGTHS, *, num_streams=2, wrap=None, lattices=None, max_attempts=5):
    streams, readers = make_streams(lengths, num_streams=num_streams)
    catalog = CatalogBuilder(chunk_frames=15).build(streams, [r.num_frames for r in readers])
    if wrap is not None:
        readers = [wrap(m, r) for m, r in enumerate(readers)]
    randomizer = Randomizer(catalog.primary, randomization_range=10_000_000)
    randomizer.resolve_sweep(0)
    pager = ChunkPager(
        randomizer, catalog.streams, readers, lattices=lattices, max_attempts=max_attempts
    )
    return catalog, randomizer, pager, readers


def _residency(catalog, randomizer, pos):
    idx = randomizer.current.chunks[pos].chunk_index
    return [stream[idx].is_resident for stream in catalog.streams]


def test_ensure_resident_pages_in_all_streams() -> None:
    catalog, randomizer, pager, _ = _setup(num_streams=3)
    n = randomizer.num_chunks
    assert pager.ensure_resident(2, 0, n) is True
    assert _residency(catalog, randomizer, 2) == [True, True, True]
    assert pager.resident_count == 1
    assert pager.ensure_resident(2, 0, n) is False
    assert pager.page_in_count == 1
    assert pager.feature_dims == [2, 2, 2]


def test_paged_in_frames_match_storage() -> None:
    catalog, randomizer, pager, _ = _setup(num_streams=1)
    pager.ensure_resident(0, 0, randomizer.num_chunks)
    chunk = catalog.primary[randomizer.current.chunks[0].chunk_index]
    for i, unit in enumerate(chunk.units):
        frames = chunk.unit_frames(i)
        assert frames.shape == (unit.num_frames, 2)
        assert frames.dtype == np.float32
        uid = int(unit.key[3:])
        np.testing.assert_array_equal(frames[:, 0], uid * 1000 + np.arange(unit.num_frames))


def test_release_pages_out_all_streams() -> None:
    catalog, randomizer, pager, _ = _setup()
    pager.ensure_resident(1, 0, randomizer.num_chunks)
    pager.release(1)
    assert _residency(catalog, randomizer, 1) == [False, False]
    assert pager.resident_count == 0
    assert pager.page_out_count == 1


def test_release_non_resident_is_contract_violation() -> None:
    _, _, pager, _ = _setup()
    with pytest.raises(ContractViolation, match="not resident"):
        pager.release(0)


def test_ensure_resident_outside_window_is_contract_violation() -> None:
    _, _, pager, readers = _setup(wrap=lambda m, r: CountingReader(r))
    with pytest.raises(ContractViolation, match="outside in-memory window"):
        pager.ensure_resident(5, 0, 5)
    assert all(r.reads == 0 for r in readers)


def test_partial_residency_is_consistency_error() -> None:
    catalog, randomizer, pager, _ = _setup()
    idx = randomizer.current.chunks[0].chunk_index
    chunk = catalog.streams[1][idx]
    chunk.install(np.zeros((chunk.total_frames, 2), dtype=np.float32), None)
    with pytest.raises(ConsistencyError, match="1 of 2 streams resident"):
        pager.is_resident(0)
    with pytest.raises(ConsistencyError):
        pager.ensure_resident(0, 0, randomizer.num_chunks)


def test_transient_failures_are_retried(caplog: pytest.LogCaptureFixture) -> None:
    catalog, randomizer, pager, readers = _setup(
        wrap=lambda m, r: FlakyReader(r, failures=2) if m == 1 else r
    )
    with caplog.at_level(logging.WARNING, logger="chunkwise.data.pager"):
        assert pager.ensure_resident(0, 0, randomizer.num_chunks) is True
    assert _residency(catalog, randomizer, 0) == [True, True]
    assert "attempt 1/5" in caplog.text
    assert "attempt 2/5" in caplog.text


def test_exhausted_retries_leave_every_stream_paged_out() -> None:
    catalog, randomizer, pager, readers = _setup(
        wrap=lambda m, r: FlakyReader(r) if m == 1 else r, max_attempts=3
    )
    with pytest.raises(PageInError, match="after 3 attempts") as excinfo:
        pager.ensure_resident(0, 0, randomizer.num_chunks)
    assert isinstance(excinfo.value.__cause__, OSError)
    assert _residency(catalog, randomizer, 0) == [False, False]
    assert readers[1].reads == 3
    assert pager.resident_count == 0
    # Still consistent: a later call sees "none resident", not a mix.
    assert pager.is_resident(0) is False


def test_wrong_frame_count_fails_without_retry(caplog: pytest.LogCaptureFixture) -> None:
    class ShortReader(CountingReader):
        def read(self, locator):
            self.reads += 1
            return self._inner.read(locator)[:-1]

    catalog, randomizer, pager, readers = _setup(
        wrap=lambda m, r: ShortReader(r) if m == 0 else r, max_attempts=5
    )
    with caplog.at_level(logging.WARNING, logger="chunkwise.data.pager"):
        with pytest.raises(PageInError, match="malformed") as excinfo:
            pager.ensure_resident(0, 0, randomizer.num_chunks)
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert "expected" in str(excinfo.value.__cause__)
    chunk = catalog.primary[randomizer.current.chunks[0].chunk_index]
    assert readers[0].reads == chunk.num_units
    assert "attempt" not in caplog.text
    assert _residency(catalog, randomizer, 0) == [False, False]


def test_wrong_feature_dimension_fails_without_retry() -> None:
    class WideReader(CountingReader):
        def read(self, locator):
            self.reads += 1
            return np.pad(self._inner.read(locator), ((0, 0), (0, 1)))

    catalog, randomizer, pager, readers = _setup(wrap=lambda m, r: WideReader(r) if m == 1 else r)
    with pytest.raises(PageInError) as excinfo:
        pager.ensure_resident(0, 0, randomizer.num_chunks)
    assert "dimension 3, expected 2" in str(excinfo.value.__cause__)
    chunk = catalog.streams[1][randomizer.current.chunks[0].chunk_index]
    assert readers[1].reads == chunk.num_units
    assert _residency(catalog, randomizer, 0) == [False, False]


def test_feature_dims_known_before_any_page_in() -> None:
    streams, readers = make_streams(MANY_LENGTHS, num_streams=2, dims=(2, 5))
    catalog = CatalogBuilder(chunk_frames=15).build(streams, [r.num_frames for r in readers])
    counting = [CountingReader(r) for r in readers]
    randomizer = Randomizer(catalog.primary, randomization_range=100)
    pager = ChunkPager(randomizer, catalog.streams, counting)
    assert pager.feature_dims == [2, 5]
    assert all(r.reads == 0 for r in counting)


def test_lattices_loaded_for_primary_stream() -> None:
    lengths = (10, 5, 20)
    lattices = MappingLatticeSource({"utt000": "graph-0", "utt002": "graph-2"})
    catalog, randomizer, pager, _ = _setup(lengths, lattices=lattices)
    for pos in range(randomizer.num_chunks):
        pager.ensure_resident(pos, 0, randomizer.num_chunks)
    found = {
        u.key: chunk.unit_lattice(i)
        for chunk in catalog.primary
        for i, u in enumerate(chunk.units)
    }
    assert found == {"utt000": "graph-0", "utt001": None, "utt002": "graph-2"}
    assert all(chunk.unit_lattice(0) is None for chunk in catalog.streams[1])


def test_release_outside_and_release_all() -> None:
    catalog, randomizer, pager, _ = _setup()
    n = randomizer.num_chunks
    for pos in range(6):
        pager.ensure_resident(pos, 0, n)
    assert pager.release_outside(2, 4) == 4
    assert pager.resident_count == 2
    assert [pager.is_resident(p) for p in range(6)] == [False, False, True, True, False, False]
    assert pager.release_all() == 2
    assert pager.resident_count == 0


def test_release_all_before_first_sweep() -> None:
    streams, readers = make_streams((10, 5, 20))
    catalog = CatalogBuilder(chunk_frames=15).build(streams, [r.num_frames for r in readers])
    randomizer = Randomizer(catalog.primary, randomization_range=100)
    pager = ChunkPager(randomizer, catalog.streams, readers)
    assert pager.release_all() == 0


def test_rejects_mismatched_readers() -> None:
    streams, readers = make_streams((10, 5, 20), num_streams=2)
    catalog = CatalogBuilder(chunk_frames=15).build(streams, [r.num_frames for r in readers])
    randomizer = Randomizer(catalog.primary, randomization_range=100)
    with pytest.raises(ValueError, match="1 readers for 2"):
        ChunkPager(randomizer, catalog.streams, readers[:1])
    with pytest.raises(ValueError, match="max_attempts"):
        ChunkPager(randomizer, catalog.streams, readers, max_attempts=0)
