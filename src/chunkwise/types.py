"""Shared result types.

Keep this file small: it defines the **runtime contract** between the
assembler and whatever training loop consumes it.

- `Minibatch` holds the arrays. It is an equinox pytree so a training loop can
  `jax.device_put` it (or pass it straight into a jitted step) without
  unpacking.
- `BatchResult` wraps a `Minibatch` with the bookkeeping the caller needs to
  advance its cursor.

**Minibatch contract**

  features: one [n, dim_s] float32 array per feature stream s
  labels:   one [n] int32 array per label set (empty tuple when unsupervised)

where n is the number of frames returned *to this worker*. With several workers
n is usually smaller than `frames_advanced`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import equinox as eqx
import jax


class Minibatch(eqx.Module):
    """Feature and label buffers for one `get_batch` call."""

    features: tuple[jax.Array, ...]
    labels: tuple[jax.Array, ...]

    @property
    def num_frames(self) -> int:
        """Number of frames (rows) in the buffers.

        :return int: Row count of the first feature stream, 0 if there are none.
        """
        if not self.features:
            return 0
        return int(self.features[0].shape[0])


@dataclass(frozen=True)
class BatchResult:
    """What `MinibatchAssembler.get_batch` hands back."""

    frames_advanced: int
    batch: Minibatch
    sweep: int
    paged_from_storage: bool
    # Frames each worker would get for this call, indexed by worker.
    subset_sizes: tuple[int, ...]
    # Utterance mode only: buffer offsets one past the end of each returned utterance.
    utterance_ends: tuple[int, ...] = ()
    # Auxiliary graphs, one per returned utterance (None where the source has none).
    lattices: tuple[Any, ...] = field(default=())
