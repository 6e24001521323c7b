"""chunkwise: windowed two-level randomization and chunk paging for frame data.

Serves minibatches of (augmented) feature frames and labels from a corpus that
does not fit in memory. The corpus is grouped into chunks; a sweep-seeded
two-level shuffle keeps every sample inside a bounded window of chunks, so only
that window has to be resident at any time.
"""

from __future__ import annotations

try:
    from chunkwise._version import __version__
except ImportError:
    __version__ = "0.0.0+unknown"

__all__ = ["__version__"]
