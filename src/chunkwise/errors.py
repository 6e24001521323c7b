"""Failure categories for the randomize/page/assemble core.

None of these are meant to be caught and ignored inside chunkwise. Storage
errors get a bounded number of retries in the pager; everything else goes
straight to the caller.
"""

from __future__ import annotations


class ContractViolation(RuntimeError):
    """The caller broke the call sequence (bad cursor, chunk outside window, ...)."""


class ConsistencyError(RuntimeError):
    """Randomization or residency invariants no longer hold."""


class PageInError(RuntimeError):
    """A chunk could not be paged in within the configured number of attempts."""


class CatalogError(ValueError):
    """Too many recordings failed validation to build a usable catalog."""
