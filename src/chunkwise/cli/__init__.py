"""CLI entrypoints for chunkwise.

Invoked via ``pyproject.toml`` entrypoints::

    chunkwise scan <config.yaml> --batches 100

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from chunkwise.cli.main import cli
