"""Scan subcommand.

Pulls minibatches through the full randomize/page/assemble path and records
per-batch stats. Useful to check a manifest end to end and to see how much
paging a given randomization range costs.
"""

from __future__ import annotations

import logging
import time

import click

from chunkwise.config import load_config
from chunkwise.data.pipeline import MinibatchIterator, build_source, catalog_fingerprint
from chunkwise.utils.io import MetricsWriter, add_file_logging, setup_python_logging

logger = logging.getLogger(__name__)


@click.command()
@click.argument("config", type=click.Path(exists=True))
@click.option(
    "--override",
    "-o",
    "overrides",
    multiple=True,
    help="Dotpath override, e.g. pager.max_attempts=3 (repeatable).",
)
@click.option(
    "--batches",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Number of minibatches to pull.",
)
@click.option(
    "--start",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Global frame to start from (rounded up to a valid cursor).",
)
def scan(config: str, overrides: tuple[str, ...], batches: int, start: int) -> None:
    """Pull minibatches and write per-batch stats.

    CONFIG is the path to a YAML config file.
    """
    cfg = load_config(config, overrides=list(overrides))

    # Logging first so subsequent errors are readable
    setup_python_logging(cfg.logging.level, use_rich=cfg.logging.console_use_rich)
    if cfg.logging.log_file:
        add_file_logging(cfg.logging.log_file, level=cfg.logging.level)

    source = build_source(cfg)
    a = cfg.assembler
    it = MinibatchIterator(
        source,
        frames_per_batch=a.frames_per_batch,
        worker_index=a.worker_index,
        worker_count=a.worker_count,
        start=start,
        fingerprint=catalog_fingerprint(source.catalog, cfg),
    )

    writer = MetricsWriter(cfg.logging.metrics_file) if cfg.logging.metrics_file else None
    frames = 0
    t0 = time.perf_counter()
    try:
        for i in range(batches):
            t_batch = time.perf_counter()
            res = next(it)
            frames += res.batch.num_frames
            row = {
                "batch": i,
                **it.get_stats(),
                "subset_sizes": list(res.subset_sizes),
                "num_utterances": len(res.utterance_ends),
                "seconds": round(time.perf_counter() - t_batch, 6),
            }
            if writer is not None:
                writer.write(row)
            logger.debug("batch %d: %s", i, row)
    finally:
        if writer is not None:
            writer.close()
        source.close()

    elapsed = time.perf_counter() - t0
    click.echo(
        f"[chunkwise] {batches} batches, {frames} frames returned, "
        f"cursor {it.cursor} ({source.randomizer.randomization_count} randomizations, "
        f"{source.pager.page_in_count} page-ins) in {elapsed:.2f}s"
    )
