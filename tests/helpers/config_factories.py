"""Shared config builders for tests."""

from __future__ import annotations

from chunkwise.config import (
    AssemblerConfig,
    CatalogConfig,
    Config,
    LoggingConfig,
    PagerConfig,
    RandomizerConfig,
    validate_config,
)


def make_cfg(
    *,
    num_streams: int = 1,
    chunk_frames: int = 15,
    randomization_range: int = 1_000_000,
    frame_mode: bool = False,
    seed: int = 0,
    frames_per_batch: int = 12,
    context: tuple[int, int] = (0, 0),
    augmented_dim: int = 0,
    worker_index: int = 0,
    worker_count: int = 1,
    align_workers: bool = False,
    label_dims: tuple[int, ...] = (),
    max_attempts: int = 5,
    manifest: str | None = None,
    metrics_file: str | None = None,
) -> Config:
    """Build a small, validated config.

    Context and augmented width apply to every stream.

    :return Config: Validated configuration.
    """
    cfg = Config(
        catalog=CatalogConfig(
            manifest=manifest,
            chunk_frames=chunk_frames,
            label_dims=label_dims,
        ),
        randomizer=RandomizerConfig(
            randomization_range=randomization_range, frame_mode=frame_mode, seed=seed
        ),
        pager=PagerConfig(max_attempts=max_attempts, retry_delay_sec=0.0),
        assembler=AssemblerConfig(
            frames_per_batch=frames_per_batch,
            left_context=(context[0],) * num_streams,
            right_context=(context[1],) * num_streams,
            augmented_dims=(augmented_dim,) * num_streams,
            worker_index=worker_index,
            worker_count=worker_count,
            align_workers=align_workers,
        ),
        logging=LoggingConfig(console_use_rich=False, metrics_file=metrics_file),
    )
    validate_config(cfg)
    return cfg
