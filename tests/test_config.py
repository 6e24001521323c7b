"""Config loading, overrides and validation."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from chunkwise.config import Config, load_config, validate_config

EXAMPLE_CONFIG = Path(__file__).resolve().parents[1] / "configs" / "example.yaml"


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "cfg.yaml"
    path.write_text(text)
    return path


def test_example_config_loads() -> None:
    """The shipped example config must load and validate as-is."""
    cfg = load_config(EXAMPLE_CONFIG)
    assert cfg.catalog.chunk_frames == 90000
    assert cfg.randomizer.randomization_range == 48 * 3600 * 100
    assert cfg.assembler.left_context == (0,)
    assert cfg.num_streams == 1


def test_defaults_are_valid() -> None:
    validate_config(Config())


def test_yaml_lists_become_tuples(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
assembler:
  left_context: [2, 0]
  right_context: [2, 0]
  augmented_dims: [0, 0]
""",
    )
    cfg = load_config(path)
    assert cfg.assembler.left_context == (2, 0)
    assert cfg.num_streams == 2


def test_overrides_cast_to_field_types(tmp_path: Path) -> None:
    path = _write(tmp_path, "pager:\n  max_attempts: 5\n")
    cfg = load_config(
        path,
        overrides=[
            "pager.max_attempts=3",
            "pager.retry_delay_sec=0.25",
            "randomizer.frame_mode=true",
            "assembler.left_context=[4]",
            "assembler.right_context=4",
            "catalog.manifest=/data/manifest.yaml",
        ],
    )
    assert cfg.pager.max_attempts == 3
    assert cfg.pager.retry_delay_sec == 0.25
    assert cfg.randomizer.frame_mode is True
    assert cfg.assembler.left_context == (4,)
    assert cfg.assembler.right_context == (4,)
    assert cfg.catalog.manifest == "/data/manifest.yaml"


def test_unknown_section_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "trainer:\n  steps: 1\n")
    with pytest.raises(ValueError, match="Unknown config sections"):
        load_config(path)


def test_unknown_key_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "pager:\n  max_retries: 1\n")
    with pytest.raises(ValueError, match="Invalid keys in config section 'pager'"):
        load_config(path)


def test_unknown_override_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "{}\n")
    with pytest.raises(ValueError, match="Unknown config key"):
        load_config(path, overrides=["pager.nope=1"])


def test_malformed_override_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "{}\n")
    with pytest.raises(ValueError, match="Invalid override"):
        load_config(path, overrides=["pager.max_attempts"])


def test_bad_boolean_override_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "{}\n")
    with pytest.raises(ValueError, match="Expected boolean"):
        load_config(path, overrides=["randomizer.frame_mode=maybe"])


@pytest.mark.parametrize(
    ("section", "changes", "match"),
    [
        ("catalog", {"chunk_frames": 0}, "chunk_frames"),
        ("catalog", {"min_unit_frames": 10, "max_unit_frames": 5}, "max_unit_frames"),
        ("catalog", {"max_invalid_fraction": 1.0}, "max_invalid_fraction"),
        ("catalog", {"label_dims": (0,)}, "label_dims"),
        ("randomizer", {"randomization_range": 0}, "randomization_range"),
        ("pager", {"max_attempts": 0}, "max_attempts"),
        ("pager", {"retry_delay_sec": -1.0}, "retry_delay_sec"),
        ("assembler", {"frames_per_batch": 0}, "frames_per_batch"),
        ("assembler", {"worker_index": 2, "worker_count": 2}, "worker_index"),
        ("assembler", {"right_context": (1, 1)}, "same"),
        ("assembler", {"left_context": (-1,)}, ">= 0"),
        ("logging", {"level": "LOUD"}, "logging.level"),
    ],
)
def test_validation_failures(section: str, changes: dict, match: str) -> None:
    cfg = Config()
    bad = replace(cfg, **{section: replace(getattr(cfg, section), **changes)})
    with pytest.raises(ValueError, match=match):
        validate_config(bad)


def test_validation_message_prefix() -> None:
    cfg = Config()
    bad = replace(cfg, pager=replace(cfg.pager, max_attempts=0))
    with pytest.raises(ValueError, match="^Config validation failed: "):
        validate_config(bad)


def test_to_dict_is_nested() -> None:
    d = Config().to_dict()
    assert set(d) == {"catalog", "randomizer", "pager", "assembler", "logging"}
    assert d["pager"]["max_attempts"] == 5
