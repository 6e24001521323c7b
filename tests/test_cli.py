"""CLI tests."""

from __future__ import annotations

import json
from pathlib import Path

import yaml
from click.testing import CliRunner

from chunkwise._version import __version__
from chunkwise.cli import cli
from tests.helpers.fakes import write_corpus


def _config(tmp_path: Path, **sections) -> Path:
    manifest = write_corpus(tmp_path, (10, 5, 20, 7, 12))
    data = {
        "catalog": {"manifest": str(manifest), "chunk_frames": 15},
        "randomizer": {"randomization_range": 30},
        "assembler": {"frames_per_batch": 16},
        "logging": {
            "console_use_rich": False,
            "metrics_file": str(tmp_path / "metrics.jsonl"),
            "log_file": str(tmp_path / "logs" / "scan.log"),
        },
    }
    data.update(sections)
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_version_option() -> None:
    result = CliRunner().invoke(cli, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_scan_writes_metrics(tmp_path: Path) -> None:
    cfg_path = _config(tmp_path)
    result = CliRunner().invoke(cli, ["scan", str(cfg_path), "--batches", "7"])
    assert result.exit_code == 0, result.output
    assert "7 batches" in result.output

    rows = [json.loads(line) for line in (tmp_path / "metrics.jsonl").read_text().splitlines()]
    assert [r["batch"] for r in rows] == list(range(7))
    assert rows[0]["cursor"] == 0
    for prev, cur in zip(rows, rows[1:]):
        assert cur["cursor"] == prev["cursor"] + prev["frames_advanced"]
    assert {r["sweep"] for r in rows} >= {0, 1}
    assert (tmp_path / "logs" / "scan.log").exists()


def test_scan_applies_overrides(tmp_path: Path) -> None:
    cfg_path = _config(tmp_path)
    result = CliRunner().invoke(
        cli,
        ["scan", str(cfg_path), "--batches", "3", "-o", "randomizer.frame_mode=true"],
    )
    assert result.exit_code == 0, result.output
    rows = [json.loads(line) for line in (tmp_path / "metrics.jsonl").read_text().splitlines()]
    assert [r["frames_advanced"] for r in rows] == [16, 16, 16]
    assert all(r["num_utterances"] == 0 for r in rows)


def test_scan_rejects_invalid_config(tmp_path: Path) -> None:
    cfg_path = _config(tmp_path, pager={"max_attempts": 0})
    result = CliRunner().invoke(cli, ["scan", str(cfg_path)])
    assert result.exit_code != 0
    assert "max_attempts" in str(result.exception)
