from __future__ import annotations

from pathlib import Path
from typing import Iterator, Tuple

import pytest

from kaldiflow.pipeline import config as config_mod
from kaldiflow.pipeline.config import DecodeConfig, build_decode_config


def test_build_decode_config_merges_and_validates() -> None:
    cfg = build_decode_config({"nj": 8, "max_jobs_run": None, "speech_types": "ms ft"})
    assert cfg.nj == 8
    assert cfg.max_jobs_run is None
    assert cfg.jobs_limit == 8
    assert cfg.speech_types == ["MS", "FT"]

    with pytest.raises(ValueError, match="Unknown configuration key"):
        build_decode_config({"unknown": 1})

    explicit = DecodeConfig(nbest=3)
    assert build_decode_config(explicit) is explicit


@pytest.mark.parametrize(
    "overrides",
    [
        {"nj": 0},
        {"stage": 6},
        {"inv_acoustic_scale": 0},
        {"speech_types": ["XX"]},
        {"speech_types": []},
        {"nbest": -1},
        {"cmd": " "},
    ],
)
def test_invalid_values_raise_value_error(overrides) -> None:
    with pytest.raises(ValueError):
        build_decode_config(overrides)


def test_paths_are_normalised_and_resolved(tmp_path: Path) -> None:
    cfg = DecodeConfig(recipe_dir=str(tmp_path), mfcc_config="conf/mfcc.conf", extra_path="bin")
    assert isinstance(cfg.recipe_dir, Path)
    assert cfg.resolve(cfg.mfcc_config) == tmp_path / "conf" / "mfcc.conf"
    assert cfg.resolve(Path("/abs/file")) == Path("/abs/file")
    assert cfg.models_root == tmp_path / "models"
    assert cfg.subprocess_env()["PATH"].startswith(str(tmp_path / "bin"))


def test_bandwidth_and_wrapper_selection() -> None:
    assert DecodeConfig().bandwidth_for("MT") == "BN"
    cts = DecodeConfig(cts=True)
    assert cts.bandwidth_for("FT") == "CTS"
    assert cts.bandwidth_for("FS") == "BN"
    assert DecodeConfig(cmd="local").kaldi_cmd == "run.pl"
    assert DecodeConfig(cmd="queue.pl -q all").kaldi_cmd == "queue.pl -q all"
    assert DecodeConfig(inv_acoustic_scale=10).acoustic_scale == pytest.approx(0.1)


def test_model_dump_json_round_trips(tmp_path: Path) -> None:
    cfg = DecodeConfig(recipe_dir=tmp_path, glm_file=None)
    dumped = cfg.model_dump(mode="json")
    assert dumped["recipe_dir"] == str(tmp_path)
    assert dumped["glm_file"] is None
    assert DecodeConfig.model_validate(dumped) == cfg


def test_dependency_summary_handles_import_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_iter() -> Iterator[Tuple[str, str, str | None, Exception | None]]:
        yield ("missing", "1.0", None, ImportError("boom"))
        yield ("old", "2.0", "1.5", None)
        yield ("ok", "1.0", "1.2", None)

    monkeypatch.setattr(config_mod, "_iter_dependency_status", fake_iter)

    summary = config_mod.dependency_health_summary()
    assert summary["missing"]["status"] == "error"
    assert summary["old"]["status"] == "warn"
    assert summary["ok"]["status"] == "ok"

    ok, issues = config_mod.verify_dependencies(strict=True)
    assert not ok
    assert len(issues) == 2


def test_tool_health_summary_reports_recipe_scripts(tmp_path: Path) -> None:
    (tmp_path / "steps").mkdir()
    (tmp_path / "steps" / "make_mfcc.sh").write_text("#!/bin/sh\n")
    cfg = DecodeConfig(recipe_dir=tmp_path)

    tools = config_mod.tool_health_summary(cfg)

    assert tools["steps/make_mfcc.sh"]["status"] == "ok"
    assert tools["steps/decode_fmllr.sh"]["status"] == "missing"
    assert tools["asclite"]["stage"] == "scoring"
    assert tools["lium"]["status"] == "missing"
