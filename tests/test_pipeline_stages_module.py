from __future__ import annotations

import json
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from kaldiflow.pipeline.commands import CommandResult
from kaldiflow.pipeline.errors import ExternalToolError
from kaldiflow.pipeline.naming import NameMap
from kaldiflow.pipeline.orchestrator import DecodePipeline, resume, resume_stage, run_decode
from kaldiflow.pipeline.stages import PIPELINE_STAGES, stage_number
from kaldiflow.pipeline.stages.decode import speech_duration
from kaldiflow.pipeline.tables import read_segments, read_utt2spk

from conftest import RecordingRunner


def test_stage_registry_order() -> None:
    names = [stage.name for stage in PIPELINE_STAGES]
    assert names == ["data_prep", "features", "decode", "transcripts", "scoring"]
    assert stage_number("transcripts") == 4
    with pytest.raises(KeyError):
        stage_number("outputs")


def test_speech_duration_sums_segments(tmp_path: Path, write_file) -> None:
    path = write_file(tmp_path / "segments", "a r 0.000 2.500\nb r 2.500 4.000\n")
    assert speech_duration(path) == pytest.approx(4.0)
    assert speech_duration(write_file(tmp_path / "empty", "")) == 0.0


# -- fake recipe -------------------------------------------------------------

LIUM_SEG = "rec1 1 0 250 M S U S0\nrec1 1 250 150 F S U S1\n"


def _subset(call) -> None:
    spk_list, all_dir, dest = (Path(arg) for arg in call.argv[-3:])
    speakers = set(spk_list.read_text().split())
    rows = [u for u in read_utt2spk(all_dir / "utt2spk") if u.speaker in speakers]
    utts = {u.utterance for u in rows}
    dest.mkdir(parents=True, exist_ok=True)
    (dest / "utt2spk").write_text("".join(f"{u.utterance} {u.speaker}\n" for u in rows))
    segments = [line for line in (all_dir / "segments").read_text().splitlines() if line.split()[0] in utts]
    (dest / "segments").write_text("".join(line + "\n" for line in segments))


def _make_decode_dir(call) -> None:
    scratch = Path(call.argv[-1])
    scratch.mkdir(parents=True, exist_ok=True)
    if Path(call.argv[0]).name == "decode_fmllr.sh":
        scratch.with_name(scratch.name + ".si").mkdir(exist_ok=True)


def _rescore(call) -> None:
    out = Path(call.argv[-1])
    out.mkdir(parents=True, exist_ok=True)
    (out / "num_jobs").write_text("1\n")
    (out / "lat.1.gz").write_bytes(b"")


def _lattice_ctm(target: Path):
    def _handler(call) -> None:
        int_ctm = Path(call.argv[-1])
        speech_type = int_ctm.parent.name
        utts = read_utt2spk(target / "Intermediate" / "Data" / speech_type / "utt2spk")
        int_ctm.write_text("".join(f"{u.utterance} 1 0.10 0.20 1 0.9\n" for u in utts))

    return _handler


def _lium(call) -> None:
    out = next(arg for arg in call.argv if arg.startswith("--sOutputMask="))
    Path(out.split("=", 1)[1]).write_text(LIUM_SEG)


def _asclite(call) -> None:
    hyp = Path(call.argv[call.argv.index("-h") + 1])
    hyp.with_name(hyp.name + ".sgml").write_text("<SYSTEM>\n")


def _fake_runner(target: Path) -> RecordingRunner:
    return RecordingRunner(
        {
            "java": _lium,
            "subset_data_dir.sh": _subset,
            "decode_fmllr.sh": _make_decode_dir,
            "decode_fmmi.sh": _make_decode_dir,
            "lmrescore_const_arpa.sh": _rescore,
            "lattice-to-ctm-conf": _lattice_ctm(target),
            "asclite": _asclite,
        }
    )


@pytest.fixture()
def recipe(tmp_path: Path, write_file) -> Path:
    root = tmp_path / "recipe"
    write_file(root / "conf" / "mfcc.conf", "--use-energy=false\n")
    write_file(root / "models" / "LM" / "4gpr_const" / "words.txt", "<eps> 0\nhallo 1\n")
    return root


@pytest.fixture()
def source(tmp_path: Path) -> Path:
    src = tmp_path / "source"
    src.mkdir()
    sf.write(str(src / "rec1.wav"), np.zeros(8000 * 5, dtype=np.float32), 8000, subtype="PCM_16")
    return src


def _config(recipe: Path, **extra) -> dict:
    cfg = {"recipe_dir": str(recipe), "cmd": "local", "nj": 1, "run_id": "test-run"}
    cfg.update(extra)
    return cfg


def test_full_run_produces_transcript_and_skips_scoring(tmp_path: Path, recipe: Path, source: Path) -> None:
    target = (tmp_path / "target").resolve()
    runner = _fake_runner(target)

    summary = run_decode(source, target, config=_config(recipe), runner=runner)

    assert summary["status"] == "completed"
    assert summary["stages_completed"] == [stage.name for stage in PIPELINE_STAGES]
    assert summary["decoded_types"] == ["MS", "FS"]
    assert summary["speech_seconds"]["MS"] == pytest.approx(2.5)
    assert (target / "1Best.ctm").read_text().splitlines() == [
        "rec1 1 0.100 0.200 hallo 0.9",
        "rec1 1 2.600 0.200 hallo 0.9",
    ]
    assert not (target / "NBest.ctm").exists()
    assert "asclite" not in runner.names()
    assert "csrfilt.sh" not in runner.names()
    assert summary["stats"]["skipped"] == ["scoring: no reference transcript"]

    data = target / "Intermediate" / "Data"
    assert (data / "ALL" / "segconv").read_text().splitlines() == [
        "testseg0000000000 rec1.001",
        "testseg0000000001 rec1.002",
    ]
    assert (data / "BWGender").read_text().splitlines() == ["MS rec1-S0", "FS rec1-S1"]
    assert (data / "test.flist").read_text().strip() == str(data / "rec1.wav")
    assert (target / "Intermediate" / "fmllr.si" / "MS").is_dir()
    assert not (recipe / "models" / "BN" / "fmllr" / "decode_MS").exists()

    progress = json.loads((target / "Intermediate" / "progress.json").read_text())
    assert progress["last_completed_stage"] == 5
    assert resume_stage(target) == 6


def test_subset_only_for_speech_types_with_speakers(tmp_path: Path, recipe: Path, source: Path) -> None:
    target = (tmp_path / "target").resolve()
    runner = _fake_runner(target)

    run_decode(source, target, config=_config(recipe, speech_types="MS MT"), runner=runner)

    subsets = runner.calls_to("subset_data_dir.sh")
    assert [Path(call.argv[-1]).name for call in subsets] == ["MS"]
    assert [Path(call.argv[-1]).name for call in runner.calls_to("lmrescore_const_arpa.sh")] == ["MS"]


def test_nbest_and_glm_postprocessing(tmp_path: Path, recipe: Path, source: Path, write_file) -> None:
    target = (tmp_path / "target").resolve()
    write_file(recipe / "local" / "nbest-eval-2008.glm", ";; glm\n")
    runner = _fake_runner(target)
    runner.handlers["nbest-to-ctm"] = _lattice_ctm(target)

    summary = run_decode(source, target, config=_config(recipe, nbest=2), runner=runner)

    assert (target / "NBest.ctm").exists()
    assert set(summary["outputs"]) == {"1Best", "NBest"}
    assert len(runner.calls_to("csrfilt.sh")) == 2
    assert "--n=2" in runner.calls_to("lattice-to-nbest")[0].argv


def test_reference_triggers_scoring(tmp_path: Path, recipe: Path, source: Path, write_file) -> None:
    write_file(source / "rec1.stm", "rec1 1 spk 2.0 3.0 Tweede\nrec1 1 spk 0.0 1.0 Eerste\n")
    target = (tmp_path / "target").resolve()
    runner = _fake_runner(target)

    summary = run_decode(source, target, config=_config(recipe), runner=runner)

    ref = (target / "Intermediate" / "Data" / "ALL" / "ref.stm").read_text().splitlines()
    assert [line.split()[3] for line in ref] == ["0.0", "2.0"]
    asclite = runner.calls_to("asclite")[0]
    assert "-uem" not in asclite.argv
    assert asclite.argv[1:5] == ["-D", "-noisg", "-r", str(target / "Intermediate" / "Data" / "ALL" / "ref.stm")]
    sclite = runner.calls_to("sclite")[0]
    assert sclite.stdin == "<SYSTEM>\n"
    assert sclite.argv[-2:] == ["-n", str(target / "1Best.ctm")]
    assert summary["outputs"]["sgml"].endswith("1Best.ctm.sgml")

    text_ref = (target / "Intermediate" / "Data" / "ALL" / "text_ref").read_text()
    assert text_ref == "rec1 eerste tweede\n"


def test_failure_aborts_and_resume_continues(tmp_path: Path, recipe: Path, source: Path) -> None:
    target = (tmp_path / "target").resolve()
    failing = _fake_runner(target)
    failing.handlers["decode_fmmi.sh"] = lambda call: CommandResult(call.argv, 1, "", "fmmi exploded")

    with pytest.raises(ExternalToolError):
        run_decode(source, target, config=_config(recipe), runner=failing)

    summary = json.loads((target / "Intermediate" / "run_summary.json").read_text())
    assert summary["status"] == "failed"
    assert summary["stats"]["failures"][0]["stage"] == "decode"
    assert resume_stage(target) == 3

    runner = _fake_runner(target)
    resumed = resume(source, target, config=_config(recipe), runner=runner)

    assert resumed["first_stage"] == 3
    assert "java" not in runner.names()
    assert runner.names()[0] == "decode_fmllr.sh"
    assert resumed["stages_completed"] == ["decode", "transcripts", "scoring"]


def test_rerunning_a_stage_is_idempotent(tmp_path: Path, recipe: Path, source: Path) -> None:
    target = (tmp_path / "target").resolve()
    run_decode(source, target, config=_config(recipe), runner=_fake_runner(target))
    first = (target / "1Best.ctm").read_text()

    again = resume(source, target, config=_config(recipe, stage=4), runner=_fake_runner(target))
    assert again["stages_completed"] == ["transcripts", "scoring"]
    assert (target / "1Best.ctm").read_text() == first

    nothing = resume(source, target, config=_config(recipe), runner=_fake_runner(target))
    assert nothing["stages_completed"] == []
    assert nothing["status"] == "completed"


def test_wrapped_job_runner_uses_recipe_wrapper(tmp_path: Path, recipe: Path) -> None:
    (recipe / "utils").mkdir()
    (recipe / "utils" / "queue.pl").write_text("#!/usr/bin/env perl\n")

    pipe = DecodePipeline({"recipe_dir": str(recipe), "cmd": "queue.pl -q all"}, runner=RecordingRunner())

    assert pipe.job_runner.wrapper == [str(recipe / "utils" / "queue.pl"), "-q", "all"]
    assert pipe.cfg.kaldi_cmd == "queue.pl -q all"
    assert pipe.script("steps/decode_fmllr.sh") == (recipe / "steps" / "decode_fmllr.sh").absolute()


def test_window_utterance_ids_follow_time_order(tmp_path: Path, recipe: Path, write_file) -> None:
    src = tmp_path / "windowed"
    src.mkdir()
    sf.write(str(src / "rec1.wav"), np.zeros(8000 * 40, dtype=np.float32), 8000, subtype="PCM_16")
    write_file(src / "rec1.uem", "rec1 1 5.0 10.0\nrec1 1 20.0 30.0\n")
    target = (tmp_path / "target").resolve()

    run_decode(src, target, config=_config(recipe), runner=_fake_runner(target))

    all_dir = target / "Intermediate" / "Data" / "ALL"
    names = NameMap.load(all_dir / "segconv")
    rows = sorted((names.to_original(seg.utterance), seg.start) for seg in read_segments(all_dir / "segments"))
    assert rows == [
        ("rec1.01.001", 5.0),
        ("rec1.01.002", 7.5),
        ("rec1.02.001", 20.0),
        ("rec1.02.002", 22.5),
    ]


@pytest.mark.parametrize(
    "failing_tool, resume_at",
    [("subset_data_dir.sh", 2), ("decode_fmmi.sh", 3), ("lattice-to-ctm-conf", 4)],
)
def test_interrupted_run_matches_uninterrupted_transcript(
    tmp_path: Path, recipe: Path, source: Path, failing_tool: str, resume_at: int
) -> None:
    reference = (tmp_path / "reference").resolve()
    run_decode(source, reference, config=_config(recipe), runner=_fake_runner(reference))

    target = (tmp_path / "target").resolve()
    failing = _fake_runner(target)
    failing.handlers[failing_tool] = lambda call: CommandResult(call.argv, 1, "", "interrupted")
    with pytest.raises(ExternalToolError):
        run_decode(source, target, config=_config(recipe), runner=failing)
    assert resume_stage(target) == resume_at

    resumed = resume(source, target, config=_config(recipe), runner=_fake_runner(target))

    assert resumed["first_stage"] == resume_at
    assert (target / "1Best.ctm").read_bytes() == (reference / "1Best.ctm").read_bytes()


def test_nbest_zero_removes_previous_nbest_output(tmp_path: Path, recipe: Path, source: Path) -> None:
    target = (tmp_path / "target").resolve()
    runner = _fake_runner(target)
    runner.handlers["nbest-to-ctm"] = _lattice_ctm(target)
    run_decode(source, target, config=_config(recipe, nbest=2), runner=runner)
    assert (target / "NBest.ctm").exists()

    summary = resume(source, target, config=_config(recipe, stage=4, nbest=0), runner=_fake_runner(target))

    assert "NBest" not in summary["outputs"]
    assert not (target / "NBest.ctm").exists()
    assert not (target / "Intermediate" / "Data" / "ALL" / "NBest.ctm").exists()
