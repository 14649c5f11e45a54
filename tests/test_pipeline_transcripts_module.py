from __future__ import annotations

from pathlib import Path

import pytest

from kaldiflow.pipeline.ctm import CtmEntry, read_ctm
from kaldiflow.pipeline.errors import MissingFileError
from kaldiflow.pipeline.normalization import NormalizationTables
from kaldiflow.pipeline.tables import Segment
from kaldiflow.pipeline.transcripts import (
    LatticeConverter,
    TranscriptPostprocessor,
    correct_times,
    map_word_ids,
    merge_partitions,
    merge_shards,
)

SEGMENTS = {
    "testseg0000000000": Segment("testseg0000000000", "rec1", 12.0, 15.0),
    "testseg0000000001": Segment("testseg0000000001", "rec1", 2.0, 4.0),
}
SYMBOLS = {"1": "hallo", "2": "wereld"}


def test_map_word_ids_and_unknown_id() -> None:
    entries = [CtmEntry("u", "1", 0.0, 0.1, "2")]
    assert map_word_ids(entries, SYMBOLS)[0].word == "wereld"
    with pytest.raises(ValueError, match="word id 7"):
        map_word_ids([CtmEntry("u", "1", 0.0, 0.1, "7")], SYMBOLS)


def test_correct_times_makes_times_absolute() -> None:
    entries = [
        CtmEntry("testseg0000000000", "1", 0.5, 0.2, "hallo", 0.9),
        CtmEntry("testseg0000000001-3", "1", 1.25, 0.2, "wereld"),
    ]

    corrected = correct_times(entries, SEGMENTS)

    assert corrected[0] == CtmEntry("rec1", "1", 12.5, 0.2, "hallo", 0.9)
    assert corrected[1].utterance == "rec1-3"
    assert corrected[1].start == pytest.approx(3.25)
    with pytest.raises(ValueError):
        correct_times([CtmEntry("nope", "1", 0.0, 0.1, "x")], SEGMENTS)


def _fake_kaldi(recording_runner, int_ctm_text: str) -> None:
    def _write_last(call):
        Path(call.argv[-1]).write_text(int_ctm_text, encoding="utf-8")
        return None

    recording_runner.handlers["lattice-to-ctm-conf"] = _write_last
    recording_runner.handlers["nbest-to-ctm"] = _write_last


def _converter(tmp_path: Path, runner) -> LatticeConverter:
    return LatticeConverter(
        runner=runner,
        word_boundary=tmp_path / "word_boundary.int",
        model=tmp_path / "final.mdl",
        symbols=SYMBOLS,
        segments=SEGMENTS,
        inv_acoustic_scale=11.0,
        log_dir=tmp_path / "log",
    )


def test_one_best_runs_explicit_steps_and_writes_sorted_shard(tmp_path: Path, recording_runner) -> None:
    lat_dir = tmp_path / "rescore" / "MS"
    lat_dir.mkdir(parents=True)
    (lat_dir / "lat.2.gz").write_bytes(b"")
    _fake_kaldi(
        recording_runner,
        "testseg0000000000 1 0.10 0.20 2 0.80\ntestseg0000000001 1 0.00 0.30 1 0.95\n",
    )

    shard = _converter(tmp_path, recording_runner).one_best(lat_dir, 2, "MS")

    assert shard == lat_dir / "1Best.2.ctm"
    assert recording_runner.names() == ["lattice-push", "lattice-align-words", "lattice-to-ctm-conf"]
    push = recording_runner.calls[0]
    assert push.argv[1] == f"ark:gunzip -c {lat_dir / 'lat.2.gz'}|"
    assert "--inv-acoustic-scale=11" in recording_runner.calls[2].argv
    assert shard.read_text().splitlines() == [
        "rec1 1 2.000 0.300 hallo 0.95",
        "rec1 1 12.100 0.200 wereld 0.8",
    ]
    assert not (lat_dir / "1Best.2.int.ctm").exists()


def test_n_best_uses_acoustic_scale(tmp_path: Path, recording_runner) -> None:
    lat_dir = tmp_path / "MS"
    lat_dir.mkdir()
    (lat_dir / "lat.1.gz").write_bytes(b"")
    _fake_kaldi(recording_runner, "testseg0000000000-1 1 0.00 0.10 1\n")

    shard = _converter(tmp_path, recording_runner).n_best(lat_dir, 1, "MS", 5)

    nbest = recording_runner.calls_to("lattice-to-nbest")[0]
    assert "--n=5" in nbest.argv
    assert "--acoustic-scale=0.0909091" in nbest.argv
    assert shard.read_text() == "rec1-1 1 12.000 0.100 hallo\n"


def test_missing_lattice_is_reported(tmp_path: Path, recording_runner) -> None:
    with pytest.raises(MissingFileError):
        _converter(tmp_path, recording_runner).one_best(tmp_path, 1, "MS")


def test_merge_shards_and_partitions_keep_order(tmp_path: Path, write_file) -> None:
    shards = [write_file(tmp_path / f"1Best.{j}.ctm", f"rec{j} 1 0.000 0.100 w{j}\n") for j in (1, 2)]
    merged = merge_shards(shards, tmp_path / "MS" / "1Best.ctm")
    assert merged.read_text() == "rec1 1 0.000 0.100 w1\nrec2 1 0.000 0.100 w2\n"

    with pytest.raises(MissingFileError):
        merge_shards([tmp_path / "1Best.9.ctm"], tmp_path / "x.ctm")

    write_file(tmp_path / "FT" / "1Best.ctm", "ft\n")
    write_file(tmp_path / "MT" / "1Best.ctm", "mt\n")
    partitions = [tmp_path / t / "1Best.ctm" for t in ("MS", "FS", "MT", "FT")]
    assert merge_partitions(partitions, tmp_path / "raw.ctm") == 3
    assert (tmp_path / "raw.ctm").read_text().splitlines()[-2:] == ["mt", "ft"]


def test_postprocessor_orders_and_filters(tmp_path: Path, recording_runner, write_file) -> None:
    raw = write_file(
        tmp_path / "raw.ctm",
        "rec2 1 0.000 0.100 b 0.9\nrec1 1 10.000 0.100 c 0.9\nrec1 1 9.000 0.100 a 0.9\n"
        "rec1 1 9.000 0.100 a 0.8\n",
    )
    glm = write_file(tmp_path / "en.glm", "")
    processor = TranscriptPostprocessor(recording_runner, NormalizationTables(), glm)

    count = processor.process(raw, tmp_path / "1Best.ctm")

    assert count == 3
    lines = (tmp_path / "1Best.ctm").read_text().splitlines()
    assert [line.split()[4] for line in lines] == ["a", "c", "b"]
    csrfilt = recording_runner.calls_to("csrfilt.sh")[0]
    assert csrfilt.argv[1:] == ["-s", "-i", "ctm", "-t", "hyp", str(glm)]
    assert csrfilt.capture is True


def test_postprocessor_without_glm_skips_filter(tmp_path: Path, recording_runner, write_file) -> None:
    raw = write_file(tmp_path / "raw.ctm", "rec1 1 0.000 0.100 a\n")
    processor = TranscriptPostprocessor(recording_runner, NormalizationTables(), None)

    processor.process(raw, tmp_path / "out.ctm")

    assert recording_runner.calls == []
    assert read_ctm(tmp_path / "out.ctm") == [CtmEntry("rec1", "1", 0.0, 0.1, "a")]
