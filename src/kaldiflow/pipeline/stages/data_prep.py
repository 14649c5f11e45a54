"""Stage 1: copy sources, diarize and build the Kaldi data directory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import PipelineError
from ..files import concatenate, copy_tree_contents
from ..logging_utils import StageGuard
from ..naming import canonicalize_data_dir
from ..segmenter import DiarizationSegmenter, LiumDiarizer, write_tables
from ..tables import read_stm, read_uem, sort_stm_lines, write_lines
from .base import PipelineState

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline

__all__ = ["run"]


def _build_uem(state: PipelineState) -> None:
    data = state.layout.data
    lines: list[str] = []
    for path in sorted(data.glob("*.uem")):
        lines.extend(line for line in path.read_text(encoding="utf-8").splitlines() if line.strip())
    write_lines(state.layout.table("test.uem"), sorted(lines))


def _build_reference(pipeline: "DecodePipeline", state: PipelineState) -> int:
    layout = state.layout
    test_stm = layout.table("test.stm")
    text = test_stm.read_text(encoding="utf-8") if test_stm.exists() else ""
    if text.strip() and layout.fix_stm.exists():
        text = pipeline.runner.check(
            str(layout.fix_stm), [], stdin=text, capture=True, log_path=layout.log_dir / "fix-stm.log"
        ).stdout
    return write_lines(layout.table("ref.stm"), sort_stm_lines(text.splitlines()))


def run(pipeline: "DecodePipeline", state: PipelineState, guard: StageGuard) -> None:
    cfg = pipeline.cfg
    layout = state.layout

    copied = copy_tree_contents(state.source_dir, layout.data)
    pipeline.corelog.info("[data_prep] copied %d entries from %s", copied, state.source_dir)

    recordings = sorted(p for p in layout.data.rglob("*.wav") if p != layout.scratch_wav)
    if not recordings:
        raise PipelineError(f"no .wav recordings found in {state.source_dir}")
    write_lines(layout.flist, (str(p) for p in recordings))
    state.recordings = recordings

    _build_uem(state)
    concatenate(sorted(layout.data.glob("*.stm")), layout.table("test.stm"))
    windows = read_uem(layout.table("test.uem"))
    references = read_stm(layout.table("test.stm"))

    diarizer = LiumDiarizer(pipeline.runner, cfg.resolve(cfg.lium_jar), cfg.java_heap)
    segmenter = DiarizationSegmenter(diarizer, layout.scratch_wav, layout.liumlog, windows, references)
    result = segmenter.process(recordings)
    write_tables(result, layout.all_dir, layout.bwgender)
    if result.windows_without_speech:
        pipeline.corelog.warn(
            "[data_prep] %d window(s) without speech: %s",
            len(result.windows_without_speech),
            ", ".join(result.windows_without_speech),
        )

    names = canonicalize_data_dir(layout.all_dir)
    ref_lines = _build_reference(pipeline, state)
    if not ref_lines:
        pipeline.corelog.info("[data_prep] no reference transcripts; scoring will be skipped")

    pipeline.runner.check(
        pipeline.script("utils/fix_data_dir.sh"),
        [layout.all_dir],
        log_path=layout.log_dir / "fix_data_dir.log",
    )
    guard.done(
        recordings=len(recordings),
        windows=sum(len(w) for w in windows.values()),
        utterances=len(names),
        speakers=len(result.speakers),
        reference_lines=ref_lines,
    )
