"""Stage 4: lattices to CTM, merged and normalized into the final transcript."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from ..config import SPEECH_TYPES
from ..fanout import read_num_jobs
from ..logging_utils import StageGuard
from ..normalization import NormalizationTables
from ..tables import read_segments, read_word_symbols
from ..transcripts import LatticeConverter, TranscriptPostprocessor, merge_partitions, merge_shards
from .base import PipelineState

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline

__all__ = ["run"]


def _optional(pipeline: "DecodePipeline", path: Path | None, what: str) -> Path | None:
    if path is None:
        return None
    resolved = pipeline.cfg.resolve(path)
    if not resolved.exists():
        pipeline.corelog.warn("[transcripts] %s %s not found, step skipped", what, resolved)
        return None
    return resolved


def _postprocessor(pipeline: "DecodePipeline") -> TranscriptPostprocessor:
    cfg = pipeline.cfg
    tables = NormalizationTables.load(
        _optional(pipeline, cfg.number_words, "number table"),
        _optional(pipeline, cfg.compound_words, "compound table"),
    )
    glm = _optional(pipeline, cfg.glm_file, "GLM file")
    return TranscriptPostprocessor(pipeline.runner, tables, glm)


def run(pipeline: "DecodePipeline", state: PipelineState, guard: StageGuard) -> None:
    cfg = pipeline.cfg
    layout = state.layout
    lm_dir = cfg.models_root / "LM" / cfg.large_lm
    lattice_root = layout.rnnrescore if cfg.rnn else layout.rescore

    symbols = read_word_symbols(lm_dir / "words.txt")
    segments = {seg.utterance: seg for seg in read_segments(layout.table("segments"))}

    converted = 0
    for speech_type in cfg.speech_types:
        if not (layout.rescore / speech_type / "num_jobs").exists():
            pipeline.corelog.info("[transcripts] %s: no decode output, skipped", speech_type)
            continue
        num_jobs = read_num_jobs(layout.rescore / speech_type)
        lat_dir = lattice_root / speech_type
        converter = LatticeConverter(
            runner=pipeline.job_runner,
            word_boundary=lm_dir / "phones" / "word_boundary.int",
            model=cfg.models_root / cfg.bandwidth_for(speech_type) / "fmmi" / "final.mdl",
            symbols=symbols,
            segments=segments,
            inv_acoustic_scale=cfg.inv_acoustic_scale,
            log_dir=layout.log_dir,
        )
        partition = layout.partition(speech_type)

        shards = pipeline.fanout.run(
            num_jobs, lambda job: converter.one_best(lat_dir, job, speech_type), name=f"lat2ctm.{speech_type}"
        )
        merge_shards(shards, partition / "1Best.ctm")

        if cfg.nbest > 0:
            shards = pipeline.fanout.run(
                num_jobs,
                lambda job: converter.n_best(lat_dir, job, speech_type, cfg.nbest),
                name=f"lat2nbest.{speech_type}",
            )
            merge_shards(shards, partition / "NBest.ctm")
        converted += 1
        pipeline.corelog.info("[transcripts] %s: %d jobs converted", speech_type, num_jobs)

    if cfg.nbest == 0:
        for stale in (layout.table("NBest.raw.ctm"), layout.table("NBest.ctm"), layout.target / "NBest.ctm"):
            stale.unlink(missing_ok=True)

    postprocessor = _postprocessor(pipeline)
    kinds = ["1Best"] + (["NBest"] if cfg.nbest > 0 else [])
    words = 0
    for kind in kinds:
        raw = layout.table(f"{kind}.raw.ctm")
        merged = merge_partitions([layout.partition(t) / f"{kind}.ctm" for t in SPEECH_TYPES], raw)
        pipeline.corelog.debug("[transcripts] %s: %d partitions merged", kind, merged)
        final = layout.table(f"{kind}.ctm")
        count = postprocessor.process(raw, final)
        shutil.copyfile(final, layout.target / f"{kind}.ctm")
        state.outputs[kind] = str(layout.target / f"{kind}.ctm")
        if kind == "1Best":
            words = count

    guard.done(partitions=converted, words=words)
