"""Stage 3: fMLLR and fMMI decoding followed by language model rescoring."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np

from ..fanout import check_shard_partition
from ..files import replace_dir
from ..logging_utils import StageGuard, format_duration
from ..tables import read_segments
from .base import PipelineState

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline

__all__ = ["run", "speech_duration"]


def speech_duration(segments_path: Path) -> float:
    """Total seconds covered by the rows of a ``segments`` table."""

    segments = read_segments(segments_path)
    if not segments:
        return 0.0
    starts = np.fromiter((seg.start for seg in segments), dtype=np.float64, count=len(segments))
    ends = np.fromiter((seg.end for seg in segments), dtype=np.float64, count=len(segments))
    return float(np.sum(ends - starts))


def _fmllr_opts(pipeline: "DecodePipeline") -> list[object]:
    cfg = pipeline.cfg
    return [
        "--cmd", cfg.kaldi_cmd,
        "--nj", cfg.nj,
        "--skip-scoring", "true",
        "--num-threads", cfg.num_threads,
        "--first-beam", cfg.first_beam,
        "--first-max-active", cfg.first_max_active,
        "--silence-weight", cfg.silence_weight,
        "--acwt", cfg.acwt,
        "--max-active", cfg.max_active,
        "--beam", cfg.beam,
        "--lattice-beam", cfg.lattice_beam,
    ]


def _fmmi_opts(pipeline: "DecodePipeline") -> list[object]:
    cfg = pipeline.cfg
    return [
        "--cmd", cfg.kaldi_cmd,
        "--nj", cfg.nj,
        "--skip-scoring", "true",
        "--num-threads", cfg.num_threads,
        "--acwt", cfg.acwt,
        "--maxactive", cfg.fmmi_max_active,
        "--beam", cfg.beam,
        "--lattice-beam", cfg.lattice_beam,
    ]


def decode_partition(pipeline: "DecodePipeline", state: PipelineState, speech_type: str) -> None:
    cfg = pipeline.cfg
    layout = state.layout
    data_dir = layout.partition(speech_type)
    models = cfg.models_root / cfg.bandwidth_for(speech_type)
    lm_root = cfg.models_root / "LM"
    log_dir = layout.log_dir

    # The Kaldi scripts write next to the graph; results are moved into the run.
    fmllr_models = models / "fmllr"
    fmllr_scratch = fmllr_models / f"decode_{speech_type}"
    pipeline.runner.check(
        pipeline.script("steps/decode_fmllr.sh"),
        [*_fmllr_opts(pipeline), fmllr_models / cfg.graph, data_dir, fmllr_scratch],
        log_path=log_dir / f"decode_fmllr.{speech_type}.log",
    )
    replace_dir(fmllr_scratch, layout.fmllr / speech_type)
    replace_dir(fmllr_scratch.with_name(fmllr_scratch.name + ".si"), layout.fmllr_si / speech_type)

    fmmi_models = models / "fmmi"
    fmmi_scratch = fmmi_models / f"decode_{speech_type}"
    pipeline.runner.check(
        pipeline.script("steps/decode_fmmi.sh"),
        [
            *_fmmi_opts(pipeline),
            "--transform-dir", layout.fmllr / speech_type,
            fmmi_models / cfg.graph,
            data_dir,
            fmmi_scratch,
        ],
        log_path=log_dir / f"decode_fmmi.{speech_type}.log",
    )
    replace_dir(fmmi_scratch, layout.fmmi / speech_type)

    pipeline.runner.check(
        pipeline.script("steps/lmrescore_const_arpa.sh"),
        [
            "--skip-scoring", "true",
            lm_root / cfg.small_lm,
            lm_root / cfg.large_lm,
            data_dir,
            layout.fmmi / speech_type,
            layout.rescore / speech_type,
        ],
        log_path=log_dir / f"lmrescore.{speech_type}.log",
    )

    if cfg.rnn:
        pipeline.runner.check(
            pipeline.script("steps/rnnlmrescore.sh"),
            [
                "--cmd", cfg.kaldi_cmd,
                "--skip-scoring", "true",
                "--rnnlm-ver", "faster-rnnlm/faster-rnnlm",
                "--N", cfg.rnn_nbest,
                "--inv-acwt", f"{cfg.inv_acoustic_scale:g}",
                cfg.rnn_weight,
                lm_root / cfg.large_lm,
                cfg.resolve(cfg.rnn_model),
                data_dir,
                layout.rescore / speech_type,
                layout.rnnrescore / speech_type,
            ],
            log_path=log_dir / f"rnnlmrescore.{speech_type}.log",
        )

    split_dir = data_dir / f"split{cfg.nj}"
    if split_dir.is_dir():
        covered = check_shard_partition(data_dir, cfg.nj)
        pipeline.corelog.debug("[decode] %s: %d utterances over %d shards", speech_type, covered, cfg.nj)


def run(pipeline: "DecodePipeline", state: PipelineState, guard: StageGuard) -> None:
    layout = state.layout
    for speech_type in pipeline.cfg.speech_types:
        segments = layout.partition(speech_type) / "segments"
        if not segments.exists():
            pipeline.corelog.info("[decode] %s: no data, skipped", speech_type)
            continue
        seconds = speech_duration(segments)
        state.speech_seconds[speech_type] = seconds
        pipeline.corelog.info("Duration of %s speech: %s", speech_type, format_duration(seconds))
        pipeline.corelog.event("decode", "partition", speech_type=speech_type, speech_seconds=seconds)

        decode_partition(pipeline, state, speech_type)
        state.decoded_types.append(speech_type)

    guard.done(partitions=len(state.decoded_types))
