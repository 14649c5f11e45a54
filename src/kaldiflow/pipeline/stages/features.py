"""Stage 2: MFCC and CMVN features, then one data directory per speech type."""

from __future__ import annotations

import shutil
from typing import TYPE_CHECKING

from ..logging_utils import StageGuard
from ..tables import read_bwgender, speakers_of_type, write_lines
from .base import PipelineState

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline

__all__ = ["run"]


def run(pipeline: "DecodePipeline", state: PipelineState, guard: StageGuard) -> None:
    cfg = pipeline.cfg
    layout = state.layout
    all_dir = layout.all_dir
    feature_log = all_dir / "log"

    mfcc_conf = layout.intermediate / "mfcc.conf"
    shutil.copyfile(cfg.resolve(cfg.mfcc_config), mfcc_conf)

    pipeline.runner.check(
        pipeline.script("steps/make_mfcc.sh"),
        ["--cmd", cfg.kaldi_cmd, "--nj", cfg.nj, "--mfcc-config", mfcc_conf, all_dir, feature_log, layout.mfcc],
        log_path=layout.log_dir / "make_mfcc.log",
    )
    pipeline.runner.check(
        pipeline.script("steps/compute_cmvn_stats.sh"),
        [all_dir, feature_log, layout.mfcc],
        log_path=layout.log_dir / "compute_cmvn_stats.log",
    )

    rows = read_bwgender(layout.bwgender)
    subsets = 0
    for speech_type in cfg.speech_types:
        speakers = speakers_of_type(rows, speech_type)
        if not speakers:
            pipeline.corelog.info("[features] no %s speakers, partition skipped", speech_type)
            continue
        spk_list = layout.spk_list(speech_type)
        write_lines(spk_list, speakers)
        pipeline.runner.check(
            pipeline.script("utils/subset_data_dir.sh"),
            ["--spk-list", spk_list, all_dir, layout.partition(speech_type)],
            log_path=layout.log_dir / f"subset_data_dir.{speech_type}.log",
        )
        pipeline.corelog.info("[features] %s: %d speakers", speech_type, len(speakers))
        subsets += 1
    guard.done(partitions=subsets)
