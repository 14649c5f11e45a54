"""Stage 5: score ``1Best.ctm`` when a reference transcript exists."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..logging_utils import StageGuard
from ..scoring import Scorer
from .base import PipelineState

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline

__all__ = ["run"]


def run(pipeline: "DecodePipeline", state: PipelineState, guard: StageGuard) -> None:
    layout = state.layout
    report = Scorer(pipeline.runner, layout.log_dir).score(
        layout.table("ref.stm"), layout.target / "1Best.ctm", layout.table("test.uem")
    )
    if report is None:
        guard.skip("no reference transcript")
        return
    state.outputs["sgml"] = str(report.sgml)
    guard.done(scored=1)
