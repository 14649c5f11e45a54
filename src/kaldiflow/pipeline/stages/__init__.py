"""Stage registry for the kaldiflow decode pipeline."""

from __future__ import annotations

from . import data_prep, decode, features, scoring, transcripts
from .base import PipelineState, StageDefinition

PIPELINE_STAGES: list[StageDefinition] = [
    StageDefinition("data_prep", data_prep.run),
    StageDefinition("features", features.run),
    StageDefinition("decode", decode.run),
    StageDefinition("transcripts", transcripts.run),
    StageDefinition("scoring", scoring.run),
]


def stage_number(name: str) -> int:
    """1-based position of ``name`` in the registry."""

    for index, stage in enumerate(PIPELINE_STAGES, start=1):
        if stage.name == name:
            return index
    raise KeyError(name)


__all__ = ["PIPELINE_STAGES", "PipelineState", "StageDefinition", "stage_number"]
