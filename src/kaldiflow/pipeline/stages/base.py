"""Shared types for the decode stage registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from ..layout import RunLayout
from ..logging_utils import StageGuard

if TYPE_CHECKING:
    from ..orchestrator import DecodePipeline


@dataclass
class PipelineState:
    """Per-invocation state; everything durable lives under ``layout``."""

    source_dir: Path
    layout: RunLayout
    recordings: list[Path] = field(default_factory=list)
    decoded_types: list[str] = field(default_factory=list)
    speech_seconds: dict[str, float] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)


StageRunner = Callable[["DecodePipeline", PipelineState, StageGuard], None]


@dataclass(frozen=True)
class StageDefinition:
    name: str
    runner: StageRunner


__all__ = ["PipelineState", "StageDefinition", "StageRunner"]
