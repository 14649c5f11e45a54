"""Driver for the five-stage kaldiflow decode pipeline."""

from __future__ import annotations

import logging
import shlex
import time
import uuid
from pathlib import Path
from typing import Any, Mapping

from .commands import CommandRunner, SubprocessRunner, WrappedRunner
from .config import LOCAL_CMD, DecodeConfig, build_decode_config
from .config import diagnostics as config_diagnostics
from .config import verify_dependencies as config_verify_dependencies
from .fanout import JobFanout
from .layout import RunLayout
from .logging_utils import CoreLogger, RunStats, StageGuard, format_duration_ms
from .stages import PIPELINE_STAGES, PipelineState
from .stages.utils import atomic_write_json, read_json_safe

SCHEMA_VERSION = "1.0.0"

__all__ = [
    "DecodePipeline",
    "build_decode_config",
    "diagnostics",
    "resume",
    "resume_stage",
    "run_decode",
    "verify_dependencies",
]


def verify_dependencies(strict: bool = False) -> tuple[bool, list[str]]:
    """Expose lightweight dependency verification for external callers."""

    return config_verify_dependencies(strict)


def resume_stage(target_dir: Path | str) -> int:
    """First stage to run for ``target_dir`` according to its progress file.

    A directory without progress starts at stage 1; a finished run yields a
    stage past the end of the registry.
    """

    progress = read_json_safe(RunLayout(Path(target_dir)).progress)
    if not progress:
        return 1
    try:
        last = int(progress.get("last_completed_stage", 0))
    except (TypeError, ValueError):
        return 1
    return min(max(last, 0), len(PIPELINE_STAGES)) + 1


def run_decode(
    source_dir: str | Path,
    target_dir: str | Path,
    *,
    config: Mapping[str, Any] | DecodeConfig | None = None,
    runner: CommandRunner | None = None,
) -> dict[str, Any]:
    """Decode every recording in ``source_dir`` into ``target_dir``."""

    pipe = DecodePipeline(config, runner=runner)
    return pipe.process(source_dir, target_dir)


def resume(
    source_dir: str | Path,
    target_dir: str | Path,
    *,
    config: Mapping[str, Any] | DecodeConfig | None = None,
    runner: CommandRunner | None = None,
) -> dict[str, Any]:
    """Continue a previous run after its last completed stage.

    A ``stage`` key in a mapping ``config`` takes precedence over the progress
    file.
    """

    explicit = None
    if isinstance(config, Mapping) and config.get("stage") is not None:
        explicit = int(config["stage"])

    pipe = DecodePipeline(config, runner=runner)
    start = explicit if explicit is not None else resume_stage(target_dir)
    return pipe.process(source_dir, target_dir, start_stage=start)


def diagnostics(require_versions: bool = False, config: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Return diagnostic information about Python packages and external tools."""

    return config_diagnostics(require_versions=require_versions, config=build_decode_config(config))


class DecodePipeline:
    def __init__(
        self,
        config: Mapping[str, Any] | DecodeConfig | None = None,
        *,
        runner: CommandRunner | None = None,
    ):
        self.cfg = build_decode_config(config)
        self.run_id = self.cfg.run_id or (time.strftime("%Y%m%d-%H%M%S") + "-" + uuid.uuid4().hex[:6])
        self.quiet = self.cfg.quiet

        self.runner: CommandRunner = runner or SubprocessRunner(
            env=self.cfg.subprocess_env(), cwd=self.cfg.recipe_dir
        )
        self.job_runner = self._build_job_runner(self.runner)
        self.fanout = JobFanout(self.cfg.jobs_limit)

        self.corelog: CoreLogger | None = None
        self.stats: RunStats | None = None

    def _build_job_runner(self, runner: CommandRunner) -> CommandRunner:
        if self.cfg.cmd == LOCAL_CMD:
            return runner
        wrapper = shlex.split(self.cfg.cmd)
        # run.pl and friends usually live in the recipe's utils/ directory
        bundled = self.cfg.resolve(Path("utils") / wrapper[0])
        if "/" not in wrapper[0] and bundled.exists():
            wrapper[0] = str(bundled)
        return WrappedRunner(runner, shlex.join(wrapper))

    def script(self, name: str) -> Path:
        """Recipe script ``name`` (e.g. ``steps/make_mfcc.sh``) as an absolute path."""

        return self.cfg.resolve(Path(name)).absolute()

    def _save_progress(self, layout: RunLayout, index: int, name: str) -> None:
        assert self.stats is not None
        atomic_write_json(
            layout.progress,
            {
                "run_id": self.run_id,
                "last_completed_stage": index,
                "last_completed_name": name,
                "updated": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
                "stage_timings_ms": dict(self.stats.stage_timings_ms),
            },
        )

    def process(
        self,
        source_dir: str | Path,
        target_dir: str | Path,
        *,
        start_stage: int | None = None,
    ) -> dict[str, Any]:
        layout = RunLayout(Path(target_dir).expanduser().resolve())
        layout.ensure()
        self.corelog = CoreLogger(
            self.run_id,
            layout.events,
            console_level=(logging.WARNING if self.quiet else logging.INFO),
        )
        self.stats = RunStats(run_id=self.run_id, target_dir=str(layout.target), schema_version=SCHEMA_VERSION)
        self.stats.config_snapshot = self.cfg.model_dump(mode="json")

        first = self.cfg.stage if start_stage is None else start_stage
        state = PipelineState(source_dir=Path(source_dir).expanduser().resolve(), layout=layout)
        self.corelog.info("Decoding %s into %s from stage %d", state.source_dir, layout.target, first)
        if first > len(PIPELINE_STAGES):
            self.corelog.info("All stages already completed; nothing to do")

        status = "failed"
        completed: list[str] = []
        t0 = time.time()
        try:
            for index, stage in enumerate(PIPELINE_STAGES, start=1):
                if index < first:
                    continue
                with StageGuard(self.corelog, self.stats, stage.name) as guard:
                    stage.runner(self, state, guard)
                completed.append(stage.name)
                self._save_progress(layout, index, stage.name)
            status = "completed"
        finally:
            elapsed_ms = (time.time() - t0) * 1000.0
            summary = {
                "run_id": self.run_id,
                "status": status,
                "source_dir": str(state.source_dir),
                "target_dir": str(layout.target),
                "first_stage": first,
                "stages_completed": completed,
                "decoded_types": list(state.decoded_types),
                "speech_seconds": dict(state.speech_seconds),
                "outputs": dict(state.outputs),
                "elapsed_ms": elapsed_ms,
                "stats": self.stats.to_dict(),
            }
            atomic_write_json(layout.run_summary, summary)
            self.corelog.event("run", status, elapsed_ms=elapsed_ms, stages=completed)
            log = self.corelog.info if status == "completed" else self.corelog.error
            log("Run %s %s in %s", self.run_id, status, format_duration_ms(elapsed_ms))
        return summary
