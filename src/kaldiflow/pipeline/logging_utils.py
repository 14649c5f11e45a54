"""Shared logging utilities for the decode pipeline."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from .errors import ExternalToolError, MissingFileError, ShardIntegrityError


def format_duration(seconds: float) -> str:
    seconds = max(0, float(seconds))
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}" if hours else f"{minutes:02d}:{secs:02d}"


def format_duration_ms(ms: float) -> str:
    total_ms = int(round(max(0.0, float(ms))))
    seconds, ms = divmod(total_ms, 1000)
    minutes, seconds = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}.{ms:03d}" if hours else f"{minutes:02d}:{seconds:02d}.{ms:03d}"


class JSONLWriter:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text("", encoding="utf-8")

    def emit(self, record: dict[str, Any]) -> None:
        try:
            with self.path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logging.getLogger(__name__).warning("Could not write to log file %s: %s", self.path, exc)


@dataclass
class RunStats:
    run_id: str
    target_dir: str
    schema_version: str = "1.0.0"
    stage_timings_ms: dict[str, float] = field(default_factory=dict)
    stage_counts: dict[str, dict[str, int]] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    failures: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    config_snapshot: dict[str, Any] = field(default_factory=dict)

    def mark(self, stage: str, elapsed_ms: float, counts: dict[str, int] | None = None) -> None:
        self.stage_timings_ms[stage] = self.stage_timings_ms.get(stage, 0.0) + float(elapsed_ms)
        if counts:
            slot = self.stage_counts.setdefault(stage, {})
            for key, value in counts.items():
                slot[key] = slot.get(key, 0) + int(value)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class CoreLogger:
    """Structured logger that enriches messages with run context."""

    def __init__(self, run_id: str, jsonl_path: Path, console_level: int = logging.INFO):
        self.run_id = run_id
        self.jsonl = JSONLWriter(jsonl_path)
        self.log = logging.getLogger(f"kaldiflow.run.{run_id}")
        self.log.setLevel(console_level)
        if not self.log.handlers:
            handler = logging.StreamHandler()
            handler.setLevel(console_level)
            formatter = logging.Formatter(
                "[%(asctime)s] [%(levelname)s] [run:%(run_id)s] %(message)s", datefmt="%H:%M:%S"
            )
            handler.setFormatter(formatter)
            self.log.addHandler(handler)
        self._adapter = logging.LoggerAdapter(self.log, extra={"run_id": run_id})

    def event(self, stage: str, event: str, **fields: Any) -> None:
        record = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime()),
            "run_id": self.run_id,
            "stage": stage,
            "event": event,
        }
        record.update(fields)
        self.jsonl.emit(record)

    def bind(self, **extra: Any) -> logging.LoggerAdapter:
        context = dict(self._adapter.extra)
        context.update(extra)
        return logging.LoggerAdapter(self._adapter.logger, context)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._adapter.debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._adapter.info(msg, *args, **kwargs)

    def warn(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._adapter.warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._adapter.error(msg, *args, **kwargs)


def _suggest_fix(stage: str, err: BaseException) -> str:
    text = str(err).lower()
    if isinstance(err, MissingFileError):
        return f"Inspect the log of {err.producer}; the tool ran but wrote no output."
    if isinstance(err, ShardIntegrityError):
        return "Remove the split directories of the speech type and rerun from stage 3."
    if stage == "data_prep":
        if isinstance(err, ExternalToolError) and err.argv and err.argv[0] == "java":
            return "Check that java is installed and lium_jar points at the LIUM jar."
        if "soundfile" in text or "libsndfile" in text:
            return "Install libsndfile and make sure the source audio is readable WAV."
        return "Check the source directory contents (.wav, .uem, .stm) and rerun from stage 1."
    if stage == "features":
        return "Check conf/mfcc.conf and the steps/ and utils/ links in the recipe directory."
    if stage == "decode":
        return "Verify the model directories and graph name; rerun from stage 3 once fixed."
    if stage == "transcripts":
        if "words.txt" in text or "word_boundary" in text:
            return "The large LM directory must contain words.txt and phones/word_boundary.int."
        return "Make sure the Kaldi lattice binaries are on PATH; rerun from stage 4."
    if stage == "scoring":
        return "Install SCTK (asclite, sclite) and check ref.stm; rerun from stage 5."
    return "Check logs for details; ensure tools are on PATH and the target directory is writable."


class StageGuard:
    """Time a stage, emit structured events and record failures.

    Every stage is fatal: the guard records the failure and lets the
    exception propagate so the run aborts.
    """

    def __init__(self, corelog: CoreLogger, stats: RunStats, stage: str):
        self.corelog = corelog
        self.stats = stats
        self.stage = stage
        self.start: float | None = None
        self._logger = corelog.bind(stage=stage)

    def __enter__(self) -> "StageGuard":
        self.start = time.time()
        self.corelog.event(self.stage, "start")
        self._logger.info("[%s] start", self.stage)
        return self

    def done(self, **counts: int) -> None:
        if counts:
            self.stats.mark(self.stage, 0.0, counts)

    def skip(self, reason: str) -> None:
        self.stats.skipped.append(f"{self.stage}: {reason}")
        self.corelog.event(self.stage, "skip", reason=reason)
        self._logger.info("[%s] skipped: %s", self.stage, reason)

    def __exit__(self, exc_type, exc, tb) -> bool:
        elapsed_ms = (time.time() - self.start) * 1000.0 if self.start else 0.0
        if exc:
            if isinstance(exc, KeyboardInterrupt):
                self.corelog.error("[interrupt] KeyboardInterrupt received; aborting")
                return False
            trace_hash = hashlib.blake2b(
                f"{self.stage}:{type(exc).__name__}".encode(), digest_size=8
            ).hexdigest()
            self.corelog.event(
                self.stage,
                "error",
                elapsed_ms=elapsed_ms,
                error=f"{type(exc).__name__}: {exc}",
                trace_hash=trace_hash,
            )
            self._logger.error(
                "[%s] %s: %s (%s)",
                self.stage,
                type(exc).__name__,
                exc,
                format_duration_ms(elapsed_ms),
            )
            self.stats.mark(self.stage, elapsed_ms)
            message = f"{self.stage}: {type(exc).__name__}: {exc}"
            self.stats.errors.append(message)
            self.stats.failures.append(
                {
                    "stage": self.stage,
                    "error": f"{type(exc).__name__}: {exc}",
                    "elapsed_ms": elapsed_ms,
                    "suggestion": _suggest_fix(self.stage, exc),
                }
            )
            return False
        self.corelog.event(self.stage, "stop", elapsed_ms=elapsed_ms)
        self._logger.info("[%s] ok in %s", self.stage, format_duration_ms(elapsed_ms))
        self.stats.mark(self.stage, elapsed_ms)
        return False


__all__ = [
    "CoreLogger",
    "JSONLWriter",
    "RunStats",
    "StageGuard",
    "format_duration",
    "format_duration_ms",
]
