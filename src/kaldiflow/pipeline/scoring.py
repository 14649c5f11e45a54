"""Scoring of the final transcript against a reference with SCTK."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .commands import CommandRunner
from .errors import MissingFileError

logger = logging.getLogger(__name__)


def _non_empty(path: Path | None) -> bool:
    return path is not None and path.exists() and path.stat().st_size > 0


@dataclass
class ScoreReport:
    hypothesis: Path
    sgml: Path
    used_uem: bool


class Scorer:
    """Align with ``asclite`` and produce the sclite reports.

    asclite writes ``<hyp>.sgml`` next to the hypothesis; sclite reads it on
    stdin and writes its reports with the same prefix.
    """

    def __init__(self, runner: CommandRunner, log_dir: Path):
        self.runner = runner
        self.log_dir = log_dir

    def score(self, reference: Path, hypothesis: Path, uem: Path | None = None) -> ScoreReport | None:
        if not _non_empty(reference):
            logger.info("no reference transcript at %s, scoring skipped", reference)
            return None
        if not hypothesis.exists():
            raise MissingFileError(hypothesis, "transcript assembly")

        use_uem = _non_empty(uem)
        args: list[str | Path] = ["-D", "-noisg", "-r", reference, "stm", "-h", hypothesis, "ctm"]
        if use_uem:
            args += ["-uem", uem]  # type: ignore[list-item]
        args += ["-o", "sgml"]
        self.runner.check("asclite", args, cwd=hypothesis.parent, log_path=self.log_dir / "asclite.log")

        sgml = hypothesis.with_name(hypothesis.name + ".sgml")
        if not sgml.exists():
            raise MissingFileError(sgml, "asclite")
        self.runner.check(
            "sclite",
            ["-P", "-o", "sum", "-o", "pralign", "-o", "dtl", "-n", hypothesis],
            cwd=hypothesis.parent,
            stdin=sgml.read_text(encoding="utf-8"),
            log_path=self.log_dir / "sclite.log",
        )
        return ScoreReport(hypothesis, sgml, use_uem)


__all__ = ["ScoreReport", "Scorer"]
