"""Lattice to CTM conversion, shard merging and transcript postprocessing."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from .commands import CommandRunner
from .ctm import CtmEntry, format_ctm, read_ctm, sort_ctm, write_ctm
from .errors import MissingFileError
from .normalization import NormalizationTables
from .files import concatenate
from .tables import Segment

logger = logging.getLogger(__name__)

_NBEST_SUFFIX = re.compile(r"^(?P<utt>.+)-(?P<rank>\d+)$")


def map_word_ids(entries: Iterable[CtmEntry], symbols: dict[str, str]) -> list[CtmEntry]:
    """Replace integer word ids by their symbols (``int2sym.pl -f 5``)."""

    mapped = []
    for entry in entries:
        try:
            mapped.append(entry.with_word(symbols[entry.word]))
        except KeyError:
            raise ValueError(f"word id {entry.word} of {entry.utterance} is not in the symbol table") from None
    return mapped


def correct_times(entries: Iterable[CtmEntry], segments: dict[str, Segment]) -> list[CtmEntry]:
    """Make times absolute and key entries by recording instead of utterance.

    N-best utterance ids carry a ``-<rank>`` suffix which is kept on the
    recording id so the hypotheses stay apart.
    """

    corrected = []
    for entry in entries:
        seg = segments.get(entry.utterance)
        suffix = ""
        if seg is None:
            match = _NBEST_SUFFIX.match(entry.utterance)
            if match is not None:
                seg = segments.get(match.group("utt"))
                suffix = "-" + match.group("rank")
        if seg is None:
            raise ValueError(f"CTM utterance {entry.utterance} is not in the segments table")
        corrected.append(
            CtmEntry(
                seg.recording + suffix,
                entry.channel,
                round(seg.start + entry.start, 3),
                entry.duration,
                entry.word,
                entry.confidence,
            )
        )
    return corrected


@dataclass
class LatticeConverter:
    """Turn one job's lattices into a CTM shard with explicit tool calls."""

    runner: CommandRunner
    word_boundary: Path
    model: Path
    symbols: dict[str, str]
    segments: dict[str, Segment]
    inv_acoustic_scale: float
    log_dir: Path

    @property
    def acoustic_scale(self) -> float:
        return 1.0 / self.inv_acoustic_scale

    def _lattice(self, lat_dir: Path, job: int) -> str:
        lattice = lat_dir / f"lat.{job}.gz"
        if not lattice.exists():
            raise MissingFileError(lattice, "lattice rescoring")
        return f"ark:gunzip -c {lattice}|"

    def _finish(self, int_ctm: Path, target: Path) -> int:
        if not int_ctm.exists():
            raise MissingFileError(int_ctm, "lattice to CTM conversion")
        entries = correct_times(map_word_ids(read_ctm(int_ctm), self.symbols), self.segments)
        count = write_ctm(target, sort_ctm(entries, dedupe=False))
        int_ctm.unlink()
        return count

    def one_best(self, lat_dir: Path, job: int, tag: str) -> Path:
        """1-best CTM with word confidences for job ``job``."""

        pushed = lat_dir / f"push.{job}.lats"
        aligned = lat_dir / f"align.{job}.lats"
        int_ctm = lat_dir / f"1Best.{job}.int.ctm"
        target = lat_dir / f"1Best.{job}.ctm"
        try:
            self.runner.check(
                "lattice-push",
                [self._lattice(lat_dir, job), f"ark:{pushed}"],
                log_path=self.log_dir / f"lat2ctm.{tag}.{job}.push.log",
            )
            self.runner.check(
                "lattice-align-words",
                [self.word_boundary, self.model, f"ark:{pushed}", f"ark:{aligned}"],
                log_path=self.log_dir / f"lat2ctm.{tag}.{job}.align.log",
            )
            self.runner.check(
                "lattice-to-ctm-conf",
                [f"--inv-acoustic-scale={self.inv_acoustic_scale:g}", f"ark:{aligned}", int_ctm],
                log_path=self.log_dir / f"lat2ctm.{tag}.{job}.log",
            )
            count = self._finish(int_ctm, target)
        finally:
            pushed.unlink(missing_ok=True)
            aligned.unlink(missing_ok=True)
        logger.debug("%s job %d: %d words", tag, job, count)
        return target

    def n_best(self, lat_dir: Path, job: int, tag: str, n: int) -> Path:
        """N-best CTM without confidences for job ``job``."""

        nbest = lat_dir / f"nbest.{job}.lats"
        int_ctm = lat_dir / f"NBest.{job}.int.ctm"
        target = lat_dir / f"NBest.{job}.ctm"
        try:
            self.runner.check(
                "lattice-to-nbest",
                [f"--acoustic-scale={self.acoustic_scale:g}", f"--n={n}", self._lattice(lat_dir, job), f"ark:{nbest}"],
                log_path=self.log_dir / f"lat2nbest.{tag}.{job}.log",
            )
            self.runner.check(
                "nbest-to-ctm",
                [f"ark:{nbest}", int_ctm],
                log_path=self.log_dir / f"nbest2ctm.{tag}.{job}.log",
            )
            self._finish(int_ctm, target)
        finally:
            nbest.unlink(missing_ok=True)
        return target


def merge_shards(shards: Sequence[Path], target: Path) -> Path:
    """Concatenate shard CTMs in job-index order."""

    for shard in shards:
        if not shard.exists():
            raise MissingFileError(shard, "lattice to CTM conversion")
    concatenate(shards, target)
    return target


def merge_partitions(partitions: Sequence[Path], target: Path) -> int:
    """Append the partition transcripts that exist, in the given order."""

    target.unlink(missing_ok=True)
    return concatenate(partitions, target)


class TranscriptPostprocessor:
    """Sort, combine numbers, sort, restore compounds and apply the GLM filter."""

    def __init__(self, runner: CommandRunner, tables: NormalizationTables, glm: Path | None):
        self.runner = runner
        self.tables = tables
        self.glm = glm

    def normalize(self, entries: Sequence[CtmEntry]) -> list[CtmEntry]:
        ordered = sort_ctm(entries)
        combined = self.tables.combine_numbers(ordered)
        return self.tables.restore_compounds(sort_ctm(combined))

    def glm_filter(self, text: str) -> str:
        if self.glm is None:
            return text
        result = self.runner.check(
            "csrfilt.sh", ["-s", "-i", "ctm", "-t", "hyp", self.glm], stdin=text, capture=True
        )
        return result.stdout

    def process(self, raw: Path, target: Path) -> int:
        entries = self.normalize(read_ctm(raw))
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.glm_filter(format_ctm(entries)), encoding="utf-8")
        return len(entries)


__all__ = [
    "LatticeConverter",
    "TranscriptPostprocessor",
    "correct_times",
    "map_word_ids",
    "merge_partitions",
    "merge_shards",
]
