"""Canonical utterance names.

Several Kaldi tools sort tables on two columns independently (recording, then
segment). Renaming every utterance to a fixed-width, monotonically increasing
``testseg%010d`` key makes both orders agree with the order of ``utt2spk``.
The rename table is kept as ``segconv`` so results can be mapped back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .tables import (
    Segment,
    Utterance,
    iter_fields,
    read_segments,
    read_utt2spk,
    write_lines,
    write_segments,
    write_utt2spk,
)

logger = logging.getLogger(__name__)

CANONICAL_PREFIX = "testseg"
CANONICAL_WIDTH = 10


def canonical_name(index: int) -> str:
    if index < 0 or index >= 10**CANONICAL_WIDTH:
        raise ValueError(f"canonical index {index} does not fit in {CANONICAL_WIDTH} digits")
    return f"{CANONICAL_PREFIX}{index:0{CANONICAL_WIDTH}d}"


@dataclass
class NameMap:
    """Bijection between original and canonical utterance identifiers."""

    forward: dict[str, str] = field(default_factory=dict)
    inverse: dict[str, str] = field(default_factory=dict)

    @classmethod
    def build(cls, originals: Iterable[str]) -> "NameMap":
        names = cls()
        for original in originals:
            if original in names.forward:
                raise ValueError(f"utterance {original!r} appears more than once")
            canonical = canonical_name(len(names.forward))
            names.forward[original] = canonical
            names.inverse[canonical] = original
        return names

    @classmethod
    def load(cls, path: Path) -> "NameMap":
        names = cls()
        for lineno, fields in iter_fields(path, 2):
            canonical, original = fields[0], fields[1]
            if canonical in names.inverse or original in names.forward:
                raise ValueError(f"{path}:{lineno}: duplicate entry in rename table")
            names.forward[original] = canonical
            names.inverse[canonical] = original
        return names

    def save(self, path: Path) -> int:
        return write_lines(path, (f"{canonical} {original}" for original, canonical in self.forward.items()))

    def __len__(self) -> int:
        return len(self.forward)

    def to_canonical(self, original: str) -> str:
        try:
            return self.forward[original]
        except KeyError:
            raise KeyError(f"utterance {original!r} has no canonical name") from None

    def to_original(self, canonical: str) -> str:
        return self.inverse.get(canonical, canonical)


def rename_utterances(utterances: list[Utterance], names: NameMap) -> list[Utterance]:
    return [Utterance(names.to_canonical(utt.utterance), utt.speaker) for utt in utterances]


def rename_segments(segments: list[Segment], names: NameMap) -> list[Segment]:
    return [
        Segment(names.to_canonical(seg.utterance), seg.recording, seg.start, seg.end)
        for seg in segments
    ]


def canonicalize_data_dir(data_dir: Path) -> NameMap:
    """Rename utterances in ``utt2spk`` and ``segments`` and write ``segconv``."""

    utt2spk_path = data_dir / "utt2spk"
    segments_path = data_dir / "segments"

    utterances = read_utt2spk(utt2spk_path)
    names = NameMap.build(utt.utterance for utt in utterances)
    segments = read_segments(segments_path)

    renamed_segments = rename_segments(segments, names)
    names.save(data_dir / "segconv")
    write_utt2spk(utt2spk_path, rename_utterances(utterances, names))
    write_segments(segments_path, renamed_segments)
    logger.debug("renamed %d utterances in %s", len(names), data_dir)
    return names


def restore_names(lines: Iterable[str], names: NameMap) -> Iterable[str]:
    """Map the first column of each line back to original utterance names."""

    for line in lines:
        head, sep, tail = line.partition(" ")
        yield names.to_original(head) + sep + tail


__all__ = [
    "CANONICAL_PREFIX",
    "CANONICAL_WIDTH",
    "NameMap",
    "canonical_name",
    "canonicalize_data_dir",
    "rename_segments",
    "rename_utterances",
    "restore_names",
]
