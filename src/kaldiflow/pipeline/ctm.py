"""CTM records: ``<id> <channel> <start> <duration> <word> [<confidence>]``."""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable


@dataclass(frozen=True)
class CtmEntry:
    utterance: str
    channel: str
    start: float
    duration: float
    word: str
    confidence: float | None = None

    @property
    def end(self) -> float:
        return self.start + self.duration

    def format(self) -> str:
        line = f"{self.utterance} {self.channel} {self.start:.3f} {self.duration:.3f} {self.word}"
        if self.confidence is not None:
            line += f" {self.confidence:g}"
        return line

    def with_word(self, word: str) -> "CtmEntry":
        return replace(self, word=word)


def parse_ctm_line(line: str, *, source: str = "<ctm>", lineno: int = 0) -> CtmEntry | None:
    fields = line.split()
    if not fields or fields[0].startswith(";;"):
        return None
    if len(fields) < 5:
        raise ValueError(f"{source}:{lineno}: CTM line needs at least 5 fields: {line.strip()!r}")
    try:
        start = float(fields[2])
        duration = float(fields[3])
        confidence = float(fields[5]) if len(fields) > 5 else None
    except ValueError:
        raise ValueError(f"{source}:{lineno}: bad number in CTM line: {line.strip()!r}") from None
    return CtmEntry(fields[0], fields[1], start, duration, fields[4], confidence)


def parse_ctm(lines: Iterable[str], *, source: str = "<ctm>") -> list[CtmEntry]:
    entries = []
    for lineno, line in enumerate(lines, start=1):
        entry = parse_ctm_line(line, source=source, lineno=lineno)
        if entry is not None:
            entries.append(entry)
    return entries


def read_ctm(path: Path) -> list[CtmEntry]:
    with Path(path).open("r", encoding="utf-8") as handle:
        return parse_ctm(handle, source=str(path))


def write_ctm(path: Path, entries: Iterable[CtmEntry]) -> int:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as handle:
        for entry in entries:
            handle.write(entry.format() + "\n")
            count += 1
    return count


def format_ctm(entries: Iterable[CtmEntry]) -> str:
    return "".join(entry.format() + "\n" for entry in entries)


def ctm_sort_key(entry: CtmEntry) -> tuple[str, float]:
    """Transcript order: utterance identifier, then start time."""

    return (entry.utterance, entry.start)


def sort_ctm(entries: Iterable[CtmEntry], *, dedupe: bool = True) -> list[CtmEntry]:
    """Stable sort by :func:`ctm_sort_key`.

    With ``dedupe`` only the first of several entries sharing
    (utterance, start, word) is kept.
    """

    ordered = sorted(entries, key=ctm_sort_key)
    if not dedupe:
        return ordered
    seen: set[tuple[str, float, str]] = set()
    unique = []
    for entry in ordered:
        key = (entry.utterance, entry.start, entry.word)
        if key in seen:
            continue
        seen.add(key)
        unique.append(entry)
    return unique


__all__ = [
    "CtmEntry",
    "ctm_sort_key",
    "format_ctm",
    "parse_ctm",
    "parse_ctm_line",
    "read_ctm",
    "sort_ctm",
    "write_ctm",
]
