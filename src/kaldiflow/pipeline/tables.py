"""Typed records for the Kaldi data-directory tables and their text formats."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

_STM_LABEL = re.compile(r"^<[^>]*>$")


@dataclass(frozen=True)
class TimeWindow:
    """A UEM region of one recording; only audio inside it is processed."""

    recording: str
    index: int
    start: float
    end: float
    channel: str = "1"
    width: int = 2

    @property
    def identifier(self) -> str:
        return f"{self.recording}.{self.index:0{self.width}d}"

    @property
    def duration(self) -> float:
        return self.end - self.start

    def contains(self, t: float) -> bool:
        return self.start <= t < self.end


@dataclass(frozen=True)
class StmEntry:
    file: str
    channel: str
    speaker: str
    start: float
    end: float
    label: str
    text: str


@dataclass(frozen=True)
class Segment:
    """One row of ``segments``: an utterance's span within its recording."""

    utterance: str
    recording: str
    start: float
    end: float

    def format(self) -> str:
        return f"{self.utterance} {self.recording} {self.start:.3f} {self.end:.3f}"


@dataclass(frozen=True)
class Utterance:
    """One row of ``utt2spk``."""

    utterance: str
    speaker: str

    def format(self) -> str:
        return f"{self.utterance} {self.speaker}"


@dataclass(frozen=True)
class Speaker:
    speaker: str
    gender: str
    band: str

    @property
    def speech_type(self) -> str:
        return f"{self.gender}{self.band}".upper()


def iter_fields(path: Path, min_fields: int = 1) -> Iterator[tuple[int, list[str]]]:
    """Yield ``(line_number, fields)`` for every non-blank line of a table."""

    with Path(path).open("r", encoding="utf-8") as handle:
        for lineno, line in enumerate(handle, start=1):
            fields = line.split()
            if not fields:
                continue
            if len(fields) < min_fields:
                raise ValueError(f"{path}:{lineno}: expected at least {min_fields} fields, got {len(fields)}")
            yield lineno, fields


def _require(path: Path, lineno: int, fields: list[str], count: int) -> None:
    if len(fields) < count:
        raise ValueError(f"{path}:{lineno}: expected at least {count} fields, got {len(fields)}")


def _float(path: Path, lineno: int, value: str, name: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{path}:{lineno}: {name} is not a number: {value!r}") from None


def write_lines(path: Path, lines: Iterable[str]) -> int:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as handle:
        for line in lines:
            handle.write(line + "\n")
            count += 1
    return count


def read_segments(path: Path) -> list[Segment]:
    rows = []
    for lineno, fields in iter_fields(path, 4):
        start = _float(path, lineno, fields[2], "start")
        end = _float(path, lineno, fields[3], "end")
        rows.append(Segment(fields[0], fields[1], start, end))
    return rows


def write_segments(path: Path, segments: Iterable[Segment]) -> int:
    return write_lines(path, (seg.format() for seg in segments))


def read_utt2spk(path: Path) -> list[Utterance]:
    return [Utterance(fields[0], fields[1]) for _lineno, fields in iter_fields(path, 2)]


def write_utt2spk(path: Path, utterances: Iterable[Utterance]) -> int:
    return write_lines(path, (utt.format() for utt in utterances))


def sort_utt2spk(utterances: Iterable[Utterance]) -> list[Utterance]:
    """Order by speaker, then utterance, dropping duplicate rows."""

    return sorted(set(utterances), key=lambda utt: (utt.speaker, utt.utterance))


def read_spk2gender(path: Path) -> dict[str, str]:
    return {fields[0]: fields[1] for _lineno, fields in iter_fields(path, 2)}


def write_spk2gender(path: Path, genders: dict[str, str]) -> int:
    return write_lines(path, (f"{spk} {genders[spk]}" for spk in sorted(genders)))


def read_bwgender(path: Path) -> list[tuple[str, str]]:
    """Rows of ``BWGender``: ``(speech_type, speaker)``."""

    return [(fields[0], fields[1]) for _lineno, fields in iter_fields(path, 2)]


def speakers_of_type(rows: Iterable[tuple[str, str]], speech_type: str) -> list[str]:
    seen: dict[str, None] = {}
    for row_type, speaker in rows:
        if row_type == speech_type:
            seen.setdefault(speaker, None)
    return list(seen)


def read_wav_scp(path: Path) -> dict[str, str]:
    return {fields[0]: " ".join(fields[1:]) for _lineno, fields in iter_fields(path, 2)}


def read_uem(path: Path) -> dict[str, list[TimeWindow]]:
    """Parse ``file channel start end`` lines into numbered windows per recording.

    Windows are numbered in order of start time, with the index zero-padded
    wide enough that identifiers sort chronologically.
    """

    spans: dict[str, list[tuple[float, float, str]]] = {}
    if not Path(path).exists():
        return {}
    for lineno, fields in iter_fields(path, 1):
        if fields[0].startswith(";;"):
            continue
        _require(path, lineno, fields, 4)
        recording = fields[0]
        start = _float(path, lineno, fields[2], "start")
        end = _float(path, lineno, fields[3], "end")
        if end <= start:
            raise ValueError(f"{path}:{lineno}: window end {end} is not after start {start}")
        spans.setdefault(recording, []).append((start, end, fields[1]))

    windows: dict[str, list[TimeWindow]] = {}
    for recording, rows in spans.items():
        width = max(2, len(str(len(rows))))
        windows[recording] = [
            TimeWindow(recording, index, start, end, channel, width)
            for index, (start, end, channel) in enumerate(sorted(rows, key=lambda r: (r[0], r[1])), start=1)
        ]
    return windows


def read_stm(path: Path) -> list[StmEntry]:
    entries: list[StmEntry] = []
    if not Path(path).exists():
        return entries
    for lineno, fields in iter_fields(path, 1):
        if fields[0].startswith(";;"):
            continue
        _require(path, lineno, fields, 5)
        start = _float(path, lineno, fields[3], "start")
        end = _float(path, lineno, fields[4], "end")
        rest = fields[5:]
        label = ""
        if rest and _STM_LABEL.match(rest[0]):
            label, rest = rest[0], rest[1:]
        entries.append(
            StmEntry(fields[0], fields[1], fields[2], start, end, label, " ".join(rest).lower())
        )
    return entries


def sort_stm_lines(lines: Iterable[str]) -> list[str]:
    """Order STM text by file, then numeric start time."""

    def _key(line: str) -> tuple[str, float]:
        fields = line.split()
        if len(fields) < 4 or fields[0].startswith(";;"):
            return ("", float("-inf"))
        try:
            return (fields[0], float(fields[3]))
        except ValueError:
            return (fields[0], float("-inf"))

    return sorted((line for line in lines if line.strip()), key=_key)


def read_word_symbols(path: Path) -> dict[str, str]:
    """Map integer ids (as text) to words from a ``words.txt`` symbol table."""

    return {fields[1]: fields[0] for _lineno, fields in iter_fields(path, 2)}


__all__ = [
    "Segment",
    "Speaker",
    "StmEntry",
    "TimeWindow",
    "Utterance",
    "iter_fields",
    "read_bwgender",
    "read_segments",
    "read_spk2gender",
    "read_stm",
    "read_uem",
    "read_utt2spk",
    "read_wav_scp",
    "read_word_symbols",
    "sort_stm_lines",
    "sort_utt2spk",
    "speakers_of_type",
    "write_lines",
    "write_segments",
    "write_spk2gender",
    "write_utt2spk",
]
