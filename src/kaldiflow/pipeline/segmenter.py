"""Speaker segmentation of source recordings with the LIUM diarization tool.

For every recording (or every UEM window of it) the audio is handed to LIUM,
its segment list is parsed and turned into the Kaldi data tables:
``segments``, ``utt2spk``, ``spk2gender``, ``wav.scp``, ``text_ref`` and the
speech-type index ``BWGender``.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

import soundfile as sf

from .commands import CommandRunner
from .errors import MissingFileError
from .tables import (
    Segment,
    Speaker,
    StmEntry,
    TimeWindow,
    Utterance,
    iter_fields,
    sort_utt2spk,
    write_lines,
    write_segments,
    write_spk2gender,
    write_utt2spk,
)

logger = logging.getLogger(__name__)

FRAME_RATE = 100.0


@dataclass(frozen=True)
class DiarizedSegment:
    """One speaker turn as reported by LIUM, in frames relative to its input."""

    start_frame: int
    duration_frames: int
    gender: str
    band: str
    environment: str
    speaker: str

    @property
    def start(self) -> float:
        return self.start_frame / FRAME_RATE

    @property
    def end(self) -> float:
        return (self.start_frame + self.duration_frames) / FRAME_RATE


def parse_lium_seg(path: Path) -> list[DiarizedSegment]:
    """Parse a LIUM ``.seg`` file, ordered by start frame.

    Columns: show, channel, start frame, duration in frames, gender, band,
    environment, speaker label. Lines starting with ``;`` are comments. Two
    segments with the same start frame collapse into the later one.
    """

    by_start: dict[int, DiarizedSegment] = {}
    for lineno, fields in iter_fields(path, 1):
        if fields[0].startswith(";"):
            continue
        if len(fields) < 8:
            raise ValueError(f"{path}:{lineno}: expected 8 fields, got {len(fields)}")
        try:
            start_frame = int(fields[2])
            duration = int(fields[3])
        except ValueError:
            raise ValueError(f"{path}:{lineno}: start and duration must be frame counts") from None
        by_start[start_frame] = DiarizedSegment(
            start_frame=start_frame,
            duration_frames=duration,
            gender=fields[4].lower(),
            band=fields[5].lower(),
            environment=fields[6],
            speaker=fields[7],
        )
    return [by_start[key] for key in sorted(by_start)]


class LiumDiarizer:
    """Invoke the LIUM speaker diarization jar on one audio file."""

    def __init__(self, runner: CommandRunner, jar: Path, heap: str = "2024m"):
        self.runner = runner
        self.jar = jar
        self.heap = heap

    def diarize(self, audio: Path, show: str, out_dir: Path) -> list[DiarizedSegment]:
        out_dir.mkdir(parents=True, exist_ok=True)
        seg_path = out_dir / f"{show}.seg"
        self.runner.check(
            "java",
            [
                f"-Xmx{self.heap}",
                "-jar",
                self.jar,
                f"--fInputMask={audio}",
                f"--sOutputMask={seg_path}",
                show,
            ],
            log_path=out_dir / f"{show}.log",
        )
        if not seg_path.exists():
            raise MissingFileError(seg_path, "LIUM diarization")
        return parse_lium_seg(seg_path)


def extract_window(source: Path, window: TimeWindow, target: Path) -> float:
    """Write the ``[start, end)`` range of ``source`` to ``target``; returns seconds written.

    A window starting at or after the end of the audio writes nothing and
    returns 0.
    """

    info = sf.info(str(source))
    start = int(round(window.start * info.samplerate))
    stop = min(int(round(window.end * info.samplerate)), info.frames)
    if start >= stop:
        return 0.0
    data, samplerate = sf.read(str(source), start=start, stop=stop, always_2d=False)
    sf.write(str(target), data, samplerate, subtype=info.subtype)
    return (stop - start) / samplerate


@dataclass
class SegmentationResult:
    segments: list[Segment] = field(default_factory=list)
    utterances: list[Utterance] = field(default_factory=list)
    speakers: dict[str, Speaker] = field(default_factory=dict)
    bwgender: list[tuple[str, str]] = field(default_factory=list)
    text_ref: list[str] = field(default_factory=list)
    wav_scp: list[tuple[str, str]] = field(default_factory=list)
    windows_without_speech: list[str] = field(default_factory=list)


class DiarizationSegmenter:
    def __init__(
        self,
        diarizer: LiumDiarizer,
        scratch_wav: Path,
        log_dir: Path,
        windows: dict[str, list[TimeWindow]] | None = None,
        references: Iterable[StmEntry] = (),
    ):
        self.diarizer = diarizer
        self.scratch_wav = scratch_wav
        self.log_dir = log_dir
        self.windows = windows or {}
        self.references: dict[str, dict[float, str]] = {}
        for entry in references:
            self.references.setdefault(entry.file, {})[entry.start] = entry.text
        self.result = SegmentationResult()

    def process(self, recordings: Iterable[Path]) -> SegmentationResult:
        try:
            for path in recordings:
                self.process_recording(path)
        finally:
            self.scratch_wav.unlink(missing_ok=True)
        return self.result

    def process_recording(self, path: Path) -> None:
        recording = recording_id(path)
        windows = self.windows.get(recording)
        if windows:
            for window in windows:
                if not extract_window(path, window, self.scratch_wav):
                    logger.warning("%s: window lies past the end of %s", window.identifier, path)
                    self.result.windows_without_speech.append(window.identifier)
                    self._reference(recording, window.identifier, window)
                    continue
                self._segment(recording, window.identifier, window.start, window)
        else:
            shutil.copyfile(path, self.scratch_wav)
            self._segment(recording, recording, 0.0, None)
        self.result.wav_scp.append((recording, str(path)))

    def _segment(self, recording: str, window_id: str, offset: float, window: TimeWindow | None) -> None:
        diarized = self.diarizer.diarize(self.scratch_wav, window_id, self.log_dir)
        for count, seg in enumerate(diarized, start=1):
            utterance = f"{window_id}.{count:03d}"
            start = offset + seg.start
            end = offset + seg.end
            if window is not None and end > window.end:
                end = window.end
            speaker_id = f"{window_id}-{seg.speaker}"
            speaker = Speaker(speaker_id, seg.gender, seg.band)

            self.result.segments.append(Segment(utterance, recording, start, end))
            self.result.utterances.append(Utterance(utterance, speaker_id))
            self.result.bwgender.append((speaker.speech_type, speaker_id))
            self.result.speakers[speaker_id] = speaker

        if diarized:
            logger.info("%s: %d segments found", window_id, len(diarized))
        else:
            logger.warning("%s: no speech segments found", window_id)
            self.result.windows_without_speech.append(window_id)
        self._reference(recording, window_id, window)

    def _reference(self, recording: str, window_id: str, window: TimeWindow | None) -> None:
        texts = self.references.get(recording)
        if texts is not None:
            kept = [
                texts[start]
                for start in sorted(texts)
                if window is None or window.contains(start)
            ]
            self.result.text_ref.append(" ".join([window_id, *kept]))


def recording_id(path: Path) -> str:
    if path.suffix.lower() != ".wav":
        raise ValueError(f"not a .wav recording: {path}")
    return path.stem


def write_tables(result: SegmentationResult, all_dir: Path, bwgender_path: Path) -> None:
    """Write the segmentation tables; ``utt2spk`` is ordered by speaker, then utterance."""

    write_segments(all_dir / "segments", result.segments)
    write_utt2spk(all_dir / "utt2spk", sort_utt2spk(result.utterances))
    write_spk2gender(
        all_dir / "spk2gender", {spk: info.gender for spk, info in result.speakers.items()}
    )
    write_lines(all_dir / "text_ref", result.text_ref)
    write_lines(all_dir / "wav.scp", (f"{rec} {path}" for rec, path in result.wav_scp))
    write_lines(bwgender_path, (f"{speech_type} {spk}" for speech_type, spk in result.bwgender))


__all__ = [
    "DiarizationSegmenter",
    "DiarizedSegment",
    "FRAME_RATE",
    "LiumDiarizer",
    "SegmentationResult",
    "extract_window",
    "parse_lium_seg",
    "recording_id",
    "write_tables",
]
