"""Directory layout of a decode run.

Every stage finds its inputs here, so nothing but the target directory has to
survive between invocations.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RunLayout:
    target: Path

    @property
    def intermediate(self) -> Path:
        return self.target / "Intermediate"

    @property
    def data(self) -> Path:
        return self.intermediate / "Data"

    @property
    def all_dir(self) -> Path:
        return self.data / "ALL"

    @property
    def liumlog(self) -> Path:
        return self.all_dir / "liumlog"

    @property
    def log_dir(self) -> Path:
        return self.intermediate / "log"

    @property
    def mfcc(self) -> Path:
        return self.intermediate / "mfcc"

    @property
    def fmllr(self) -> Path:
        return self.intermediate / "fmllr"

    @property
    def fmllr_si(self) -> Path:
        return self.intermediate / "fmllr.si"

    @property
    def fmmi(self) -> Path:
        return self.intermediate / "fmmi"

    @property
    def rescore(self) -> Path:
        return self.intermediate / "rescore"

    @property
    def rnnrescore(self) -> Path:
        return self.intermediate / "rnnrescore"

    @property
    def flist(self) -> Path:
        return self.data / "test.flist"

    @property
    def bwgender(self) -> Path:
        return self.data / "BWGender"

    @property
    def scratch_wav(self) -> Path:
        return self.data / "foo.wav"

    @property
    def fix_stm(self) -> Path:
        return self.data / "fix-stm"

    @property
    def progress(self) -> Path:
        return self.intermediate / "progress.json"

    @property
    def run_summary(self) -> Path:
        return self.intermediate / "run_summary.json"

    @property
    def events(self) -> Path:
        return self.log_dir / "run.jsonl"

    def table(self, name: str) -> Path:
        """A table of the full data set, e.g. ``segments`` or ``utt2spk``."""

        return self.all_dir / name

    def partition(self, speech_type: str) -> Path:
        return self.data / speech_type

    def spk_list(self, speech_type: str) -> Path:
        return self.data / f"{speech_type}.spklist"

    def ensure(self) -> None:
        for path in (self.all_dir, self.liumlog, self.log_dir, self.fmllr, self.fmllr_si, self.fmmi):
            path.mkdir(parents=True, exist_ok=True)


__all__ = ["RunLayout"]
