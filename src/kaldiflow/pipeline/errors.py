"""Exception types raised by the decode pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence


class PipelineError(RuntimeError):
    """Base class for failures that abort a decode run."""


class ExternalToolError(PipelineError):
    """An external tool exited with a non-zero status."""

    def __init__(self, argv: Sequence[str], returncode: int, output: str = "", log_path: Path | None = None):
        self.argv = list(argv)
        self.returncode = returncode
        self.output = output
        self.log_path = log_path
        where = f" (log: {log_path})" if log_path else ""
        super().__init__(f"{self.argv[0] if self.argv else '?'} exited with status {returncode}{where}")


class MissingFileError(PipelineError):
    """A file an external tool was expected to produce does not exist."""

    def __init__(self, path: Path, producer: str):
        self.path = Path(path)
        self.producer = producer
        super().__init__(f"{producer} did not produce expected file {self.path}")


class ShardIntegrityError(PipelineError):
    """Job shards do not partition the utterance set of a speech type."""


__all__ = [
    "ExternalToolError",
    "MissingFileError",
    "PipelineError",
    "ShardIntegrityError",
]
