from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from kaldiflow.pipeline.commands import CommandResult, CommandRunner


@dataclass
class Call:
    argv: list[str]
    cwd: Optional[Path]
    log_path: Optional[Path]
    stdin: Optional[str]
    capture: bool

    @property
    def name(self) -> str:
        return Path(self.argv[0]).name


Handler = Callable[[Call], Optional[CommandResult]]


class RecordingRunner(CommandRunner):
    """Records every command; ``handlers`` fake the side effects of a tool.

    A handler receives the :class:`Call` and may return a result; ``None``
    means success. Without a handler a captured call echoes its stdin.
    """

    def __init__(self, handlers: Optional[dict[str, Handler]] = None):
        self.calls: list[Call] = []
        self.handlers = dict(handlers or {})

    def run(
        self,
        command: str,
        args: Sequence[str | Path] = (),
        *,
        cwd: Path | None = None,
        log_path: Path | None = None,
        stdin: str | None = None,
        capture: bool = False,
    ) -> CommandResult:
        call = Call([str(command), *(str(arg) for arg in args)], cwd, log_path, stdin, capture)
        self.calls.append(call)
        handler = self.handlers.get(call.name)
        if handler is not None:
            result = handler(call)
            if result is not None:
                return result
        stdout = stdin if capture and stdin is not None else ""
        return CommandResult(call.argv, 0, stdout, "", log_path)

    def names(self) -> list[str]:
        return [call.name for call in self.calls]

    def calls_to(self, name: str) -> list[Call]:
        return [call for call in self.calls if call.name == name]


@pytest.fixture()
def recording_runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture()
def write_file() -> Callable[[Path, str], Path]:
    def _write(path: Path, text: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write
