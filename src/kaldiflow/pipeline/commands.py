"""External command execution.

Every tool the pipeline depends on is started through a :class:`CommandRunner`
so the driver composes explicit sequential calls instead of shell pipelines,
and tests can substitute a recording runner.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Sequence

from .errors import ExternalToolError

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 20


@dataclass
class CommandResult:
    argv: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    log_path: Path | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def diagnostic_output(self) -> str:
        """The tool's own diagnostics: captured stderr or the tail of its log."""

        if self.stderr.strip():
            return self.stderr
        if self.log_path is not None and self.log_path.exists():
            lines = self.log_path.read_text(encoding="utf-8", errors="replace").splitlines()
            return "\n".join(lines[-LOG_TAIL_LINES:])
        return ""


class CommandRunner(ABC):
    """Runs one external command and reports its exit status."""

    @abstractmethod
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
        """Run ``command`` with ``args``.

        ``log_path`` receives stderr (and stdout unless ``capture`` is set).
        ``stdin`` is fed as text. With ``capture`` stdout is returned in the
        result instead of being written anywhere.
        """

    def check(self, command: str, args: Sequence[str | Path] = (), **kwargs) -> CommandResult:
        """Like :meth:`run` but raise :class:`ExternalToolError` on failure."""

        result = self.run(command, args, **kwargs)
        if not result.ok:
            raise ExternalToolError(
                result.argv, result.returncode, result.diagnostic_output(), result.log_path
            )
        return result


class SubprocessRunner(CommandRunner):
    """Blocking :mod:`subprocess` execution with an explicit environment."""

    def __init__(self, env: Mapping[str, str] | None = None, cwd: Path | None = None):
        self.env = dict(env) if env is not None else None
        self.cwd = cwd

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
        argv = [str(command), *(str(arg) for arg in args)]
        workdir = cwd or self.cwd
        logger.debug("run: %s", shlex.join(argv))

        log_handle = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_handle = log_path.open("w", encoding="utf-8")
            log_handle.write("# " + shlex.join(argv) + "\n")
            log_handle.flush()
        try:
            if capture:
                stdout = subprocess.PIPE
            elif log_handle is not None:
                stdout = log_handle
            else:
                stdout = subprocess.DEVNULL
            stderr = log_handle if log_handle is not None else subprocess.PIPE
            try:
                proc = subprocess.run(
                    argv,
                    input=stdin,
                    stdout=stdout,
                    stderr=stderr,
                    cwd=str(workdir) if workdir else None,
                    env=self.env,
                    text=True,
                    check=False,
                )
            except FileNotFoundError as exc:
                return CommandResult(argv, 127, "", f"{argv[0]}: command not found ({exc})", log_path)
            except PermissionError as exc:
                return CommandResult(argv, 126, "", f"{argv[0]}: not executable ({exc})", log_path)
        finally:
            if log_handle is not None:
                log_handle.close()

        return CommandResult(
            argv,
            proc.returncode,
            proc.stdout if capture and proc.stdout is not None else "",
            proc.stderr if log_handle is None and proc.stderr is not None else "",
            log_path,
        )


class WrappedRunner(CommandRunner):
    """Launch commands through a Kaldi-style wrapper (``run.pl``, ``queue.pl``).

    The wrapper is called as ``<wrapper> <log> <command> <args...>`` and owns
    the log file itself.
    """

    def __init__(self, inner: CommandRunner, wrapper: str):
        self.inner = inner
        self.wrapper = shlex.split(wrapper)

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
        if log_path is None or capture or stdin is not None:
            return self.inner.run(command, args, cwd=cwd, log_path=log_path, stdin=stdin, capture=capture)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        wrapped = [*self.wrapper[1:], str(log_path), str(command), *(str(arg) for arg in args)]
        result = self.inner.run(self.wrapper[0], wrapped, cwd=cwd)
        result.log_path = log_path
        return result


__all__ = [
    "CommandResult",
    "CommandRunner",
    "SubprocessRunner",
    "WrappedRunner",
]
