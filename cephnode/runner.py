"""Running external commands, with a replaceable process-wide runner."""

from __future__ import annotations

import subprocess
from typing import Optional, Protocol, Sequence, Union

_Input = Union[str, bytes, None]


class RunError(RuntimeError):
    """An external command failed, could not start, or timed out."""

    def __init__(
        self,
        command: Sequence[str],
        exit_code: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
        reason: str = "",
    ) -> None:
        self.command = tuple(command)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        self.reason = reason
        super().__init__(self._describe())

    def _describe(self) -> str:
        text = f"Failed to run: {' '.join(self.command)}"
        if self.timed_out:
            return f"{text}: timed out"
        if self.exit_code is not None:
            text = f"{text}: exit status {self.exit_code}"
        detail = self.stderr.strip() or self.reason
        if detail:
            text = f"{text} ({detail})"
        return text


class _CommandRunner(Protocol):
    def run_command(
        self, name: str, *args: str, stdin: _Input = None, timeout: Optional[float] = None
    ) -> str: ...


class ProcessRunner:
    """Runs commands as child processes and returns their standard output."""

    def run_command(
        self,
        name: str,
        *args: str,
        stdin: _Input = None,
        timeout: Optional[float] = None,
    ) -> str:
        command = (name, *args)
        data = stdin.encode() if isinstance(stdin, str) else stdin
        try:
            completed = subprocess.run(
                command,
                input=data,
                capture_output=True,
                timeout=timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            raise RunError(command, reason=str(exc)) from exc
        except subprocess.TimeoutExpired as exc:
            raise RunError(command, timed_out=True) from exc
        stdout = completed.stdout.decode(errors="replace")
        stderr = completed.stderr.decode(errors="replace")
        if completed.returncode != 0:
            raise RunError(
                command,
                exit_code=completed.returncode,
                stdout=stdout,
                stderr=stderr,
            )
        return stdout


_runner: _CommandRunner = ProcessRunner()


def get_runner() -> _CommandRunner:
    """Return the runner used for all external commands."""
    return _runner


def set_runner(runner: _CommandRunner) -> _CommandRunner:
    """Install a runner for all external commands and return the previous one."""
    global _runner
    previous = _runner
    _runner = runner
    return previous


def ceph_run(*args: str) -> str:
    """Run the ceph command line tool with the given arguments."""
    return get_runner().run_command("ceph", *args)