"""Utilities for executing external commands with optional dry-run support."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import os
import shlex
import subprocess


@dataclass
class CommandResult:
    """Represents the outcome of an executed command."""

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    streamed: bool = False
    timed_out: bool = False

    @property
    def output(self) -> str:
        return f"{self.stdout}{self.stderr}"


class CommandError(RuntimeError):
    """Raised when a command fails."""

    def __init__(self, result: CommandResult):
        message = f"Command failed with exit code {result.returncode}: {' '.join(map(shlex.quote, result.command))}"
        if result.streamed:
            message = f"{message}\nstdout/stderr already streamed above."
        elif result.stdout or result.stderr:
            message = (
                f"{message}\n"
                f"stdout: {result.stdout}\n"
                f"stderr: {result.stderr}"
            )
        super().__init__(message)
        self.result = result


class CommandRunner:
    """Abstract command runner interface."""

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        raise NotImplementedError

    def format_command(self, command: Sequence[str]) -> str:
        return " ".join(shlex.quote(part) for part in command)


class SubprocessCommandRunner(CommandRunner):
    """Command runner that executes commands via :mod:`subprocess`.

    ``timeout`` is only honoured for captured (non-streamed) commands; a command
    that exceeds it is reported with ``timed_out`` set and return code ``-1``.
    A command that cannot be started is reported rather than raised: return
    code ``127`` for a missing executable and ``126`` for any other OS error.
    """

    @staticmethod
    def _merge_environment(env: Mapping[str, str] | None) -> Dict[str, str] | None:
        if env is None:
            return None
        merged = os.environ.copy()
        merged.update(env)
        return merged

    def _finalize(self, result: CommandResult, *, check: bool) -> CommandResult:
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        merged_env = self._merge_environment(env)
        if not stream:
            try:
                process = subprocess.run(
                    command,
                    cwd=str(cwd) if cwd else None,
                    env=merged_env,
                    capture_output=True,
                    text=True,
                    check=False,
                    timeout=timeout,
                )
            except subprocess.TimeoutExpired as exc:
                return self._finalize(
                    CommandResult(
                        command=command,
                        returncode=-1,
                        stdout=_decode(exc.stdout),
                        stderr=_decode(exc.stderr),
                        timed_out=True,
                    ),
                    check=check,
                )
            except OSError as exc:
                return self._finalize(_launch_failure(command, exc, streamed=False), check=check)
            return self._finalize(
                CommandResult(
                    command=command,
                    returncode=process.returncode,
                    stdout=process.stdout,
                    stderr=process.stderr,
                ),
                check=check,
            )

        try:
            process = subprocess.run(
                command,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                check=False,
            )
        except OSError as exc:
            return self._finalize(_launch_failure(command, exc, streamed=True), check=check)

        return self._finalize(
            CommandResult(
                command=command,
                returncode=process.returncode,
                stdout="",
                stderr="",
                streamed=True,
            ),
            check=check,
        )


def _launch_failure(command: Sequence[str], exc: OSError, *, streamed: bool) -> CommandResult:
    returncode = 127 if isinstance(exc, FileNotFoundError) else 126
    return CommandResult(command=command, returncode=returncode, stdout="", stderr=str(exc), streamed=streamed)


def _decode(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


@dataclass(slots=True)
class RecordedCommand:
    command: List[str]
    cwd: str | None
    env: Dict[str, str]
    note: str | None
    stream: bool
    timeout: float | None = None


@dataclass(slots=True)
class ScriptedResponse:
    """Canned result returned by :class:`RecordingCommandRunner` for a matching command."""

    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    raises: BaseException | None = None


class RecordingCommandRunner(CommandRunner):
    """Command runner that records commands instead of executing them.

    Responses can be scripted per command prefix so tests and dry runs can
    simulate failing stages or probe output without spawning processes.
    """

    def __init__(self, responses: Mapping[tuple[str, ...], ScriptedResponse] | None = None) -> None:
        self.commands: List[RecordedCommand] = []
        self._responses: Dict[tuple[str, ...], ScriptedResponse] = dict(responses or {})

    def respond(self, prefix: Sequence[str], response: ScriptedResponse) -> None:
        self._responses[tuple(prefix)] = response

    def _lookup(self, command: Sequence[str]) -> ScriptedResponse | None:
        best: tuple[str, ...] | None = None
        for prefix in self._responses:
            if tuple(command[: len(prefix)]) == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return self._responses[best] if best is not None else None

    @staticmethod
    def _record_entry(
        *,
        command: Sequence[str],
        cwd: Path | None,
        env: Mapping[str, str] | None,
        note: str | None,
        stream: bool,
        timeout: float | None,
    ) -> RecordedCommand:
        return RecordedCommand(
            command=list(command),
            cwd=str(cwd) if cwd else None,
            env=dict(env) if env else {},
            note=note,
            stream=stream,
            timeout=timeout,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
        note: str | None = None,
        stream: bool = False,
        timeout: float | None = None,
    ) -> CommandResult:
        self.commands.append(
            self._record_entry(command=command, cwd=cwd, env=env, note=note, stream=stream, timeout=timeout)
        )
        response = self._lookup(command)
        if response is None:
            return CommandResult(command=command, returncode=0, stdout="", stderr="", streamed=stream)
        if response.raises is not None:
            raise response.raises
        result = CommandResult(
            command=command,
            returncode=response.returncode,
            stdout=response.stdout,
            stderr=response.stderr,
            streamed=stream,
            timed_out=response.timed_out,
        )
        if check and result.returncode != 0:
            raise CommandError(result)
        return result

    def iter_commands(self) -> Iterable[RecordedCommand]:
        return iter(self.commands)

    def iter_formatted(self, *, workspace: Path | None = None) -> Iterable[str]:
        default_cwd = str(workspace) if workspace else None
        for record in self.commands:
            cmd = self.format_command(record.command)
            cwd = record.cwd or default_cwd
            note = record.note
            parts: List[str] = ["[dry-run]"]
            if note:
                parts.append(note)
            if cwd:
                parts.append(f"(cwd={cwd})")
            parts.append(cmd)
            yield " ".join(parts)


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordedCommand",
    "RecordingCommandRunner",
    "ScriptedResponse",
    "SubprocessCommandRunner",
]
