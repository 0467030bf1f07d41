"""Exception taxonomy shared by the resolver, detector, pipeline and driver."""
from __future__ import annotations

from typing import TYPE_CHECKING

from core.command_runner import CommandError

if TYPE_CHECKING:  # pragma: no cover
    from .pipeline import Stage


class BuildMatrixError(Exception):
    """Base class for all errors raised by the build matrix engine."""


class ConfigurationError(BuildMatrixError, ValueError):
    """An invalid or unrecognised dimension combination or preset name.

    Always raised before any external process is spawned.
    """


class ToolchainMissingError(BuildMatrixError):
    """A mandatory tool is absent for a requested preset."""

    def __init__(self, tool: str, *, preset: str | None = None, guidance: str | None = None, detail: str | None = None):
        self.tool = tool
        self.preset = preset
        self.guidance = guidance
        self.detail = detail
        message = f"Required tool '{tool}' was not found"
        if preset:
            message = f"{message} (needed by preset '{preset}')"
        if detail:
            message = f"{message}: {detail}"
        if guidance:
            message = f"{message}\n  {guidance}"
        super().__init__(message)


class PackageManagerMissingError(ToolchainMissingError):
    """The native-dependency package manager is absent but a feature needs it.

    Surfaces as a configure-stage failure rather than blocking the job up front.
    """


class StageFailure(BuildMatrixError):
    """An external process returned non-zero during a pipeline stage."""

    def __init__(self, stage: "Stage", preset: str, *, returncode: int | None = None, cause: BaseException | None = None):
        self.stage = stage
        self.preset = preset
        self.returncode = returncode
        self.cause = cause
        stage_name = getattr(stage, "value", str(stage))
        message = f"Stage '{stage_name}' failed for preset '{preset}'"
        if returncode is not None:
            message = f"{message} (exit code {returncode})"
        elif cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)

    @classmethod
    def from_command_error(cls, stage: "Stage", preset: str, error: CommandError) -> "StageFailure":
        return cls(stage, preset, returncode=error.result.returncode, cause=error)


class ArtifactCorruption(BuildMatrixError):
    """The persisted environment artifact is unreadable or stale.

    Only ever handled inside the materializer, where it triggers re-detection.
    """


__all__ = [
    "ArtifactCorruption",
    "BuildMatrixError",
    "ConfigurationError",
    "PackageManagerMissingError",
    "StageFailure",
    "ToolchainMissingError",
]
