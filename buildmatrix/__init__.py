"""Preset-driven CMake build matrix orchestration."""
from __future__ import annotations

from .dimensions import Architecture, BuildDimensions, Compiler, Configuration, Feature, Platform
from .environment import EnvironmentMaterializer, host_platform
from .errors import (
    ArtifactCorruption,
    BuildMatrixError,
    ConfigurationError,
    PackageManagerMissingError,
    StageFailure,
    ToolchainMissingError,
)
from .matrix import MatrixDriver, MatrixReport, MatrixRequest
from .pipeline import BuildJob, CommandPipeline, JobResult, Stage, StageOutcome
from .presets import PresetCatalog, PresetResolver, ResolvedPreset, preset_id
from .toolchains import ToolchainDetector, ToolchainStatus, ToolStatus


def main(argv=None) -> int:
    from .cli import main as cli_main

    return cli_main(argv)


__all__ = [
    "Architecture",
    "ArtifactCorruption",
    "BuildDimensions",
    "BuildJob",
    "BuildMatrixError",
    "CommandPipeline",
    "Compiler",
    "Configuration",
    "ConfigurationError",
    "EnvironmentMaterializer",
    "Feature",
    "JobResult",
    "MatrixDriver",
    "MatrixReport",
    "MatrixRequest",
    "PackageManagerMissingError",
    "Platform",
    "PresetCatalog",
    "PresetResolver",
    "ResolvedPreset",
    "Stage",
    "StageFailure",
    "StageOutcome",
    "ToolStatus",
    "ToolchainDetector",
    "ToolchainMissingError",
    "ToolchainStatus",
    "host_platform",
    "main",
    "preset_id",
]
