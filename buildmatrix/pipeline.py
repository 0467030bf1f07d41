"""Per-job stage state machine driving cmake and ctest."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import logging
import shutil
import time

from core.command_runner import CommandError, CommandRunner

from .dimensions import BuildDimensions, Compiler
from .errors import BuildMatrixError, PackageManagerMissingError, StageFailure, ToolchainMissingError
from .presets import ResolvedPreset
from .toolchains import CMAKE, VCPKG, ToolRegistry, ToolchainStatus, compiler_tool

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    CONFIGURE = "configure"
    BUILD = "build"
    INSTALL = "install"
    TEST = "test"


STAGE_ORDER = (Stage.CONFIGURE, Stage.BUILD, Stage.INSTALL, Stage.TEST)
DEFAULT_STAGES = frozenset({Stage.CONFIGURE, Stage.BUILD})


class StageOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class JobState(str, Enum):
    PENDING = "pending"
    CONFIGURING = "configuring"
    BUILDING = "building"
    INSTALLING = "installing"
    TESTING = "testing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


_RUNNING_STATES = {
    Stage.CONFIGURE: JobState.CONFIGURING,
    Stage.BUILD: JobState.BUILDING,
    Stage.INSTALL: JobState.INSTALLING,
    Stage.TEST: JobState.TESTING,
}


def stages_for(*, install: bool = False, test: bool = False) -> frozenset[Stage]:
    stages = set(DEFAULT_STAGES)
    if install:
        stages.add(Stage.INSTALL)
    if test:
        stages.add(Stage.TEST)
    return frozenset(stages)


@dataclass(frozen=True, slots=True)
class BuildJob:
    preset: ResolvedPreset
    stages: frozenset[Stage] = DEFAULT_STAGES

    @property
    def preset_id(self) -> str:
        return self.preset.preset_id

    @property
    def dimensions(self) -> BuildDimensions:
        return self.preset.dimensions

    def ordered_stages(self) -> List[Stage]:
        return [stage for stage in STAGE_ORDER if stage in self.stages]


@dataclass(slots=True)
class StageRecord:
    stage: Stage
    outcome: StageOutcome
    returncode: int | None = None
    duration: float | None = None
    message: str | None = None


@dataclass(slots=True)
class JobArtifacts:
    build_dir: Path
    install_dir: Path | None = None
    libraries: List[str] = field(default_factory=list)
    executables: List[str] = field(default_factory=list)

    @property
    def lib_dir(self) -> Path:
        return self.build_dir / "lib"

    @property
    def bin_dir(self) -> Path:
        return self.build_dir / "bin"

    @classmethod
    def collect(cls, build_dir: Path, install_dir: Path | None = None) -> "JobArtifacts":
        artifacts = cls(build_dir=build_dir, install_dir=install_dir)
        artifacts.libraries = _list_files(artifacts.lib_dir)
        artifacts.executables = _list_files(artifacts.bin_dir)
        return artifacts


def _list_files(directory: Path) -> List[str]:
    if not directory.is_dir():
        return []
    return sorted(entry.name for entry in directory.iterdir() if entry.is_file())


@dataclass(slots=True)
class JobResult:
    preset_id: str
    stages: List[StageRecord] = field(default_factory=list)
    state: JobState = JobState.PENDING
    error: BuildMatrixError | None = None
    tests_failed: bool = False
    artifacts: JobArtifacts | None = None

    @property
    def overall_success(self) -> bool:
        return self.state is JobState.DONE

    @property
    def cancelled(self) -> bool:
        return self.state is JobState.CANCELLED

    def outcome(self, stage: Stage) -> StageOutcome | None:
        for record in self.stages:
            if record.stage is stage:
                return record.outcome
        return None

    @property
    def failed_stage(self) -> Stage | None:
        for record in self.stages:
            if record.outcome in {StageOutcome.FAILURE, StageOutcome.CANCELLED} and record.stage is not Stage.TEST:
                return record.stage
        return None

    def record(self, stage: Stage, outcome: StageOutcome, **kwargs) -> StageRecord:
        entry = StageRecord(stage=stage, outcome=outcome, **kwargs)
        self.stages.append(entry)
        return entry

    def skip_remaining(self, stages: Iterable[Stage]) -> None:
        for stage in stages:
            self.record(stage, StageOutcome.SKIPPED)

    @classmethod
    def blocked(cls, job: BuildJob, error: ToolchainMissingError) -> "JobResult":
        """Result for a job that never started because a mandatory tool is missing."""

        result = cls(preset_id=job.preset_id, state=JobState.FAILED, error=error)
        result.skip_remaining(job.ordered_stages())
        return result


class CommandPipeline:
    """Run configure, build, install and test for one job.

    Jobs only ever touch ``<build_root>/<preset>`` and ``<install_root>/<preset>``
    so pipelines for different presets may run concurrently.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        source_dir: Path,
        build_root: Path,
        install_root: Path,
        registry: ToolRegistry | None = None,
        verbose: bool = False,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        self._runner = runner
        self._source_dir = source_dir
        self._build_root = build_root
        self._install_root = install_root
        self._registry = registry or ToolRegistry.with_builtins()
        self._verbose = verbose
        self._environment = dict(environment or {})

    def build_dir(self, job: BuildJob) -> Path:
        return self._build_root / job.preset_id

    def install_dir(self, job: BuildJob) -> Path:
        return self._install_root / job.preset_id

    def _guidance(self, tool: str, host: str) -> str | None:
        definition = self._registry.get(tool)
        return definition.guidance_for(host) if definition else None

    def check_tools(self, job: BuildJob, availability: ToolchainStatus) -> None:
        """Raise :class:`ToolchainMissingError` for the first mandatory tool that is absent."""

        for tool in job.preset.required_tools:
            if availability.is_available(tool):
                continue
            status = availability.get(tool)
            raise ToolchainMissingError(
                tool,
                preset=job.preset_id,
                guidance=self._guidance(tool, availability.host),
                detail=status.detail,
            )

    def stage_environment(self, job: BuildJob, availability: ToolchainStatus) -> Dict[str, str]:
        env = dict(self._environment)
        if availability.is_available(VCPKG):
            env.update(availability.environment)
        if job.dimensions.compiler is not Compiler.DEFAULT:
            compiler = availability.get(compiler_tool(job.dimensions))
            definition = self._registry.get(compiler.name)
            if compiler.found and compiler.path and definition and definition.env_variable:
                env[definition.env_variable] = compiler.path
        return env

    def command(self, stage: Stage, job: BuildJob) -> List[str]:
        preset = job.preset_id
        if stage is Stage.CONFIGURE:
            cmd = [CMAKE, "--preset", preset]
            if self._verbose:
                cmd.append("--log-level=VERBOSE")
            return cmd
        if stage is Stage.BUILD:
            if job.preset.has_build_preset:
                cmd = [CMAKE, "--build", "--preset", preset]
            else:
                cmd = [CMAKE, "--build", str(self.build_dir(job))]
            if self._verbose:
                cmd.append("--verbose")
            return cmd
        if stage is Stage.INSTALL:
            return [CMAKE, "--install", str(self.build_dir(job)), "--prefix", str(self.install_dir(job))]
        if job.preset.has_test_preset:
            cmd = ["ctest", "--preset", preset]
        else:
            cmd = ["ctest", "--test-dir", str(self.build_dir(job))]
        cmd.append("--output-on-failure")
        if self._verbose:
            cmd.append("--verbose")
        return cmd

    def plan(self, job: BuildJob) -> List[tuple[Stage, List[str]]]:
        return [(stage, self.command(stage, job)) for stage in job.ordered_stages()]

    def run(self, job: BuildJob, availability: ToolchainStatus) -> JobResult:
        self.check_tools(job, availability)

        result = JobResult(preset_id=job.preset_id)
        env = self.stage_environment(job, availability)
        stages = job.ordered_stages()
        logger.info("Starting %s %s", job.preset_id, job.dimensions.describe())

        for index, stage in enumerate(stages):
            remaining = stages[index + 1 :]
            result.state = _RUNNING_STATES[stage]

            if stage is Stage.CONFIGURE and job.preset.needs_package_manager and not availability.is_available(VCPKG):
                error = PackageManagerMissingError(
                    VCPKG,
                    preset=job.preset_id,
                    guidance=self._guidance(VCPKG, availability.host),
                    detail=availability.get(VCPKG).detail,
                )
                logger.error("%s", error)
                result.record(stage, StageOutcome.FAILURE, message=str(error))
                result.skip_remaining(remaining)
                result.error = error
                result.state = JobState.FAILED
                return result

            command = self.command(stage, job)
            started = time.monotonic()
            try:
                self._runner.run(
                    command,
                    cwd=self._source_dir,
                    env=env,
                    note=f"{stage.value.capitalize()} {job.preset_id}",
                    stream=True,
                )
            except KeyboardInterrupt:
                logger.warning("%s cancelled during %s", job.preset_id, stage.value)
                result.record(stage, StageOutcome.CANCELLED, duration=time.monotonic() - started)
                result.skip_remaining(remaining)
                result.state = JobState.CANCELLED
                return result
            except CommandError as exc:
                failure = StageFailure.from_command_error(stage, job.preset_id, exc)
                duration = time.monotonic() - started
                if stage is Stage.TEST:
                    logger.warning("Some tests failed for %s", job.preset_id)
                    result.record(
                        stage,
                        StageOutcome.FAILURE,
                        returncode=failure.returncode,
                        duration=duration,
                        message="tests failed",
                    )
                    result.tests_failed = True
                    result.error = failure
                    continue
                logger.error("%s", failure)
                result.record(stage, StageOutcome.FAILURE, returncode=failure.returncode, duration=duration)
                result.skip_remaining(remaining)
                result.error = failure
                result.state = JobState.FAILED
                return result

            result.record(stage, StageOutcome.SUCCESS, returncode=0, duration=time.monotonic() - started)
            logger.info("%s %s completed", job.preset_id, stage.value)

        result.state = JobState.DONE
        install_dir = self.install_dir(job) if Stage.INSTALL in job.stages else None
        result.artifacts = JobArtifacts.collect(self.build_dir(job), install_dir)
        return result


def clean_output_root(output_root: Path, *, dry_run: bool = False) -> bool:
    """Remove the shared output root; this deletes the artifacts of every preset."""

    if not output_root.exists():
        return False
    logger.warning("Cleaning %s removes the build and install trees of every preset", output_root)
    if dry_run:
        return True
    shutil.rmtree(output_root)
    return True


def format_stages(records: Sequence[StageRecord]) -> str:
    return ", ".join(f"{record.stage.value}={record.outcome.value}" for record in records)


__all__ = [
    "BuildJob",
    "CommandPipeline",
    "DEFAULT_STAGES",
    "JobArtifacts",
    "JobResult",
    "JobState",
    "STAGE_ORDER",
    "Stage",
    "StageOutcome",
    "StageRecord",
    "clean_output_root",
    "format_stages",
    "stages_for",
]
