"""Expand a matrix request into jobs, run them and aggregate the outcome."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Sequence
import logging
import threading

from .dimensions import (
    Architecture,
    BuildDimensions,
    Compiler,
    Configuration,
    Platform,
    expand_feature_selector,
    expand_selector,
)
from .errors import ConfigurationError, ToolchainMissingError
from .pipeline import BuildJob, CommandPipeline, JobResult, Stage, StageOutcome, clean_output_root
from .presets import PresetResolver
from .toolchains import ToolchainStatus

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_CONFIGURATION = 2
EXIT_CANCELLED = 130


def platform_for_host(host: str) -> Platform:
    """The platform an ``auto`` selector means on ``host``."""

    return Platform.NATIVE if host == "windows" else Platform.CROSS


def format_table(headers: Sequence[str], rows: Iterable[Mapping[str, str]]) -> List[str]:
    rows = list(rows)
    widths = {header: len(header) for header in headers}
    for row in rows:
        for header in headers:
            widths[header] = max(widths[header], len(row.get(header, "")))

    def _format(row: Mapping[str, str]) -> str:
        return "  ".join(row.get(header, "").ljust(widths[header]) for header in headers).rstrip()

    lines = [_format({header: header for header in headers})]
    lines.append("  ".join("-" * widths[header] for header in headers))
    lines.extend(_format(row) for row in rows)
    return lines


@dataclass(slots=True)
class MatrixRequest:
    """Per-dimension selectors; ``all``/``both`` in a selector expands to every value."""

    configurations: Sequence[str] = ()
    platforms: Sequence[str] = ()
    architectures: Sequence[str] = ()
    compilers: Sequence[str] = ()
    features: Sequence[str] = ()

    def expand(self) -> List[BuildDimensions]:
        platforms, platform_wild = expand_selector(Platform, self.platforms, default=Platform.NATIVE)
        configurations, config_wild = expand_selector(
            Configuration, self.configurations, default=Configuration.RELEASE
        )
        architectures, arch_wild = expand_selector(Architecture, self.architectures, default=Architecture.X64)
        compilers, compiler_wild = expand_selector(Compiler, self.compilers, default=Compiler.DEFAULT)
        feature_sets, feature_wild = expand_feature_selector(self.features)
        wildcard = platform_wild or config_wild or arch_wild or compiler_wild or feature_wild

        expanded: List[BuildDimensions] = []
        for platform in platforms:
            for configuration in configurations:
                for architecture in architectures:
                    for compiler in compilers:
                        for features in feature_sets:
                            dims = BuildDimensions(
                                configuration=configuration,
                                platform=platform,
                                architecture=architecture,
                                compiler=compiler,
                                features=features,
                            )
                            problems = dims.problems()
                            if not problems:
                                expanded.append(dims)
                            elif wildcard:
                                logger.info("Skipping %s: %s", dims.describe(), "; ".join(problems))
                            else:
                                dims.validate()
        if not expanded:
            raise ConfigurationError("The requested selectors do not produce any valid build combination")
        return expanded


@dataclass(slots=True)
class MatrixReport:
    results: List[JobResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> List[JobResult]:
        return [result for result in self.results if result.overall_success]

    @property
    def failed(self) -> List[JobResult]:
        return [result for result in self.results if not result.overall_success]

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed:
            return EXIT_FAILURE
        return EXIT_SUCCESS

    def rows(self) -> List[Dict[str, str]]:
        rows: List[Dict[str, str]] = []
        for result in self.results:
            row = {"Preset": result.preset_id, "Result": result.state.value}
            if result.overall_success and result.tests_failed:
                row["Result"] = "done (tests failed)"
            for stage in Stage:
                outcome = result.outcome(stage)
                row[stage.value.capitalize()] = outcome.value if outcome else "-"
            rows.append(row)
        return rows

    def render(self) -> str:
        headers = ["Preset", "Result", *(stage.value.capitalize() for stage in Stage)]
        lines = format_table(headers, self.rows())
        lines.append("")
        lines.append(f"Succeeded: {len(self.succeeded)}  Failed: {len(self.failed)}")
        if self.cancelled:
            lines.append("Cancelled: remaining jobs were not started")

        for result in self.failed:
            if result.error is not None:
                lines.append(f"FAILED {result.preset_id}: {result.error}")

        for result in self.succeeded:
            artifacts = result.artifacts
            if artifacts is None:
                continue
            lines.append(f"{result.preset_id}:")
            lines.append(f"  Build directory: {artifacts.build_dir}")
            lines.append(f"  Library directory: {artifacts.lib_dir}")
            for name in artifacts.libraries:
                lines.append(f"    {name}")
            lines.append(f"  Executable directory: {artifacts.bin_dir}")
            for name in artifacts.executables:
                lines.append(f"    {name}")
            if artifacts.install_dir is not None:
                lines.append(f"  Install directory: {artifacts.install_dir}")
        return "\n".join(lines)


class MatrixDriver:
    """Resolve every requested combination up front, then run the jobs."""

    def __init__(
        self,
        resolver: PresetResolver,
        pipeline: CommandPipeline,
        *,
        jobs: int = 1,
        output_root: Path | None = None,
        dry_run: bool = False,
    ) -> None:
        if jobs < 1:
            raise ConfigurationError(f"jobs must be at least 1, got {jobs}")
        self._resolver = resolver
        self._pipeline = pipeline
        self._jobs = jobs
        self._output_root = output_root
        self._dry_run = dry_run
        self._cancel = threading.Event()

    def plan(
        self,
        request: MatrixRequest,
        stages: Iterable[Stage],
        availability: ToolchainStatus | None = None,
    ) -> List[BuildJob]:
        stage_set = frozenset(stages)
        return [
            BuildJob(preset=self._resolver.resolve(dims, availability), stages=stage_set)
            for dims in request.expand()
        ]

    def run(
        self,
        request: MatrixRequest,
        stages: Iterable[Stage],
        availability: ToolchainStatus,
        *,
        clean: bool = False,
    ) -> MatrixReport:
        jobs = self.plan(request, stages, availability)
        logger.info("Running %d job(s): %s", len(jobs), ", ".join(job.preset_id for job in jobs))

        if clean and self._output_root is not None:
            clean_output_root(self._output_root, dry_run=self._dry_run)

        self._cancel.clear()
        if self._jobs == 1 or len(jobs) == 1:
            return self._run_sequential(jobs, availability)
        return self._run_parallel(jobs, availability)

    def _run_job(self, job: BuildJob, availability: ToolchainStatus) -> JobResult | None:
        if self._cancel.is_set():
            return None
        try:
            result = self._pipeline.run(job, availability)
        except ToolchainMissingError as exc:
            logger.error("%s", exc)
            return JobResult.blocked(job, exc)
        if result.cancelled:
            self._cancel.set()
        return result

    def _run_sequential(self, jobs: Sequence[BuildJob], availability: ToolchainStatus) -> MatrixReport:
        report = MatrixReport()
        try:
            for job in jobs:
                result = self._run_job(job, availability)
                if result is None:
                    break
                report.results.append(result)
        except KeyboardInterrupt:
            logger.warning("Interrupted; remaining jobs will not run")
            self._cancel.set()
        report.cancelled = self._cancel.is_set()
        return report

    def _run_parallel(self, jobs: Sequence[BuildJob], availability: ToolchainStatus) -> MatrixReport:
        collected: Dict[int, JobResult] = {}
        executor = ThreadPoolExecutor(max_workers=self._jobs)
        try:
            futures = {executor.submit(self._run_job, job, availability): index for index, job in enumerate(jobs)}
            for future in as_completed(futures):
                result = future.result()
                if result is not None:
                    collected[futures[future]] = result
        except KeyboardInterrupt:
            logger.warning("Interrupted; remaining jobs will not run")
            self._cancel.set()
            executor.shutdown(wait=True, cancel_futures=True)
        finally:
            executor.shutdown(wait=True)

        report = MatrixReport(results=[collected[index] for index in sorted(collected)])
        report.cancelled = self._cancel.is_set()
        return report


def failed_stage_summary(result: JobResult) -> str | None:
    stage = result.failed_stage
    if stage is None:
        return None
    outcome = result.outcome(stage)
    verb = "cancelled" if outcome is StageOutcome.CANCELLED else "failed"
    return f"{result.preset_id}: {stage.value} {verb}"


__all__ = [
    "EXIT_CANCELLED",
    "EXIT_CONFIGURATION",
    "EXIT_FAILURE",
    "EXIT_SUCCESS",
    "MatrixDriver",
    "MatrixReport",
    "MatrixRequest",
    "failed_stage_summary",
    "format_table",
    "platform_for_host",
]
