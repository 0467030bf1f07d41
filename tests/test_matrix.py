from __future__ import annotations

from pathlib import Path
from unittest.mock import patch
import tempfile
import unittest

from core.command_runner import RecordingCommandRunner, ScriptedResponse, SubprocessCommandRunner

from buildmatrix.dimensions import Architecture, Compiler, Platform
from buildmatrix.errors import ConfigurationError, ToolchainMissingError
from buildmatrix.matrix import (
    EXIT_CANCELLED,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    MatrixDriver,
    MatrixRequest,
    failed_stage_summary,
    platform_for_host,
)
from buildmatrix.pipeline import CommandPipeline, Stage, StageOutcome, stages_for
from buildmatrix.presets import PresetCatalog, PresetEntry, PresetResolver, preset_id
from buildmatrix.toolchains import ToolchainStatus, ToolStatus

DECLARED = [
    "x64-Debug",
    "x64-Release",
    "x86-Release",
    "x64-Debug-Linux",
    "x64-Release-Linux",
    "x64-Release-MinGW",
    "x86-Release-MinGW",
]


def _status(*found: str) -> ToolchainStatus:
    return ToolchainStatus(
        [ToolStatus(name=name, found=True, path=f"/usr/bin/{name}") for name in found],
        host="linux",
    )


class MatrixRequestTests(unittest.TestCase):
    def test_defaults_to_single_release_job(self) -> None:
        self.assertEqual([preset_id(dims) for dims in MatrixRequest().expand()], ["x64-Release"])

    def test_expansion_order_is_platform_configuration_architecture(self) -> None:
        request = MatrixRequest(platforms=["all"], configurations=["both"], architectures=["x64", "arm64"])
        self.assertEqual(
            [preset_id(dims) for dims in request.expand()],
            [
                "x64-Debug",
                "arm64-Debug",
                "x64-Release",
                "arm64-Release",
                "x64-Debug-Linux",
                "arm64-Debug-Linux",
                "x64-Release-Linux",
                "arm64-Release-Linux",
            ],
        )

    def test_wildcard_drops_invalid_combinations(self) -> None:
        request = MatrixRequest(architectures=["all"], compilers=[Compiler.MINGW.value])
        dims = request.expand()
        self.assertEqual([item.architecture for item in dims], [Architecture.X64, Architecture.X86])

    def test_explicit_invalid_combination_raises(self) -> None:
        with self.assertRaises(ConfigurationError):
            MatrixRequest(architectures=["arm64"], compilers=["mingw"]).expand()

    def test_unknown_selector_value_raises(self) -> None:
        with self.assertRaises(ConfigurationError):
            MatrixRequest(configurations=["profile"]).expand()

    def test_platform_for_host(self) -> None:
        self.assertIs(platform_for_host("windows"), Platform.NATIVE)
        self.assertIs(platform_for_host("wsl"), Platform.CROSS)
        self.assertIs(platform_for_host("linux"), Platform.CROSS)


class MatrixDriverTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.output_root = self.root / "out"
        self.runner = RecordingCommandRunner()
        catalog = PresetCatalog(
            [PresetEntry(name="base", hidden=True, generator="Ninja")]
            + [PresetEntry(name=name, inherits=("base",)) for name in DECLARED],
            build=[PresetEntry(name=name) for name in DECLARED],
        )
        self.resolver = PresetResolver(catalog)
        self.availability = _status("cmake", "ninja", "msvc", "gcc", "mingw")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _driver(self, *, jobs: int = 1) -> MatrixDriver:
        pipeline = CommandPipeline(
            self.runner,
            source_dir=self.root,
            build_root=self.output_root / "build",
            install_root=self.output_root / "install",
        )
        return MatrixDriver(self.resolver, pipeline, jobs=jobs, output_root=self.output_root)

    def _configured(self) -> list[str]:
        return [record.command[2] for record in self.runner.commands if record.command[:2] == ["cmake", "--preset"]]

    def test_both_configurations_run_even_when_first_fails(self) -> None:
        self.runner.respond(["cmake", "--build", "--preset", "x64-Debug"], ScriptedResponse(returncode=1))
        report = self._driver().run(MatrixRequest(configurations=["both"], architectures=["x64"]), stages_for(), self.availability)

        self.assertEqual([result.preset_id for result in report.results], ["x64-Debug", "x64-Release"])
        self.assertFalse(report.results[0].overall_success)
        self.assertTrue(report.results[1].overall_success)
        self.assertEqual(len(report.succeeded), 1)
        self.assertEqual(len(report.failed), 1)
        self.assertEqual(report.exit_code, EXIT_FAILURE)
        self.assertEqual(failed_stage_summary(report.results[0]), "x64-Debug: build failed")
        rendered = report.render()
        self.assertIn("Succeeded: 1  Failed: 1", rendered)
        self.assertIn("FAILED x64-Debug", rendered)

    def test_all_successful_run_exits_zero(self) -> None:
        report = self._driver().run(MatrixRequest(), stages_for(install=True), self.availability)
        self.assertEqual(report.exit_code, EXIT_SUCCESS)
        self.assertIn("Install directory:", report.render())

    def test_undeclared_preset_fails_before_any_process(self) -> None:
        request = MatrixRequest(architectures=["x64", "arm64"])
        with self.assertRaises(ConfigurationError):
            self._driver().run(request, stages_for(), self.availability)
        self.assertEqual(self.runner.commands, [])

    def test_missing_tool_blocks_only_affected_presets(self) -> None:
        availability = _status("cmake", "ninja", "msvc")
        request = MatrixRequest(platforms=["all"], architectures=["x64"])
        report = self._driver().run(request, stages_for(), availability)

        self.assertEqual([result.preset_id for result in report.results], ["x64-Release", "x64-Release-Linux"])
        self.assertTrue(report.results[0].overall_success)
        blocked = report.results[1]
        self.assertFalse(blocked.overall_success)
        self.assertIsInstance(blocked.error, ToolchainMissingError)
        self.assertEqual(blocked.outcome(Stage.CONFIGURE), StageOutcome.SKIPPED)
        self.assertEqual(self._configured(), ["x64-Release"])

    def test_wildcard_request_runs_only_valid_combinations(self) -> None:
        request = MatrixRequest(architectures=["x64", "x86"], compilers=["default", "mingw"])
        report = self._driver().run(request, stages_for(), self.availability)
        self.assertEqual(
            [result.preset_id for result in report.results],
            ["x64-Release", "x64-Release-MinGW", "x86-Release", "x86-Release-MinGW"],
        )

    def test_parallel_execution_keeps_expansion_order(self) -> None:
        request = MatrixRequest(configurations=["both"], architectures=["x64"], platforms=["all"])
        report = self._driver(jobs=3).run(request, stages_for(), self.availability)
        self.assertEqual(
            [result.preset_id for result in report.results],
            ["x64-Debug", "x64-Release", "x64-Debug-Linux", "x64-Release-Linux"],
        )
        self.assertEqual(sorted(self._configured()), sorted(DECLARED[:2] + DECLARED[3:5]))
        self.assertEqual(report.exit_code, EXIT_SUCCESS)

    def test_cancel_stops_remaining_jobs(self) -> None:
        self.runner.respond(["cmake", "--build", "--preset", "x64-Debug"], ScriptedResponse(raises=KeyboardInterrupt()))
        report = self._driver().run(MatrixRequest(configurations=["both"]), stages_for(), self.availability)

        self.assertTrue(report.cancelled)
        self.assertEqual([result.preset_id for result in report.results], ["x64-Debug"])
        self.assertEqual(self._configured(), ["x64-Debug"])
        self.assertEqual(report.exit_code, EXIT_CANCELLED)

    def test_parallel_run_reports_unlaunchable_commands(self) -> None:
        pipeline = CommandPipeline(
            SubprocessCommandRunner(),
            source_dir=self.root,
            build_root=self.output_root / "build",
            install_root=self.output_root / "install",
        )
        driver = MatrixDriver(self.resolver, pipeline, jobs=2, output_root=self.output_root)
        with patch("core.command_runner.subprocess.run", side_effect=PermissionError("permission denied")):
            report = driver.run(MatrixRequest(configurations=["both"]), stages_for(), self.availability)

        self.assertEqual([result.preset_id for result in report.results], ["x64-Debug", "x64-Release"])
        self.assertEqual(len(report.failed), 2)
        self.assertEqual(report.exit_code, EXIT_FAILURE)
        self.assertEqual(failed_stage_summary(report.results[0]), "x64-Debug: configure failed")
        self.assertIn("Succeeded: 0  Failed: 2", report.render())

    def test_clean_runs_once_before_jobs(self) -> None:
        stale = self.output_root / "build" / "x64-Release" / "stale.txt"
        stale.parent.mkdir(parents=True)
        stale.write_text("old", encoding="utf-8")
        with self.assertLogs("buildmatrix.pipeline", level="WARNING") as logs:
            self._driver().run(MatrixRequest(configurations=["both"]), stages_for(), self.availability, clean=True)
        self.assertFalse(stale.exists())
        self.assertEqual(len([line for line in logs.output if "every preset" in line]), 1)

    def test_rejects_invalid_job_count(self) -> None:
        with self.assertRaises(ConfigurationError):
            self._driver(jobs=0)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
