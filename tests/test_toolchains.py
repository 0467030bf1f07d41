from __future__ import annotations

from pathlib import Path
import tempfile
import unittest

from core.command_runner import RecordingCommandRunner, ScriptedResponse

from buildmatrix.dimensions import BuildDimensions
from buildmatrix.toolchains import (
    VCPKG_MARKER,
    VCPKG_URL,
    ToolDefinition,
    ToolRegistry,
    ToolchainDetector,
    ToolchainStatus,
    ToolStatus,
    compiler_tool,
    derive_environment,
    fetch_package_manager,
)


def _make_vcpkg_root(path: Path) -> Path:
    marker = path / VCPKG_MARKER
    marker.parent.mkdir(parents=True)
    marker.write_text("# toolchain\n", encoding="utf-8")
    return path


class ToolRegistryTests(unittest.TestCase):
    def test_builtins_are_valid(self) -> None:
        registry = ToolRegistry.with_builtins()
        self.assertEqual(registry.validate(), [])
        for name in ("cmake", "ninja", "vcpkg", "msvc", "gcc", "clang", "mingw", "icc", "icx"):
            self.assertIsNotNone(registry.get(name), name)

    def test_merge_keeps_unspecified_fields(self) -> None:
        registry = ToolRegistry.with_builtins()
        registry.merge_from_mapping({"tools": {"vcpkg": {"search_paths": ["/srv/vcpkg"]}}})
        definition = registry.get("vcpkg")
        assert definition is not None
        self.assertEqual(definition.search_paths, ("/srv/vcpkg",))
        self.assertEqual(definition.version_args, ("version",))
        self.assertEqual(definition.override_variable, "VCPKG_ROOT")
        self.assertEqual(definition.kind, "package-manager")

    def test_unknown_keys_are_rejected(self) -> None:
        with self.assertRaises(ValueError):
            ToolDefinition.from_mapping("ninja", {"executable": "ninja"})

    def test_validate_reports_bad_kind(self) -> None:
        registry = ToolRegistry.with_builtins()
        registry.merge_from_mapping({"tools": {"zig": {"kind": "linker", "executables": ["zig"]}}})
        errors = registry.validate()
        self.assertEqual(len(errors), 1)
        self.assertIn("zig", errors[0])

    def test_guidance_falls_back_from_wsl_to_linux(self) -> None:
        ninja = ToolRegistry.with_builtins().get("ninja")
        assert ninja is not None
        self.assertIn("apt-get install ninja-build", ninja.guidance_for("wsl") or "")
        self.assertIn("winget install Ninja-build.Ninja", ninja.guidance_for("windows") or "")
        self.assertIn("github.com/ninja-build/ninja/releases", ninja.guidance_for("macos") or "")


class CompilerToolTests(unittest.TestCase):
    def test_maps_dimensions_to_compiler_tool(self) -> None:
        self.assertEqual(compiler_tool(BuildDimensions()), "msvc")
        self.assertEqual(compiler_tool(BuildDimensions(platform="cross")), "gcc")
        self.assertEqual(compiler_tool(BuildDimensions(platform="cross", compiler="clang")), "clang")
        self.assertEqual(compiler_tool(BuildDimensions(compiler="icx")), "icx")


class ToolchainDetectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.registry = ToolRegistry.with_builtins()
        self.registry.merge_from_mapping({"tools": {"vcpkg": {"search_paths": [str(self.root / "known-vcpkg")]}}})
        self.runner = RecordingCommandRunner()
        self.executables = {"cmake": "/usr/bin/cmake", "ninja": "/usr/bin/ninja", "g++": "/usr/bin/g++"}

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _detector(self, env: dict[str, str] | None = None) -> ToolchainDetector:
        return ToolchainDetector(
            self.registry,
            runner=self.runner,
            env=env or {},
            host="linux",
            timeout=2.0,
            which=self.executables.get,
        )

    def test_detects_executables_and_versions(self) -> None:
        self.runner.respond(["/usr/bin/cmake", "--version"], ScriptedResponse(stdout="cmake version 3.28.1\n"))
        self.runner.respond(["/usr/bin/ninja", "--version"], ScriptedResponse(stdout="1.11.1\n"))

        status = self._detector().detect(["cmake", "ninja", "gcc", "clang"])

        self.assertEqual(status.names(), ["clang", "cmake", "gcc", "ninja"])
        self.assertEqual(status.get("cmake"), ToolStatus("cmake", True, "3.28.1", "/usr/bin/cmake", None, "path"))
        self.assertEqual(status.get("ninja").version, "1.11.1")
        self.assertTrue(status.is_available("gcc"))
        self.assertFalse(status.is_available("clang"))
        self.assertEqual(status.host, "linux")
        timeouts = {record.timeout for record in self.runner.commands}
        self.assertEqual(timeouts, {2.0})

    def test_missing_tool_only_marks_that_tool(self) -> None:
        del self.executables["ninja"]
        status = self._detector().detect(["cmake", "ninja"])
        self.assertTrue(status.is_available("cmake"))
        self.assertFalse(status.is_available("ninja"))

    def test_timed_out_probe_keeps_tool_without_version(self) -> None:
        self.runner.respond(["/usr/bin/cmake"], ScriptedResponse(returncode=-1, timed_out=True))
        status = self._detector().detect(["cmake"])
        self.assertTrue(status.get("cmake").found)
        self.assertIsNone(status.get("cmake").version)

    def test_unknown_tool_raises_key_error(self) -> None:
        with self.assertRaises(KeyError):
            self._detector().detect(["bazel"])

    def test_package_manager_override_wins(self) -> None:
        override = _make_vcpkg_root(self.root / "override")
        _make_vcpkg_root(self.root / "known-vcpkg")
        status = self._detector({"VCPKG_ROOT": str(override)}).detect(["vcpkg"])
        vcpkg = status.get("vcpkg")
        self.assertTrue(vcpkg.found)
        self.assertEqual(vcpkg.path, str(override))
        self.assertEqual(vcpkg.source, "environment")
        self.assertEqual(status.environment["VCPKG_ROOT"], str(override))
        self.assertEqual(status.environment["CMAKE_TOOLCHAIN_FILE"], str(override / VCPKG_MARKER))

    def test_invalid_override_does_not_fall_back(self) -> None:
        _make_vcpkg_root(self.root / "known-vcpkg")
        bogus = self.root / "bogus"
        bogus.mkdir()
        status = self._detector({"VCPKG_ROOT": str(bogus)}).detect(["vcpkg"])
        vcpkg = status.get("vcpkg")
        self.assertFalse(vcpkg.found)
        self.assertIn("Invalid VCPKG_ROOT", vcpkg.detail or "")
        self.assertEqual(dict(status.environment), {})

    def test_known_location_used_without_override(self) -> None:
        known = _make_vcpkg_root(self.root / "known-vcpkg")
        status = self._detector().detect(["vcpkg"])
        self.assertEqual(status.get("vcpkg").path, str(known))
        self.assertEqual(status.get("vcpkg").source, "known-path")

    def test_vcpkg_version_parsed_when_bootstrapped(self) -> None:
        known = _make_vcpkg_root(self.root / "known-vcpkg")
        (known / "vcpkg").write_text("", encoding="utf-8")
        self.runner.respond(
            [str(known / "vcpkg"), "version"],
            ScriptedResponse(stdout="vcpkg package management program version 2024-01-11-710a3116bbd6\n"),
        )
        status = self._detector().detect(["vcpkg"])
        self.assertEqual(status.get("vcpkg").version, "2024-01-11-710a3116bbd6")


class ToolchainStatusTests(unittest.TestCase):
    def test_is_read_only(self) -> None:
        status = ToolchainStatus([ToolStatus("cmake", True, path="/usr/bin/cmake")], host="linux")
        with self.assertRaises(TypeError):
            status.tools["ninja"] = ToolStatus("ninja", True)  # type: ignore[index]
        with self.assertRaises(AttributeError):
            status.extra = 1  # type: ignore[attr-defined]

    def test_unprobed_tool_is_missing(self) -> None:
        status = ToolchainStatus([], host="linux")
        self.assertFalse(status.get("cmake").found)
        self.assertEqual(status.get("cmake").detail, "not probed")

    def test_derive_environment_ignores_missing_package_manager(self) -> None:
        statuses = {"vcpkg": ToolStatus("vcpkg", False, detail="nope"), "cmake": ToolStatus("cmake", True, path="/x")}
        self.assertEqual(derive_environment(statuses), {})


class FetchPackageManagerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.destination = Path(self.temp_dir.name) / "vcpkg"

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_clones_bootstraps_and_installs(self) -> None:
        runner = RecordingCommandRunner()
        status = fetch_package_manager(self.destination, runner=runner, host="linux", packages=["eigen3", "spectra"])
        commands = [record.command for record in runner.commands]
        self.assertEqual(
            commands,
            [
                ["git", "clone", VCPKG_URL, str(self.destination)],
                [str(self.destination / "bootstrap-vcpkg.sh")],
                [str(self.destination / "vcpkg"), "install", "eigen3", "spectra"],
            ],
        )
        self.assertTrue(status.found)
        self.assertEqual(status.path, str(self.destination))

    def test_existing_checkout_skips_clone(self) -> None:
        _make_vcpkg_root(self.destination)
        (self.destination / "vcpkg").write_text("", encoding="utf-8")
        runner = RecordingCommandRunner()
        fetch_package_manager(self.destination, runner=runner, host="linux")
        self.assertEqual(runner.commands, [])

    def test_failure_is_reported_not_raised(self) -> None:
        runner = RecordingCommandRunner()
        runner.respond(["git", "clone"], ScriptedResponse(returncode=128, stderr="network unreachable"))
        status = fetch_package_manager(self.destination, runner=runner, host="linux")
        self.assertFalse(status.found)
        self.assertIn("128", status.detail or "")
        self.assertEqual(len(runner.commands), 1)


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
