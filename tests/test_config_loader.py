from __future__ import annotations

from pathlib import Path
import os
import tempfile
import textwrap
import unittest

from core.config_loader import (
    ConfigFileError,
    ConfigLayer,
    discover_layers,
    load_config_file,
    merge_layers,
    merge_mappings,
    normalize_string_list,
    split_path_list,
)

from buildmatrix.config import BuildMatrixConfig, CONFIG_DIR_VARIABLE, resolve_config_directories
from buildmatrix.errors import ConfigurationError


class SharedLoaderTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_loads_toml_json_and_yaml(self) -> None:
        (self.root / "a.toml").write_text('[global]\njobs = 2\n', encoding="utf-8")
        (self.root / "b.json").write_text('{"global": {"jobs": 3}}', encoding="utf-8")
        (self.root / "c.yaml").write_text("global:\n  jobs: 4\n", encoding="utf-8")
        (self.root / "empty.yml").write_text("", encoding="utf-8")
        self.assertEqual(load_config_file(self.root / "a.toml")["global"]["jobs"], 2)
        self.assertEqual(load_config_file(self.root / "b.json")["global"]["jobs"], 3)
        self.assertEqual(load_config_file(self.root / "c.yaml")["global"]["jobs"], 4)
        self.assertEqual(load_config_file(self.root / "empty.yml"), {})

    def test_rejects_unsupported_extension_non_mapping_and_bad_syntax(self) -> None:
        (self.root / "config.ini").write_text("[global]\n", encoding="utf-8")
        (self.root / "list.json").write_text("[1, 2]", encoding="utf-8")
        (self.root / "broken.yaml").write_text("global: [unclosed\n", encoding="utf-8")
        for name, reason in (
            ("config.ini", "unsupported extension"),
            ("list.json", "must contain a mapping"),
            ("broken.yaml", "cannot be parsed"),
        ):
            with self.subTest(name=name):
                with self.assertRaises(ConfigFileError) as ctx:
                    load_config_file(self.root / name)
                self.assertEqual(ctx.exception.path, self.root / name)
                self.assertIn(reason, ctx.exception.reason)

    def test_duplicate_stems_are_rejected(self) -> None:
        (self.root / "config.toml").write_text("", encoding="utf-8")
        (self.root / "config.json").write_text("{}", encoding="utf-8")
        with self.assertRaises(ConfigFileError) as ctx:
            ConfigLayer.scan(self.root)
        self.assertIn("only one format per configuration entry", str(ctx.exception))

    def test_layer_ignores_unrelated_files(self) -> None:
        (self.root / "config.toml").write_text("", encoding="utf-8")
        (self.root / "notes.txt").write_text("", encoding="utf-8")
        (self.root / "nested.json").mkdir()
        layer = ConfigLayer.scan(self.root)
        self.assertEqual(layer.files, {"config": self.root / "config.toml"})
        self.assertIsNone(layer.load("toolchains"))

    def test_merge_mappings_is_deep(self) -> None:
        merged = merge_mappings(
            {"global": {"jobs": 1, "log_level": "info"}, "paths": {"output_root": "out"}},
            {"global": {"jobs": 4}},
        )
        self.assertEqual(merged, {"global": {"jobs": 4, "log_level": "info"}, "paths": {"output_root": "out"}})

    def test_normalize_string_list(self) -> None:
        self.assertEqual(normalize_string_list(" eigen3 "), ["eigen3"])
        self.assertEqual(normalize_string_list(["a", " ", "b"]), ["a", "b"])
        with self.assertRaises(TypeError):
            normalize_string_list([1], field_name="packages")
        with self.assertRaises(TypeError):
            normalize_string_list(3)

    def test_split_path_list(self) -> None:
        joined = os.pathsep.join(["one", " two ", ""])
        self.assertEqual(split_path_list([joined, "", "three"]), ["one", "two", "three"])

    def test_discover_layers_keeps_last_occurrence(self) -> None:
        first = self.root / "first"
        second = self.root / "second"
        first.mkdir()
        second.mkdir()
        (first / "config.toml").write_text('[global]\njobs = 2\nlog_level = "debug"\n', encoding="utf-8")
        (second / "config.yaml").write_text("global:\n  jobs: 5\n", encoding="utf-8")

        layers, missing = discover_layers(self.root, [first, Path("missing"), second, first])

        self.assertEqual([layer.directory for layer in layers], [second, first])
        self.assertEqual(missing, [(self.root / "missing").resolve()])
        self.assertEqual(merge_layers(layers, "config"), {"global": {"jobs": 2, "log_level": "debug"}})


class BuildMatrixConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.config_dir = self.root / "config"
        self.config_dir.mkdir()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_defaults_without_configuration(self) -> None:
        config = BuildMatrixConfig.from_directories(self.root, [self.root / "nowhere"])
        self.assertEqual(config.config_dirs, ())
        self.assertEqual(config.global_config.log_level, "info")
        self.assertEqual(config.global_config.jobs, 1)
        self.assertEqual(config.global_config.probe_timeout, 5.0)
        self.assertEqual(config.paths.presets_file, "CMakePresets.json")
        self.assertEqual(config.paths.build_root, "out/build")
        self.assertEqual(config.paths.environment_file, ".buildmatrix.env")
        self.assertEqual(config.package_manager.root_variable, "VCPKG_ROOT")
        self.assertEqual(config.validate(), [])

    def test_later_directories_override_earlier(self) -> None:
        override_dir = self.root / "override"
        override_dir.mkdir()
        (self.config_dir / "config.toml").write_text(
            textwrap.dedent(
                """
                [global]
                log_level = "warning"
                jobs = 2

                [paths]
                output_root = "build-out"
                """
            ),
            encoding="utf-8",
        )
        (override_dir / "config.yaml").write_text(
            textwrap.dedent(
                """
                global:
                  jobs: 6
                package_manager:
                  search_paths: ["/srv/vcpkg"]
                  packages: [eigen3, spectra]
                """
            ),
            encoding="utf-8",
        )
        config = BuildMatrixConfig.from_directories(self.root, [self.config_dir, override_dir])

        self.assertEqual(config.global_config.log_level, "warning")
        self.assertEqual(config.global_config.jobs, 6)
        self.assertEqual(config.paths.output_root, "build-out")
        self.assertEqual(config.package_manager.packages, ["eigen3", "spectra"])
        vcpkg = config.toolchains.get("vcpkg")
        assert vcpkg is not None
        self.assertEqual(vcpkg.search_paths, ("/srv/vcpkg",))

    def test_toolchain_overrides(self) -> None:
        (self.config_dir / "toolchains.toml").write_text(
            textwrap.dedent(
                """
                [tools.ninja]
                executables = ["ninja-custom"]

                [tools.clang]
                guidance = "Use the LLVM toolset shipped with the SDK"
                """
            ),
            encoding="utf-8",
        )
        config = BuildMatrixConfig.from_directories(self.root, [self.config_dir])
        ninja = config.toolchains.get("ninja")
        clang = config.toolchains.get("clang")
        assert ninja is not None and clang is not None
        self.assertEqual(ninja.executables, ("ninja-custom",))
        self.assertEqual(ninja.kind, "backend")
        self.assertEqual(clang.guidance_for("linux"), "Install via: sudo apt-get install clang")
        self.assertEqual(clang.guidance_for("macos"), "Use the LLVM toolset shipped with the SDK")

    def test_invalid_values_are_configuration_errors(self) -> None:
        (self.config_dir / "config.toml").write_text('[global]\njobs = "many"\n', encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            BuildMatrixConfig.from_directories(self.root, [self.config_dir])

    def test_unparseable_file_is_configuration_error(self) -> None:
        (self.config_dir / "config.toml").write_text("[global\n", encoding="utf-8")
        with self.assertRaises(ConfigurationError):
            BuildMatrixConfig.from_directories(self.root, [self.config_dir])

    def test_validate_reports_problems(self) -> None:
        (self.config_dir / "config.toml").write_text(
            '[global]\nlog_level = "loud"\njobs = 0\n\n[extras]\nvalue = 1\n',
            encoding="utf-8",
        )
        config = BuildMatrixConfig.from_directories(self.root, [self.config_dir])
        errors = config.validate()
        self.assertEqual(len(errors), 3)
        self.assertIn("Unknown configuration sections: extras", errors[0])

    def test_resolve_config_directories_order(self) -> None:
        env = {CONFIG_DIR_VARIABLE: os.pathsep.join(["env-a", "/abs/env-b"])}
        directories = resolve_config_directories(self.root, ["cli"], env)
        self.assertEqual(
            directories,
            [self.root / "config", self.root / "env-a", Path("/abs/env-b"), self.root / "cli"],
        )


if __name__ == "__main__":  # pragma: no cover
    unittest.main()
