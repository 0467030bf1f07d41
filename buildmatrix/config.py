"""Layered configuration for the buildmatrix CLI."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, List, Mapping
import logging
import os

from core.config_loader import (
    ConfigFileError,
    discover_layers,
    merge_layers,
    normalize_string_list,
    split_path_list,
)

from .environment import DEFAULT_ENVIRONMENT_FILE
from .errors import ConfigurationError
from .toolchains import DEFAULT_PROBE_TIMEOUT, VCPKG, VCPKG_MARKER, VCPKG_URL, ToolRegistry

logger = logging.getLogger(__name__)

CONFIG_DIR_VARIABLE = "BUILDMATRIX_CONFIG_DIR"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
_SECTIONS = {"global", "paths", "package_manager"}


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name, {}) if isinstance(data, Mapping) else {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"[{name}] must be a table")
    return value


@dataclass(slots=True)
class GlobalConfig:
    log_level: str = "info"
    log_file: str | None = None
    jobs: int = 1
    probe_timeout: float = DEFAULT_PROBE_TIMEOUT

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "GlobalConfig":
        global_section = _section(data, "global")
        try:
            jobs = int(global_section.get("jobs", 1))
            probe_timeout = float(global_section.get("probe_timeout", DEFAULT_PROBE_TIMEOUT))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid [global] value: {exc}") from exc
        return cls(
            log_level=str(global_section.get("log_level", "info")).lower(),
            log_file=str(global_section.get("log_file")) if global_section.get("log_file") else None,
            jobs=jobs,
            probe_timeout=probe_timeout,
        )


@dataclass(slots=True)
class PathSettings:
    presets_file: str = "CMakePresets.json"
    output_root: str = "out"
    build_root: str = "out/build"
    install_root: str = "out/install"
    environment_file: str = DEFAULT_ENVIRONMENT_FILE

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PathSettings":
        paths = _section(data, "paths")
        defaults = cls()
        return cls(
            presets_file=str(paths.get("presets_file", defaults.presets_file)),
            output_root=str(paths.get("output_root", defaults.output_root)),
            build_root=str(paths.get("build_root", defaults.build_root)),
            install_root=str(paths.get("install_root", defaults.install_root)),
            environment_file=str(paths.get("environment_file", defaults.environment_file)),
        )

    def resolve(self, source_dir: Path, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else source_dir / path


@dataclass(slots=True)
class PackageManagerSettings:
    root_variable: str = "VCPKG_ROOT"
    marker: str = VCPKG_MARKER
    search_paths: List[str] = field(default_factory=list)
    url: str = VCPKG_URL
    packages: List[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PackageManagerSettings":
        section = _section(data, "package_manager")
        try:
            search_paths = normalize_string_list(section.get("search_paths"), field_name="package_manager.search_paths")
            packages = normalize_string_list(section.get("packages"), field_name="package_manager.packages")
        except TypeError as exc:
            raise ConfigurationError(str(exc)) from exc
        return cls(
            root_variable=str(section.get("root_variable", "VCPKG_ROOT")),
            marker=str(section.get("marker", VCPKG_MARKER)),
            search_paths=search_paths,
            url=str(section.get("url", VCPKG_URL)),
            packages=packages,
        )

    def as_tool_overrides(self) -> Mapping[str, Any]:
        overrides: dict[str, Any] = {"override_variable": self.root_variable, "marker": self.marker}
        if self.search_paths:
            overrides["search_paths"] = list(self.search_paths)
        return {"tools": {VCPKG: overrides}}


@dataclass(slots=True)
class BuildMatrixConfig:
    root: Path
    config_dirs: tuple[Path, ...] = ()
    global_config: GlobalConfig = field(default_factory=GlobalConfig)
    paths: PathSettings = field(default_factory=PathSettings)
    package_manager: PackageManagerSettings = field(default_factory=PackageManagerSettings)
    toolchains: ToolRegistry = field(default_factory=ToolRegistry.with_builtins)
    raw: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_directories(cls, root: Path, directories: Iterable[Path]) -> "BuildMatrixConfig":
        try:
            layers, missing_dirs = discover_layers(root, directories)
            for missing in missing_dirs:
                logger.debug("Configuration directory %s does not exist", missing)
            merged = merge_layers(layers, "config")
            toolchain_layers = [data for data in (layer.load("toolchains") for layer in layers) if data is not None]
        except (OSError, ConfigFileError) as exc:
            raise ConfigurationError(f"Failed to load configuration: {exc}") from exc

        package_manager = PackageManagerSettings.from_mapping(merged)
        registry = ToolRegistry.with_builtins()
        try:
            registry.merge_from_mapping(package_manager.as_tool_overrides())
            for layer in toolchain_layers:
                registry.merge_from_mapping(layer)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid toolchain configuration: {exc}") from exc

        return cls(
            root=root,
            config_dirs=tuple(layer.directory for layer in layers),
            global_config=GlobalConfig.from_mapping(merged),
            paths=PathSettings.from_mapping(merged),
            package_manager=package_manager,
            toolchains=registry,
            raw=merged,
        )

    def validate(self) -> List[str]:
        errors: List[str] = []
        unknown = sorted(str(key) for key in self.raw if str(key) not in _SECTIONS)
        if unknown:
            errors.append(f"Unknown configuration sections: {', '.join(unknown)}")
        if self.global_config.log_level not in LOG_LEVELS:
            errors.append(
                f"global.log_level '{self.global_config.log_level}' is invalid (allowed: {', '.join(LOG_LEVELS)})"
            )
        if self.global_config.jobs < 1:
            errors.append("global.jobs must be at least 1")
        if self.global_config.probe_timeout <= 0:
            errors.append("global.probe_timeout must be positive")
        errors.extend(self.toolchains.validate())
        return errors


def resolve_config_directories(workspace: Path, cli_values: Iterable[str], env: Mapping[str, str] | None = None) -> List[Path]:
    """Configuration directories in increasing precedence order."""

    env = os.environ if env is None else env
    config_dirs: List[Path] = [workspace / "config"]
    env_value = env.get(CONFIG_DIR_VARIABLE)
    entries = split_path_list([env_value] if env_value else [])
    entries.extend(split_path_list(cli_values))
    for entry in entries:
        path = Path(entry).expanduser()
        config_dirs.append(path if path.is_absolute() else workspace / path)
    return config_dirs


__all__ = [
    "BuildMatrixConfig",
    "CONFIG_DIR_VARIABLE",
    "GlobalConfig",
    "LOG_LEVELS",
    "PackageManagerSettings",
    "PathSettings",
    "resolve_config_directories",
]
