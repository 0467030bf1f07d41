"""Toolchain definitions, host probing and the resulting immutable status."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import logging
import os
import re
import shutil

from core.command_runner import CommandError, CommandRunner, SubprocessCommandRunner

from .dimensions import BuildDimensions, Compiler, Platform

logger = logging.getLogger(__name__)

CMAKE = "cmake"
NINJA = "ninja"
VCPKG = "vcpkg"

KIND_BUILD_TOOL = "build-tool"
KIND_BACKEND = "backend"
KIND_COMPILER = "compiler"
KIND_PACKAGE_MANAGER = "package-manager"
_KINDS = {KIND_BUILD_TOOL, KIND_BACKEND, KIND_COMPILER, KIND_PACKAGE_MANAGER}

DEFAULT_PROBE_TIMEOUT = 5.0
VCPKG_MARKER = "scripts/buildsystems/vcpkg.cmake"
VCPKG_URL = "https://github.com/microsoft/vcpkg.git"

Which = Callable[[str], "str | None"]


def _to_str_dict(mapping: Mapping[str, Any]) -> Dict[str, str]:
    return {str(key): str(value) for key, value in mapping.items()}


def _to_str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value.strip(),) if value.strip() else ()
    return tuple(str(item).strip() for item in value if str(item).strip())


@dataclass(frozen=True, slots=True)
class ToolStatus:
    name: str
    found: bool
    version: str | None = None
    path: str | None = None
    detail: str | None = None
    source: str | None = None

    @classmethod
    def missing(cls, name: str, detail: str | None = None) -> "ToolStatus":
        return cls(name=name, found=False, detail=detail)


class ToolchainStatus:
    """Read-only snapshot of which tools were found on the host.

    Produced fresh by :class:`ToolchainDetector` (or loaded from the
    environment artifact) and passed explicitly to the resolver and pipeline.
    """

    __slots__ = ("_tools", "_host", "_environment")

    def __init__(
        self,
        tools: Mapping[str, ToolStatus] | Iterable[ToolStatus],
        *,
        host: str,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        if isinstance(tools, Mapping):
            items = dict(tools)
        else:
            items = {status.name: status for status in tools}
        self._tools = MappingProxyType(items)
        self._host = host
        self._environment = MappingProxyType(dict(environment or {}))

    @property
    def host(self) -> str:
        return self._host

    @property
    def tools(self) -> Mapping[str, ToolStatus]:
        return self._tools

    @property
    def environment(self) -> Mapping[str, str]:
        """Variables derived from detection (e.g. ``VCPKG_ROOT``) for the configure stage."""

        return self._environment

    def get(self, name: str) -> ToolStatus:
        return self._tools.get(name) or ToolStatus.missing(name, "not probed")

    def is_available(self, name: str) -> bool:
        status = self._tools.get(name)
        return bool(status and status.found)

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ToolchainStatus):
            return NotImplemented
        return (
            dict(self._tools) == dict(other._tools)
            and self._host == other._host
            and dict(self._environment) == dict(other._environment)
        )

    def __repr__(self) -> str:
        found = ", ".join(name for name in self.names() if self.is_available(name)) or "<none>"
        return f"ToolchainStatus(host={self._host!r}, found=[{found}])"


@dataclass(slots=True)
class Located:
    """Outcome of a provider lookup: a path, or a terminal reason the tool is unusable."""

    path: Path | None
    source: str
    detail: str | None = None


class ToolProvider:
    """One link in a tool's search chain; ``locate`` returns ``None`` to defer to the next."""

    label = "provider"

    def locate(self, definition: "ToolDefinition", *, env: Mapping[str, str], which: Which) -> Located | None:
        raise NotImplementedError


class EnvironmentOverrideProvider(ToolProvider):
    """Use the directory named by an environment variable; it wins whenever set."""

    label = "environment"

    def __init__(self, variable: str, marker: str | None) -> None:
        self.variable = variable
        self.marker = marker

    def locate(self, definition: "ToolDefinition", *, env: Mapping[str, str], which: Which) -> Located | None:
        value = env.get(self.variable, "").strip()
        if not value:
            return None
        root = Path(value).expanduser()
        if self.marker and not (root / self.marker).is_file():
            return Located(
                path=None,
                source=self.label,
                detail=f"Invalid {self.variable}: {root} (missing {self.marker})",
            )
        return Located(path=root, source=self.label)


class KnownLocationProvider(ToolProvider):
    """Check a fixed list of well-known install roots for a marker file."""

    label = "known-path"

    def __init__(self, paths: Sequence[str], marker: str | None) -> None:
        self.paths = tuple(paths)
        self.marker = marker

    def locate(self, definition: "ToolDefinition", *, env: Mapping[str, str], which: Which) -> Located | None:
        for raw in self.paths:
            root = Path(os.path.expandvars(raw)).expanduser()
            if self.marker:
                if (root / self.marker).is_file():
                    return Located(path=root, source=self.label)
            elif root.exists():
                return Located(path=root, source=self.label)
        return None


class ExecutableSearchProvider(ToolProvider):
    """Search ``PATH`` for the first matching executable name."""

    label = "path"

    def __init__(self, names: Sequence[str], *, root_marker: str | None = None) -> None:
        self.names = tuple(names)
        self.root_marker = root_marker

    def locate(self, definition: "ToolDefinition", *, env: Mapping[str, str], which: Which) -> Located | None:
        for name in self.names:
            found = which(name)
            if not found:
                continue
            path = Path(found)
            if self.root_marker is None:
                return Located(path=path, source=self.label)
            root = path.resolve().parent
            if (root / self.root_marker).is_file():
                return Located(path=root, source=self.label)
        return None


@dataclass(slots=True)
class ToolDefinition:
    name: str
    kind: str
    executables: tuple[str, ...] = ()
    description: str | None = None
    version_args: tuple[str, ...] = ("--version",)
    version_pattern: str = r"(\d+\.\d+(?:\.\d+)*)"
    override_variable: str | None = None
    marker: str | None = None
    search_paths: tuple[str, ...] = ()
    env_variable: str | None = None
    guidance: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, name: str, data: Mapping[str, Any]) -> "ToolDefinition":
        if not isinstance(data, Mapping):
            raise TypeError(f"Tool '{name}' definition must be a mapping")

        allowed_keys = {
            "kind",
            "description",
            "executables",
            "version_args",
            "version_pattern",
            "override_variable",
            "marker",
            "search_paths",
            "env_variable",
            "guidance",
        }
        unknown = {str(key) for key in data.keys() if str(key) not in allowed_keys}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ValueError(f"Tool '{name}' contains unknown keys: {joined}")

        kind = str(data.get("kind", KIND_COMPILER)).strip().lower()
        guidance_section = data.get("guidance")
        guidance: Dict[str, str] = {}
        if isinstance(guidance_section, Mapping):
            guidance = _to_str_dict(guidance_section)
        elif isinstance(guidance_section, str) and guidance_section.strip():
            guidance = {"default": guidance_section.strip()}

        version_args = data.get("version_args")
        description = data.get("description")
        override_variable = data.get("override_variable")
        marker = data.get("marker")
        env_variable = data.get("env_variable")
        return cls(
            name=name,
            kind=kind,
            executables=_to_str_tuple(data.get("executables")),
            description=str(description) if description is not None else None,
            version_args=_to_str_tuple(version_args) if version_args is not None else ("--version",),
            version_pattern=str(data.get("version_pattern", r"(\d+\.\d+(?:\.\d+)*)")),
            override_variable=str(override_variable) if override_variable else None,
            marker=str(marker) if marker else None,
            search_paths=_to_str_tuple(data.get("search_paths")),
            env_variable=str(env_variable) if env_variable else None,
            guidance=guidance,
        )

    def merge(self, other: "ToolDefinition") -> "ToolDefinition":
        guidance = dict(self.guidance)
        guidance.update(other.guidance)
        return ToolDefinition(
            name=self.name,
            kind=other.kind or self.kind,
            executables=other.executables or self.executables,
            description=other.description or self.description,
            version_args=other.version_args,
            version_pattern=other.version_pattern or self.version_pattern,
            override_variable=other.override_variable or self.override_variable,
            marker=other.marker or self.marker,
            search_paths=other.search_paths or self.search_paths,
            env_variable=other.env_variable or self.env_variable,
            guidance=guidance,
        )

    def clone(self) -> "ToolDefinition":
        return ToolDefinition(
            name=self.name,
            kind=self.kind,
            executables=self.executables,
            description=self.description,
            version_args=self.version_args,
            version_pattern=self.version_pattern,
            override_variable=self.override_variable,
            marker=self.marker,
            search_paths=self.search_paths,
            env_variable=self.env_variable,
            guidance=dict(self.guidance),
        )

    @property
    def locates_root(self) -> bool:
        """Whether the tool is identified by an install root rather than an executable."""

        return self.marker is not None

    def providers(self) -> List[ToolProvider]:
        chain: List[ToolProvider] = []
        if self.override_variable:
            chain.append(EnvironmentOverrideProvider(self.override_variable, self.marker))
        if self.search_paths:
            chain.append(KnownLocationProvider(self.search_paths, self.marker))
        if self.executables:
            chain.append(ExecutableSearchProvider(self.executables, root_marker=self.marker))
        return chain

    def guidance_for(self, host: str) -> str | None:
        family = "linux" if host == "wsl" else host
        for key in (host, family, "default"):
            if key in self.guidance:
                return self.guidance[key]
        return None

    def version_command(self, located: Path) -> List[str] | None:
        if self.locates_root:
            if not self.executables:
                return None
            executable = located / self.executables[0]
            if not executable.exists():
                windows_executable = executable.with_suffix(".exe")
                if not windows_executable.exists():
                    return None
                executable = windows_executable
            return [str(executable), *self.version_args]
        return [str(located), *self.version_args]


def _build_builtin_definitions() -> Dict[str, ToolDefinition]:
    raw: Dict[str, Mapping[str, Any]] = {
        CMAKE: {
            "kind": KIND_BUILD_TOOL,
            "description": "CMake build-description tool",
            "executables": ["cmake"],
            "guidance": {
                "linux": "Install CMake 3.20 or later: sudo apt-get install cmake",
                "windows": "Install CMake 3.20 or later: winget install Kitware.CMake",
                "default": "Install CMake 3.20 or later from https://cmake.org/download/",
            },
        },
        NINJA: {
            "kind": KIND_BACKEND,
            "description": "Ninja build backend",
            "executables": ["ninja", "ninja-build"],
            "guidance": {
                "linux": "Install via: sudo apt-get install ninja-build (Ubuntu/Debian)",
                "windows": "Install via: winget install Ninja-build.Ninja",
                "default": "Download from: https://github.com/ninja-build/ninja/releases",
            },
        },
        VCPKG: {
            "kind": KIND_PACKAGE_MANAGER,
            "description": "vcpkg native dependency manager",
            "executables": ["vcpkg"],
            "version_args": ["version"],
            "version_pattern": r"version\s+([0-9][\w.\-]*)",
            "override_variable": "VCPKG_ROOT",
            "marker": VCPKG_MARKER,
            "search_paths": ["~/vcpkg", "/opt/vcpkg", "/usr/local/vcpkg", "C:/vcpkg", "C:/src/vcpkg"],
            "guidance": {
                "default": (
                    "Install vcpkg: git clone https://github.com/microsoft/vcpkg.git && cd vcpkg && "
                    "./bootstrap-vcpkg.sh, then set VCPKG_ROOT (or run `buildmatrix fetch`)"
                ),
            },
        },
        "msvc": {
            "kind": KIND_COMPILER,
            "description": "Microsoft Visual C++",
            "executables": ["cl"],
            "version_args": [],
            "version_pattern": r"Version\s+(\d+(?:\.\d+)+)",
            "env_variable": "CXX",
            "guidance": {
                "default": "Install Visual Studio with the C++ workload and run from a Developer Command Prompt (vcvars)",
            },
        },
        "gcc": {
            "kind": KIND_COMPILER,
            "description": "GNU Compiler Collection",
            "executables": ["g++", "c++"],
            "env_variable": "CXX",
            "guidance": {
                "linux": "Install via: sudo apt-get install build-essential",
                "default": "Install GCC (g++) and add it to PATH",
            },
        },
        "clang": {
            "kind": KIND_COMPILER,
            "description": "LLVM Clang",
            "executables": ["clang++", "clang-cl"],
            "env_variable": "CXX",
            "guidance": {
                "linux": "Install via: sudo apt-get install clang",
                "windows": "Install via: winget install LLVM.LLVM",
                "default": "Install LLVM Clang and add it to PATH",
            },
        },
        "mingw": {
            "kind": KIND_COMPILER,
            "description": "MinGW-w64 GCC",
            "executables": ["x86_64-w64-mingw32-g++", "i686-w64-mingw32-g++"],
            "env_variable": "CXX",
            "guidance": {
                "linux": "Install via: sudo apt-get install mingw-w64",
                "default": "Install MinGW-w64 (e.g. via MSYS2) and add it to PATH",
            },
        },
        "icc": {
            "kind": KIND_COMPILER,
            "description": "Intel C++ Compiler Classic",
            "executables": ["icl", "icpc"],
            "env_variable": "CXX",
            "guidance": {"default": "Install the Intel C++ Compiler Classic and source its environment script"},
        },
        "icx": {
            "kind": KIND_COMPILER,
            "description": "Intel oneAPI DPC++/C++ Compiler",
            "executables": ["icx", "icpx"],
            "env_variable": "CXX",
            "guidance": {"default": "Install the Intel oneAPI C++ compiler and source setvars"},
        },
    }

    definitions: Dict[str, ToolDefinition] = {}
    for name, data in raw.items():
        definitions[name] = ToolDefinition.from_mapping(name, data)
    return definitions


class ToolRegistry:
    def __init__(self, definitions: Mapping[str, ToolDefinition] | None = None) -> None:
        self._definitions: Dict[str, ToolDefinition] = {}
        if definitions:
            for name, definition in definitions.items():
                self._definitions[name] = definition.clone()

    @classmethod
    def with_builtins(cls) -> "ToolRegistry":
        return cls(_build_builtin_definitions())

    def merge(self, definitions: Mapping[str, ToolDefinition]) -> None:
        for name, definition in definitions.items():
            existing = self._definitions.get(name)
            if existing:
                self._definitions[name] = existing.merge(definition)
            else:
                self._definitions[name] = definition.clone()

    def merge_from_mapping(self, mapping: Mapping[str, Any]) -> None:
        if not mapping:
            return
        tools_section = mapping.get("tools")
        candidates = tools_section if isinstance(tools_section, Mapping) else mapping
        parsed: Dict[str, ToolDefinition] = {}
        for raw_name, raw_value in candidates.items():
            name = str(raw_name).strip().lower()
            if not name or not isinstance(raw_value, Mapping):
                continue
            existing = self._definitions.get(name)
            if existing is not None:
                inherited = {
                    "kind": existing.kind,
                    "version_args": list(existing.version_args),
                    "version_pattern": existing.version_pattern,
                }
                raw_value = {**inherited, **raw_value}
            parsed[name] = ToolDefinition.from_mapping(name, raw_value)
        if parsed:
            self.merge(parsed)

    def get(self, name: str) -> ToolDefinition | None:
        definition = self._definitions.get(name.lower())
        return definition.clone() if definition else None

    def available(self) -> Iterable[str]:
        return self._definitions.keys()

    def definitions(self) -> Dict[str, ToolDefinition]:
        return {name: definition.clone() for name, definition in self._definitions.items()}

    def validate(self) -> list[str]:
        errors: list[str] = []
        for name, definition in self._definitions.items():
            if definition.kind not in _KINDS:
                allowed = ", ".join(sorted(_KINDS))
                errors.append(f"Tool '{name}' has unsupported kind '{definition.kind}' (allowed: {allowed})")
            if not definition.executables and not definition.marker:
                errors.append(f"Tool '{name}' must specify executables or an install marker")
            try:
                re.compile(definition.version_pattern)
            except re.error as exc:
                errors.append(f"Tool '{name}' has an invalid version_pattern: {exc}")
        for required in (CMAKE, NINJA, VCPKG):
            if required not in self._definitions:
                errors.append(f"Tool '{required}' must be defined")
        return errors


def compiler_tool(dims: BuildDimensions) -> str:
    """Name of the compiler tool a dimension tuple needs."""

    if dims.compiler is Compiler.DEFAULT:
        return "gcc" if dims.platform is Platform.CROSS else "msvc"
    return dims.compiler.value


class ToolchainDetector:
    """Probe the host for every registered tool.

    Probes are independent read-only queries, run concurrently, each bounded
    by ``timeout`` seconds.
    """

    def __init__(
        self,
        registry: ToolRegistry | None = None,
        *,
        runner: CommandRunner | None = None,
        env: Mapping[str, str] | None = None,
        host: str,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        which: Which | None = None,
        max_workers: int = 8,
    ) -> None:
        self._registry = registry or ToolRegistry.with_builtins()
        self._runner = runner or SubprocessCommandRunner()
        self._env = dict(env) if env is not None else dict(os.environ)
        self._host = host
        self._timeout = timeout
        self._which = which or shutil.which
        self._max_workers = max(1, max_workers)

    def detect(self, tools: Iterable[str] | None = None) -> ToolchainStatus:
        names = list(tools) if tools is not None else sorted(self._registry.available())
        definitions: List[ToolDefinition] = []
        for name in names:
            definition = self._registry.get(name)
            if definition is None:
                raise KeyError(f"Tool '{name}' is not defined. Available: {', '.join(sorted(self._registry.available()))}")
            definitions.append(definition)

        statuses: Dict[str, ToolStatus] = {}
        with ThreadPoolExecutor(max_workers=min(self._max_workers, max(1, len(definitions)))) as executor:
            futures = {executor.submit(self.probe, definition): definition for definition in definitions}
            for future in as_completed(futures):
                definition = futures[future]
                try:
                    statuses[definition.name] = future.result()
                except OSError as exc:
                    logger.warning("Probe for %s failed: %s", definition.name, exc)
                    statuses[definition.name] = ToolStatus.missing(definition.name, str(exc))

        ordered = {name: statuses[name] for name in names}
        return ToolchainStatus(ordered, host=self._host, environment=derive_environment(ordered, self._registry))

    def probe(self, definition: ToolDefinition) -> ToolStatus:
        located: Located | None = None
        for provider in definition.providers():
            located = provider.locate(definition, env=self._env, which=self._which)
            if located is not None:
                break

        if located is None:
            logger.debug("%s not found", definition.name)
            return ToolStatus.missing(definition.name)
        if located.path is None:
            logger.debug("%s rejected: %s", definition.name, located.detail)
            return ToolStatus(name=definition.name, found=False, detail=located.detail, source=located.source)

        version = self._probe_version(definition, located.path)
        logger.debug("%s found at %s (version %s, via %s)", definition.name, located.path, version or "?", located.source)
        return ToolStatus(
            name=definition.name,
            found=True,
            version=version,
            path=str(located.path),
            source=located.source,
        )

    def _probe_version(self, definition: ToolDefinition, located: Path) -> str | None:
        command = definition.version_command(located)
        if command is None:
            return None
        try:
            result = self._runner.run(command, check=False, timeout=self._timeout)
        except CommandError as exc:
            result = exc.result
        if result.timed_out:
            logger.debug("Timeout probing version of %s", definition.name)
            return None
        match = re.search(definition.version_pattern, result.output)
        if match:
            return match.group(1)
        return None


def derive_environment(statuses: Mapping[str, ToolStatus], registry: ToolRegistry | None = None) -> Dict[str, str]:
    """Variables the configure stage needs, derived from detection results."""

    registry = registry or ToolRegistry.with_builtins()
    environment: Dict[str, str] = {}
    for name, status in statuses.items():
        if not status.found or not status.path:
            continue
        definition = registry.get(name)
        if definition is None or definition.kind != KIND_PACKAGE_MANAGER:
            continue
        root = Path(status.path)
        if definition.override_variable:
            environment[definition.override_variable] = str(root)
        if definition.marker:
            environment["CMAKE_TOOLCHAIN_FILE"] = str(root / definition.marker)
    return environment


def fetch_package_manager(
    destination: Path,
    *,
    runner: CommandRunner,
    host: str,
    url: str = VCPKG_URL,
    packages: Sequence[str] = (),
) -> ToolStatus:
    """Best-effort clone and bootstrap of vcpkg into ``destination``.

    Failures are reported through the returned status rather than raised.
    """

    destination = destination.expanduser()
    try:
        if not (destination / VCPKG_MARKER).is_file():
            logger.info("Cloning vcpkg into %s", destination)
            runner.run(["git", "clone", url, str(destination)], stream=True, note="Clone vcpkg")
        else:
            logger.info("vcpkg already present at %s", destination)

        script = "bootstrap-vcpkg.bat" if host == "windows" else "bootstrap-vcpkg.sh"
        executable = destination / ("vcpkg.exe" if host == "windows" else "vcpkg")
        if not executable.exists():
            logger.info("Bootstrapping vcpkg")
            runner.run([str(destination / script)], cwd=destination, stream=True, note="Bootstrap vcpkg")

        if packages:
            logger.info("Installing packages: %s", ", ".join(packages))
            runner.run([str(executable), "install", *packages], cwd=destination, stream=True, note="Install packages")
    except CommandError as exc:
        logger.error("Fetching vcpkg failed: %s", exc)
        return ToolStatus.missing(VCPKG, str(exc))

    return ToolStatus(name=VCPKG, found=True, path=str(destination), source="fetch")


__all__ = [
    "CMAKE",
    "DEFAULT_PROBE_TIMEOUT",
    "EnvironmentOverrideProvider",
    "ExecutableSearchProvider",
    "KIND_BACKEND",
    "KIND_BUILD_TOOL",
    "KIND_COMPILER",
    "KIND_PACKAGE_MANAGER",
    "KnownLocationProvider",
    "Located",
    "NINJA",
    "ToolDefinition",
    "ToolProvider",
    "ToolRegistry",
    "ToolStatus",
    "ToolchainDetector",
    "ToolchainStatus",
    "VCPKG",
    "VCPKG_MARKER",
    "compiler_tool",
    "derive_environment",
    "fetch_package_manager",
]
