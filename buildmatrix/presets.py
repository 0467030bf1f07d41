"""Preset identity serialization and catalog lookup against ``CMakePresets.json``."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Sequence
import json
import logging

from .dimensions import BuildDimensions
from .errors import ConfigurationError
from .toolchains import CMAKE, NINJA, ToolchainStatus, compiler_tool

logger = logging.getLogger(__name__)

USER_PRESETS_FILE = "CMakeUserPresets.json"


def preset_id(dims: BuildDimensions) -> str:
    """Serialize dimensions into a PresetId.

    Tokens are emitted in a fixed order (architecture, configuration, platform
    suffix, feature suffixes, compiler suffix) and a token is omitted whenever
    its dimension holds the default value.
    """

    tokens: List[str] = [dims.architecture.value, dims.configuration.value]
    if dims.platform.suffix:
        tokens.append(dims.platform.suffix)
    tokens.extend(feature.suffix for feature in dims.ordered_features)
    if dims.compiler.suffix:
        tokens.append(dims.compiler.suffix)
    return "-".join(tokens)


@dataclass(slots=True)
class PresetEntry:
    name: str
    hidden: bool = False
    inherits: tuple[str, ...] = ()
    generator: str | None = None
    description: str | None = None
    source: Path | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: Path | None = None) -> "PresetEntry":
        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            where = f" in {source}" if source else ""
            raise ConfigurationError(f"Preset without a valid 'name'{where}")
        raw_inherits = data.get("inherits")
        if isinstance(raw_inherits, str):
            inherits: tuple[str, ...] = (raw_inherits,)
        elif isinstance(raw_inherits, Sequence):
            inherits = tuple(str(item) for item in raw_inherits)
        else:
            inherits = ()
        generator = data.get("generator")
        description = data.get("displayName") or data.get("description")
        return cls(
            name=name.strip(),
            hidden=bool(data.get("hidden", False)),
            inherits=inherits,
            generator=str(generator) if generator else None,
            description=str(description) if description else None,
            source=source,
        )


class PresetCatalog:
    """The configure, build and test presets a project declares."""

    def __init__(
        self,
        configure: Iterable[PresetEntry] = (),
        *,
        build: Iterable[PresetEntry] = (),
        test: Iterable[PresetEntry] = (),
        source: Path | None = None,
    ) -> None:
        self.source = source
        self._configure = self._index(configure, "configure")
        self._build = self._index(build, "build")
        self._test = self._index(test, "test")

    @staticmethod
    def _index(entries: Iterable[PresetEntry], kind: str) -> Dict[str, PresetEntry]:
        indexed: Dict[str, PresetEntry] = {}
        for entry in entries:
            if entry.name in indexed:
                raise ConfigurationError(f"Duplicate {kind} preset '{entry.name}'")
            indexed[entry.name] = entry
        return indexed

    @classmethod
    def load(cls, path: Path) -> "PresetCatalog":
        """Load ``path`` plus its ``include`` files and a sibling ``CMakeUserPresets.json``."""

        if not path.is_file():
            raise ConfigurationError(f"Preset file not found: {path}")

        configure: List[PresetEntry] = []
        build: List[PresetEntry] = []
        test: List[PresetEntry] = []
        visited: set[Path] = set()

        def _read(current: Path) -> None:
            resolved = current.resolve()
            if resolved in visited:
                return
            visited.add(resolved)
            try:
                with resolved.open("r", encoding="utf-8") as handle:
                    data = json.load(handle)
            except (json.JSONDecodeError, UnicodeDecodeError) as exc:
                raise ConfigurationError(f"Invalid preset file {resolved}: {exc}") from exc
            except OSError as exc:
                raise ConfigurationError(f"Cannot read preset file {resolved}: {exc}") from exc
            if not isinstance(data, Mapping):
                raise ConfigurationError(f"Preset file {resolved} must contain a JSON object")

            for include in data.get("include", []) or []:
                include_path = Path(str(include))
                if not include_path.is_absolute():
                    include_path = resolved.parent / include_path
                if not include_path.is_file():
                    raise ConfigurationError(f"Included preset file not found: {include_path} (from {resolved})")
                _read(include_path)

            for key, bucket in (("configurePresets", configure), ("buildPresets", build), ("testPresets", test)):
                for raw in data.get(key, []) or []:
                    if isinstance(raw, Mapping):
                        bucket.append(PresetEntry.from_mapping(raw, source=resolved))

        _read(path)
        user_presets = path.parent / USER_PRESETS_FILE
        if path.name != USER_PRESETS_FILE and user_presets.is_file():
            logger.debug("Including user presets from %s", user_presets)
            _read(user_presets)

        catalog = cls(configure, build=build, test=test, source=path)
        logger.debug("Loaded %d configure presets from %s", len(catalog.available()), path)
        return catalog

    def available(self) -> List[str]:
        return sorted(name for name, entry in self._configure.items() if not entry.hidden)

    def contains(self, name: str) -> bool:
        entry = self._configure.get(name)
        return entry is not None and not entry.hidden

    def has_build_preset(self, name: str) -> bool:
        entry = self._build.get(name)
        return entry is not None and not entry.hidden

    def has_test_preset(self, name: str) -> bool:
        entry = self._test.get(name)
        return entry is not None and not entry.hidden

    def generator(self, name: str) -> str | None:
        """Return the generator declared by ``name`` or the nearest preset it inherits from."""

        return self._generator(name, seen=())

    def _generator(self, name: str, *, seen: tuple[str, ...]) -> str | None:
        if name in seen:
            raise ConfigurationError(f"Circular preset inheritance detected: {' -> '.join(seen + (name,))}")
        entry = self._configure.get(name)
        if entry is None:
            if seen:
                raise ConfigurationError(f"Preset '{seen[-1]}' inherits unknown preset '{name}'")
            return None
        if entry.generator:
            return entry.generator
        for parent in entry.inherits:
            generator = self._generator(parent, seen=seen + (name,))
            if generator:
                return generator
        return None

    def describe(self, name: str) -> str | None:
        entry = self._configure.get(name)
        return entry.description if entry else None


def required_tools(dims: BuildDimensions, generator: str | None) -> tuple[str, ...]:
    """Mandatory tools for a preset; the package manager is never mandatory here."""

    tools = [CMAKE]
    if generator and "ninja" in generator.lower():
        tools.append(NINJA)
    tools.append(compiler_tool(dims))
    return tuple(tools)


@dataclass(frozen=True, slots=True)
class ResolvedPreset:
    preset_id: str
    dimensions: BuildDimensions
    generator: str | None = None
    required_tools: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    has_build_preset: bool = False
    has_test_preset: bool = False
    description: str | None = field(default=None, compare=False)

    @property
    def available(self) -> bool:
        return not self.blocked_by

    @property
    def needs_package_manager(self) -> bool:
        return self.dimensions.needs_package_manager


class PresetResolver:
    """Map dimension tuples onto declared presets.

    Resolution is syntactic: an absent optional package manager never fails
    resolution, and ``availability`` only fills in ``blocked_by``.
    """

    def __init__(self, catalog: PresetCatalog) -> None:
        self._catalog = catalog

    @property
    def catalog(self) -> PresetCatalog:
        return self._catalog

    def resolve(self, dims: BuildDimensions, availability: ToolchainStatus | None = None) -> ResolvedPreset:
        dims.validate()
        name = preset_id(dims)
        if not self._catalog.contains(name):
            available = ", ".join(self._catalog.available()) or "<none>"
            raise ConfigurationError(f"Preset '{name}' is not declared in the preset catalog. Available: {available}")

        generator = self._catalog.generator(name)
        tools = required_tools(dims, generator)
        blocked: tuple[str, ...] = ()
        if availability is not None:
            blocked = tuple(tool for tool in tools if not availability.is_available(tool))
        return ResolvedPreset(
            preset_id=name,
            dimensions=dims,
            generator=generator,
            required_tools=tools,
            blocked_by=blocked,
            has_build_preset=self._catalog.has_build_preset(name),
            has_test_preset=self._catalog.has_test_preset(name),
            description=self._catalog.describe(name),
        )

    def try_resolve(self, dims: BuildDimensions, availability: ToolchainStatus | None = None) -> ResolvedPreset | None:
        if dims.problems() or not self._catalog.contains(preset_id(dims)):
            return None
        return self.resolve(dims, availability)


__all__ = [
    "PresetCatalog",
    "PresetEntry",
    "PresetResolver",
    "ResolvedPreset",
    "USER_PRESETS_FILE",
    "preset_id",
    "required_tools",
]
