"""Build dimensions: the independent axes a build request varies along."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Sequence, Type, TypeVar

from .errors import ConfigurationError


WILDCARDS = frozenset({"all", "both", "*"})


class Configuration(str, Enum):
    DEBUG = "Debug"
    RELEASE = "Release"


class Platform(str, Enum):
    NATIVE = "native"
    CROSS = "cross"

    @property
    def suffix(self) -> str | None:
        return "Linux" if self is Platform.CROSS else None


class Architecture(str, Enum):
    X64 = "x64"
    X86 = "x86"
    ARM64 = "arm64"
    ARM64EC = "arm64ec"


class Compiler(str, Enum):
    DEFAULT = "default"
    CLANG = "clang"
    MINGW = "mingw"
    ICC = "icc"
    ICX = "icx"

    @property
    def suffix(self) -> str | None:
        return _COMPILER_SUFFIXES.get(self)


class Feature(str, Enum):
    BUILD_TOOLS = "BuildTools"

    @property
    def suffix(self) -> str:
        return _FEATURE_SUFFIXES[self]

    @property
    def needs_package_manager(self) -> bool:
        return self is Feature.BUILD_TOOLS


_COMPILER_SUFFIXES = {
    Compiler.CLANG: "Clang",
    Compiler.MINGW: "MinGW",
    Compiler.ICC: "ICC",
    Compiler.ICX: "ICX",
}

_FEATURE_SUFFIXES = {
    Feature.BUILD_TOOLS: "VCPKG",
}

_ALIASES = {
    "tools": Feature.BUILD_TOOLS,
    "vcpkg": Feature.BUILD_TOOLS,
    "msvc": Compiler.DEFAULT,
    "linux": Platform.CROSS,
    "windows": Platform.NATIVE,
}

# Architectures each compiler can target, and what each platform family allows.
_COMPILER_ARCHITECTURES = {
    Compiler.DEFAULT: frozenset(Architecture),
    Compiler.CLANG: frozenset(Architecture),
    Compiler.MINGW: frozenset({Architecture.X64, Architecture.X86}),
    Compiler.ICC: frozenset({Architecture.X64, Architecture.X86}),
    Compiler.ICX: frozenset({Architecture.X64, Architecture.X86}),
}

_PLATFORM_ARCHITECTURES = {
    Platform.NATIVE: frozenset(Architecture),
    Platform.CROSS: frozenset({Architecture.X64, Architecture.ARM64}),
}

_PLATFORM_COMPILERS = {
    Platform.NATIVE: frozenset(Compiler),
    Platform.CROSS: frozenset({Compiler.DEFAULT, Compiler.CLANG}),
}


E = TypeVar("E", bound=Enum)


def parse_value(enum_type: Type[E], value: str | E) -> E:
    """Parse ``value`` into ``enum_type`` case-insensitively, accepting a few aliases."""

    if isinstance(value, enum_type):
        return value
    text = str(value).strip()
    lowered = text.lower()
    for member in enum_type:
        if lowered in {str(member.value).lower(), member.name.lower()}:
            return member
    alias = _ALIASES.get(lowered)
    if isinstance(alias, enum_type):
        return alias
    allowed = ", ".join(str(member.value) for member in enum_type)
    raise ConfigurationError(f"Unknown {enum_type.__name__.lower()} '{text}'. Allowed: {allowed}")


def expand_selector(enum_type: Type[E], values: Iterable[str | E] | None, *, default: E) -> tuple[List[E], bool]:
    """Expand a selector into concrete enum values.

    Returns the values in enumeration order (explicit duplicates removed) and
    whether a wildcard such as ``all`` or ``both`` was used.
    """

    raw = [value for value in (values or []) if str(value).strip()]
    if not raw:
        return [default], False
    if any(str(value).strip().lower() in WILDCARDS for value in raw):
        return list(enum_type), True
    selected = {parse_value(enum_type, value) for value in raw}
    return [member for member in enum_type if member in selected], False


def expand_feature_selector(values: Iterable[str] | None) -> tuple[List[frozenset[Feature]], bool]:
    """Expand feature selectors into feature sets; ``all`` yields the plain and full variants."""

    raw = [value.strip() for value in (values or []) if value and value.strip()]
    if not raw:
        return [frozenset()], False
    if any(value.lower() in WILDCARDS for value in raw):
        return [frozenset(), frozenset(Feature)], True
    if all(value.lower() == "none" for value in raw):
        return [frozenset()], False
    selected = frozenset(parse_value(Feature, value) for value in raw if value.lower() != "none")
    return [selected], False


@dataclass(frozen=True, slots=True)
class BuildDimensions:
    configuration: Configuration = Configuration.RELEASE
    platform: Platform = Platform.NATIVE
    architecture: Architecture = Architecture.X64
    compiler: Compiler = Compiler.DEFAULT
    features: frozenset[Feature] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "configuration", parse_value(Configuration, self.configuration))
        object.__setattr__(self, "platform", parse_value(Platform, self.platform))
        object.__setattr__(self, "architecture", parse_value(Architecture, self.architecture))
        object.__setattr__(self, "compiler", parse_value(Compiler, self.compiler))
        object.__setattr__(self, "features", frozenset(parse_value(Feature, item) for item in self.features))

    @property
    def ordered_features(self) -> List[Feature]:
        return [feature for feature in Feature if feature in self.features]

    @property
    def needs_package_manager(self) -> bool:
        return any(feature.needs_package_manager for feature in self.features)

    def problems(self) -> List[str]:
        """Return human-readable reasons this combination is illegal (empty when legal)."""

        errors: List[str] = []
        if self.architecture not in _PLATFORM_ARCHITECTURES[self.platform]:
            errors.append(
                f"architecture '{self.architecture.value}' is not available for the {self.platform.value} platform"
            )
        if self.compiler not in _PLATFORM_COMPILERS[self.platform]:
            errors.append(f"compiler '{self.compiler.value}' is not available for the {self.platform.value} platform")
        if self.architecture not in _COMPILER_ARCHITECTURES[self.compiler]:
            errors.append(
                f"compiler '{self.compiler.value}' does not support architecture '{self.architecture.value}'"
            )
        return errors

    def validate(self) -> "BuildDimensions":
        errors = self.problems()
        if errors:
            raise ConfigurationError(f"Invalid build dimensions {self.describe()}: {'; '.join(errors)}")
        return self

    def describe(self) -> str:
        features = ",".join(feature.value for feature in self.ordered_features) or "-"
        return (
            f"[{self.configuration.value} {self.platform.value} {self.architecture.value} "
            f"{self.compiler.value} features={features}]"
        )


def legal_combinations() -> Sequence[BuildDimensions]:
    """Every legal dimension tuple, in platform/configuration/architecture order."""

    combos: List[BuildDimensions] = []
    feature_sets: List[frozenset[Feature]] = [frozenset(), frozenset(Feature)]
    for platform in Platform:
        for configuration in Configuration:
            for architecture in Architecture:
                for compiler in Compiler:
                    for features in feature_sets:
                        dims = BuildDimensions(
                            configuration=configuration,
                            platform=platform,
                            architecture=architecture,
                            compiler=compiler,
                            features=features,
                        )
                        if not dims.problems():
                            combos.append(dims)
    return combos


__all__ = [
    "Architecture",
    "BuildDimensions",
    "Compiler",
    "Configuration",
    "Feature",
    "Platform",
    "WILDCARDS",
    "expand_feature_selector",
    "expand_selector",
    "legal_combinations",
    "parse_value",
]
