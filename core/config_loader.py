"""Layered configuration directories holding ``<stem>.{toml,json,yaml,yml}`` files."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Sequence
import json
import os
import tomllib

import yaml


ConfigLoader = Callable[[Any], Any]


@dataclass(frozen=True, slots=True)
class ConfigFormat:
    loader: ConfigLoader
    binary: bool = False


FILE_LOADERS: Dict[str, ConfigFormat] = {
    ".toml": ConfigFormat(tomllib.load, binary=True),
    ".json": ConfigFormat(json.load),
    ".yaml": ConfigFormat(yaml.safe_load),
    ".yml": ConfigFormat(yaml.safe_load),
}
"""Supported suffixes; TOML must be opened in binary mode."""

_DECODE_ERRORS = (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError, UnicodeDecodeError)


class ConfigFileError(ValueError):
    """A configuration file could not be read or does not hold a mapping."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


def load_config_file(path: Path) -> Mapping[str, Any]:
    """Decode ``path``; an empty document is an empty mapping."""

    suffix = path.suffix.lower()
    fmt = FILE_LOADERS.get(suffix)
    if fmt is None:
        supported = ", ".join(sorted(FILE_LOADERS))
        raise ConfigFileError(path, f"unsupported extension '{suffix}' (supported: {supported})")

    try:
        if fmt.binary:
            with path.open("rb") as handle:
                data = fmt.loader(handle)
        else:
            with path.open("r", encoding="utf-8") as handle:
                data = fmt.loader(handle)
    except _DECODE_ERRORS as exc:
        raise ConfigFileError(path, f"cannot be parsed: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigFileError(path, "must contain a mapping at the root")
    return data


@dataclass(slots=True)
class ConfigLayer:
    """One configuration directory and the entry files found in it."""

    directory: Path
    files: Dict[str, Path] = field(default_factory=dict)

    @classmethod
    def scan(cls, directory: Path) -> "ConfigLayer":
        files: Dict[str, Path] = {}
        for path in sorted(directory.iterdir()):
            if not path.is_file() or path.suffix.lower() not in FILE_LOADERS:
                continue
            other = files.get(path.stem)
            if other is not None:
                raise ConfigFileError(
                    path,
                    f"conflicts with '{other.name}'; only one format per configuration entry is allowed",
                )
            files[path.stem] = path
        return cls(directory=directory, files=files)

    def load(self, stem: str) -> Mapping[str, Any] | None:
        path = self.files.get(stem)
        return None if path is None else load_config_file(path)


def discover_layers(root: Path, directories: Iterable[Path]) -> tuple[List[ConfigLayer], List[Path]]:
    """Scan ``directories`` (relative to ``root``) in increasing precedence order.

    A directory listed more than once keeps only its last position. Returns the
    layers that exist and the directories that do not.
    """

    ordered: List[Path] = []
    for raw in directories:
        path = raw if raw.is_absolute() else (root / raw).resolve()
        if path in ordered:
            ordered.remove(path)
        ordered.append(path)

    layers = [ConfigLayer.scan(path) for path in ordered if path.is_dir()]
    missing = [path for path in ordered if not path.is_dir()]
    return layers, missing


def merge_mappings(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep merge ``overlay`` onto ``base``; nested tables merge, everything else is replaced."""

    result: Dict[str, Any] = dict(base)
    for key, value in overlay.items():
        existing = result.get(key)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            result[key] = merge_mappings(existing, value)
        else:
            result[key] = value
    return result


def merge_layers(layers: Sequence[ConfigLayer], stem: str) -> Dict[str, Any]:
    merged: Dict[str, Any] = {}
    for layer in layers:
        data = layer.load(stem)
        if data is not None:
            merged = merge_mappings(merged, data)
    return merged


def normalize_string_list(value: Any, *, field_name: str | None = None) -> List[str]:
    """Accept a string or a list of strings; blanks are dropped."""

    label = f"{field_name} " if field_name else ""
    if value is None:
        return []
    if isinstance(value, str):
        value = [value]
    elif not isinstance(value, Sequence):
        raise TypeError(f"{label}must be a string or sequence of strings")

    items: List[str] = []
    for item in value:
        if not isinstance(item, str):
            raise TypeError(f"{label}entries must be strings")
        if item.strip():
            items.append(item.strip())
    return items


def split_path_list(values: Iterable[str]) -> List[str]:
    """Flatten ``os.pathsep``-separated entries such as ``BUILDMATRIX_CONFIG_DIR``."""

    return [segment.strip() for value in values if value for segment in value.split(os.pathsep) if segment.strip()]


__all__ = [
    "ConfigFileError",
    "ConfigFormat",
    "ConfigLayer",
    "ConfigLoader",
    "FILE_LOADERS",
    "discover_layers",
    "load_config_file",
    "merge_layers",
    "merge_mappings",
    "normalize_string_list",
    "split_path_list",
]
