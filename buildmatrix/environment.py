"""Persist detection results as a flat ``key=value`` artifact and detect the host."""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, List, Mapping
import logging
import os
import platform
import tempfile

from .errors import ArtifactCorruption
from .toolchains import ToolchainStatus, ToolStatus

logger = logging.getLogger(__name__)

DEFAULT_ENVIRONMENT_FILE = ".buildmatrix.env"

_TOOL_FIELDS = ("found", "version", "path", "detail", "source")
_TRUE = {"true", "1", "yes"}
_FALSE = {"false", "0", "no"}


def host_platform(*, system: str | None = None, proc_version: Path = Path("/proc/version")) -> str:
    """Return ``linux``, ``wsl``, ``macos``, ``windows`` or ``unknown``."""

    name = (system or platform.system()).lower()
    if name == "linux":
        try:
            text = proc_version.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return "linux"
        return "wsl" if "microsoft" in text.lower() else "linux"
    if name == "darwin":
        return "macos"
    if name == "windows" or name.startswith(("cygwin", "msys", "mingw")):
        return "windows"
    return "unknown"


def _clean(value: str) -> str:
    return " ".join(value.splitlines()).strip()


class EnvironmentMaterializer:
    """Save and reload a :class:`ToolchainStatus` between runs."""

    def __init__(self, path: Path, *, host: str | None = None, expected_tools: Iterable[str] = ()) -> None:
        self.path = path
        self.host = host or host_platform()
        self.expected_tools = tuple(sorted(expected_tools))

    def render(self, status: ToolchainStatus) -> str:
        lines: List[str] = ["# Generated by buildmatrix; re-run `buildmatrix detect` to refresh.", f"host={status.host}"]
        for name in status.names():
            tool = status.get(name)
            lines.append(f"{name}.found={'true' if tool.found else 'false'}")
            for key in ("version", "path", "detail", "source"):
                value = getattr(tool, key)
                if value:
                    lines.append(f"{name}.{key}={_clean(value)}")
        for key, value in sorted(status.environment.items()):
            lines.append(f"env.{key}={_clean(value)}")
        return "\n".join(lines) + "\n"

    def save(self, status: ToolchainStatus) -> Path:
        """Overwrite the artifact atomically and return its path."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        content = self.render(status)
        fd, temp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(content)
            os.replace(temp_name, self.path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise
        logger.debug("Saved toolchain environment to %s", self.path)
        return self.path

    def load(self) -> ToolchainStatus | None:
        """Return the stored status, or ``None`` when missing, corrupt or stale."""

        if not self.path.is_file():
            return None
        try:
            return self.parse(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ArtifactCorruption) as exc:
            logger.debug("Discarding environment artifact %s: %s", self.path, exc)
            return None

    def parse(self, text: str) -> ToolchainStatus:
        host: str | None = None
        fields: Dict[str, Dict[str, str]] = {}
        environment: Dict[str, str] = {}

        for number, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            key, separator, value = line.partition("=")
            key = key.strip()
            value = value.strip()
            if not separator or not key:
                raise ArtifactCorruption(f"line {number}: expected key=value")
            if key == "host":
                host = value
                continue
            family, dot, attribute = key.partition(".")
            if not dot or not family or not attribute:
                raise ArtifactCorruption(f"line {number}: unknown key '{key}'")
            if family == "env":
                environment[attribute] = value
                continue
            if attribute not in _TOOL_FIELDS:
                raise ArtifactCorruption(f"line {number}: unknown tool field '{attribute}'")
            fields.setdefault(family, {})[attribute] = value

        if host is None:
            raise ArtifactCorruption("missing host entry")
        if host != self.host:
            raise ArtifactCorruption(f"recorded for host '{host}', current host is '{self.host}'")
        absent = [name for name in self.expected_tools if name not in fields]
        if absent:
            raise ArtifactCorruption(f"no entries for tool(s): {', '.join(absent)}")

        tools: Dict[str, ToolStatus] = {}
        for name, values in fields.items():
            tools[name] = self._tool_from_fields(name, values)
        return ToolchainStatus(tools, host=host, environment=environment)

    @staticmethod
    def _tool_from_fields(name: str, values: Mapping[str, str]) -> ToolStatus:
        raw_found = values.get("found")
        if raw_found is None:
            raise ArtifactCorruption(f"tool '{name}' has no found entry")
        lowered = raw_found.lower()
        if lowered in _TRUE:
            found = True
        elif lowered in _FALSE:
            found = False
        else:
            raise ArtifactCorruption(f"tool '{name}' has invalid found value '{raw_found}'")

        path = values.get("path") or None
        if found:
            if not path:
                raise ArtifactCorruption(f"tool '{name}' is marked found without a path")
            if not Path(path).exists():
                raise ArtifactCorruption(f"tool '{name}' path no longer exists: {path}")
        return ToolStatus(
            name=name,
            found=found,
            version=values.get("version") or None,
            path=path,
            detail=values.get("detail") or None,
            source=values.get("source") or None,
        )


__all__ = ["DEFAULT_ENVIRONMENT_FILE", "EnvironmentMaterializer", "host_platform"]
