"""Shared core utilities for command execution and configuration loading."""

from .command_runner import (
    CommandError,
    CommandResult,
    CommandRunner,
    RecordingCommandRunner,
    ScriptedResponse,
    SubprocessCommandRunner,
)
from .config_loader import (
    ConfigFileError,
    ConfigLayer,
    FILE_LOADERS,
    discover_layers,
    load_config_file,
    merge_layers,
    merge_mappings,
    normalize_string_list,
    split_path_list,
)

__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "RecordingCommandRunner",
    "ScriptedResponse",
    "SubprocessCommandRunner",
    "ConfigFileError",
    "ConfigLayer",
    "FILE_LOADERS",
    "discover_layers",
    "load_config_file",
    "merge_layers",
    "merge_mappings",
    "normalize_string_list",
    "split_path_list",
]
