"""Command line interface for the build matrix engine."""
from __future__ import annotations

from argparse import ArgumentParser, Namespace
from pathlib import Path
from typing import Dict, Iterable, List
import logging
import sys

from core.command_runner import CommandRunner, RecordingCommandRunner, SubprocessCommandRunner

from .config import BuildMatrixConfig, resolve_config_directories
from .dimensions import Feature, legal_combinations
from .environment import EnvironmentMaterializer, host_platform
from .errors import ConfigurationError
from .matrix import (
    EXIT_CANCELLED,
    EXIT_CONFIGURATION,
    EXIT_FAILURE,
    EXIT_SUCCESS,
    MatrixDriver,
    MatrixRequest,
    failed_stage_summary,
    format_table,
    platform_for_host,
)
from .pipeline import CommandPipeline, stages_for
from .presets import PresetCatalog, PresetResolver, preset_id
from .toolchains import ToolchainDetector, ToolchainStatus, fetch_package_manager

logger = logging.getLogger(__name__)

LOG_FORMAT = "[%(levelname)s] %(message)s"


def _make_runner(dry_run: bool) -> SubprocessCommandRunner | RecordingCommandRunner:
    return RecordingCommandRunner() if dry_run else SubprocessCommandRunner()


def _configure_logging(config: BuildMatrixConfig, *, verbose: bool) -> None:
    level_name = "debug" if verbose else config.global_config.log_level
    level = getattr(logging, level_name.upper(), logging.INFO)
    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.global_config.log_file:
        log_path = Path(config.global_config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))
    logging.basicConfig(level=level, format=LOG_FORMAT, handlers=handlers, force=True)


def _load_config(args: Namespace, workspace: Path) -> BuildMatrixConfig:
    directories = resolve_config_directories(workspace, getattr(args, "config_dirs", []))
    return BuildMatrixConfig.from_directories(workspace, directories)


def _source_dir(args: Namespace, workspace: Path) -> Path:
    value = getattr(args, "source_dir", None)
    if not value:
        return workspace
    path = Path(value).expanduser()
    return (path if path.is_absolute() else workspace / path).resolve()


def _emit_dry_run_output(runner: RecordingCommandRunner, *, workspace: Path) -> None:
    for line in runner.iter_formatted(workspace=workspace):
        print(line)


def _detector(config: BuildMatrixConfig, host: str, runner: CommandRunner | None = None) -> ToolchainDetector:
    return ToolchainDetector(
        config.toolchains,
        runner=runner or SubprocessCommandRunner(),
        host=host,
        timeout=config.global_config.probe_timeout,
    )


def _availability(
    config: BuildMatrixConfig,
    source_dir: Path,
    host: str,
    *,
    redetect: bool,
) -> ToolchainStatus:
    materializer = EnvironmentMaterializer(
        config.paths.resolve(source_dir, config.paths.environment_file),
        host=host,
        expected_tools=config.toolchains.available(),
    )
    if not redetect:
        cached = materializer.load()
        if cached is not None:
            logger.debug("Using cached toolchain environment from %s", materializer.path)
            return cached
    status = _detector(config, host).detect()
    materializer.save(status)
    return status


def _build_request(args: Namespace, host: str) -> MatrixRequest:
    configurations: List[str] = list(args.configurations or [])
    platforms: List[str] = []
    for value in args.platforms or []:
        platforms.append(platform_for_host(host).value if value == "auto" else value)
    if not platforms:
        platforms.append(platform_for_host(host).value)
    return MatrixRequest(
        configurations=configurations,
        platforms=platforms,
        architectures=list(args.architectures or []),
        compilers=list(args.compilers or []),
        features=[Feature.BUILD_TOOLS.value] if args.tools else [],
    )


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path.cwd()

    try:
        config = _load_config(args, workspace)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return EXIT_CONFIGURATION
    _configure_logging(config, verbose=getattr(args, "verbose", False))

    try:
        if args.command == "build":
            return _handle_build(args, workspace, config)
        if args.command == "detect":
            return _handle_detect(args, workspace, config)
        if args.command == "list":
            return _handle_list(args, workspace, config)
        if args.command == "validate":
            return _handle_validate(args, workspace, config)
        if args.command == "fetch":
            return _handle_fetch(args, workspace, config)
    except KeyboardInterrupt:
        print("Interrupted")
        return EXIT_CANCELLED
    raise ValueError(f"Unknown command: {args.command}")


def _handle_build(args: Namespace, workspace: Path, config: BuildMatrixConfig) -> int:
    source_dir = _source_dir(args, workspace)
    host = host_platform()
    paths = config.paths
    try:
        catalog = PresetCatalog.load(paths.resolve(source_dir, paths.presets_file))
        request = _build_request(args, host)
        jobs = args.jobs if args.jobs is not None else config.global_config.jobs
        runner = _make_runner(args.dry_run)
        availability = _availability(config, source_dir, host, redetect=args.redetect)
        pipeline = CommandPipeline(
            runner,
            source_dir=source_dir,
            build_root=paths.resolve(source_dir, paths.build_root),
            install_root=paths.resolve(source_dir, paths.install_root),
            registry=config.toolchains,
            verbose=args.verbose,
        )
        driver = MatrixDriver(
            PresetResolver(catalog),
            pipeline,
            jobs=jobs,
            output_root=paths.resolve(source_dir, paths.output_root),
            dry_run=args.dry_run,
        )
        report = driver.run(
            request,
            stages_for(install=args.install, test=args.test),
            availability,
            clean=args.clean,
        )
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return EXIT_CONFIGURATION

    if isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=source_dir)
        print()

    print(report.render())
    for result in report.failed:
        summary = failed_stage_summary(result)
        if summary:
            print(summary)
    return report.exit_code


def _handle_detect(args: Namespace, workspace: Path, config: BuildMatrixConfig) -> int:
    source_dir = _source_dir(args, workspace)
    host = host_platform()
    status = _detector(config, host).detect()
    materializer = EnvironmentMaterializer(
        config.paths.resolve(source_dir, config.paths.environment_file),
        host=host,
        expected_tools=config.toolchains.available(),
    )
    if not args.no_save:
        materializer.save(status)

    rows: List[Dict[str, str]] = []
    for name in status.names():
        tool = status.get(name)
        rows.append(
            {
                "Tool": name,
                "Found": "yes" if tool.found else "no",
                "Version": tool.version or "-",
                "Location": tool.path or tool.detail or "-",
            }
        )
    print(f"Host: {status.host}")
    for line in format_table(["Tool", "Found", "Version", "Location"], rows):
        print(line)
    if not args.no_save:
        print(f"Saved to {materializer.path}")

    if args.guidance:
        for name in status.names():
            if status.is_available(name):
                continue
            definition = config.toolchains.get(name)
            guidance = definition.guidance_for(host) if definition else None
            if guidance:
                print(f"{name}: {guidance}")
    return EXIT_SUCCESS


def _load_catalog(config: BuildMatrixConfig, source_dir: Path) -> PresetCatalog | None:
    path = config.paths.resolve(source_dir, config.paths.presets_file)
    if not path.is_file():
        print(f"Warning: Preset file '{path}' does not exist")
        return None
    return PresetCatalog.load(path)


def _handle_list(args: Namespace, workspace: Path, config: BuildMatrixConfig) -> int:
    source_dir = _source_dir(args, workspace)
    try:
        catalog = _load_catalog(config, source_dir)
    except ConfigurationError as exc:
        print(f"Error: {exc}")
        return EXIT_CONFIGURATION

    rows: List[Dict[str, str]] = []
    for dims in legal_combinations():
        name = preset_id(dims)
        declared = "-" if catalog is None else ("yes" if catalog.contains(name) else "no")
        if args.declared and declared != "yes":
            continue
        rows.append(
            {
                "Preset": name,
                "Configuration": dims.configuration.value,
                "Platform": dims.platform.value,
                "Arch": dims.architecture.value,
                "Compiler": dims.compiler.value,
                "Features": ",".join(feature.value for feature in dims.ordered_features) or "-",
                "Declared": declared,
            }
        )

    if not rows:
        print("No presets found")
        return EXIT_SUCCESS
    headers = ["Preset", "Configuration", "Platform", "Arch", "Compiler", "Features", "Declared"]
    for line in format_table(headers, rows):
        print(line)
    return EXIT_SUCCESS


def _handle_validate(args: Namespace, workspace: Path, config: BuildMatrixConfig) -> int:
    source_dir = _source_dir(args, workspace)
    errors = list(config.validate())
    warnings: List[str] = []

    try:
        catalog = _load_catalog(config, source_dir)
    except ConfigurationError as exc:
        errors.append(str(exc))
        catalog = None

    if catalog is not None:
        known = {preset_id(dims): dims for dims in legal_combinations()}
        resolver = PresetResolver(catalog)
        for name in catalog.available():
            if name not in known:
                warnings.append(f"Preset '{name}' does not correspond to any build dimension combination")
                continue
            try:
                resolver.resolve(known[name])
            except ConfigurationError as exc:
                errors.append(str(exc))
        missing = [name for name in known if not catalog.contains(name)]
        if missing:
            message = f"{len(missing)} legal combination(s) have no preset: {', '.join(missing)}"
            if args.strict:
                errors.append(message)
            else:
                warnings.append(message)

    for warning in warnings:
        print(f"Warning: {warning}")
    if errors:
        for error in errors:
            print(f"Error: {error}")
        return EXIT_FAILURE
    print("Configuration is valid")
    return EXIT_SUCCESS


def _handle_fetch(args: Namespace, workspace: Path, config: BuildMatrixConfig) -> int:
    host = host_platform()
    destination = Path(args.destination).expanduser() if args.destination else Path.home() / "vcpkg"
    packages = list(args.packages) if args.packages else list(config.package_manager.packages)
    runner = _make_runner(args.dry_run)
    status = fetch_package_manager(
        destination,
        runner=runner,
        host=host,
        url=config.package_manager.url,
        packages=packages,
    )
    if isinstance(runner, RecordingCommandRunner):
        _emit_dry_run_output(runner, workspace=workspace)
    if not status.found:
        print(f"Error: vcpkg could not be fetched: {status.detail}")
        return EXIT_FAILURE
    print(f"vcpkg is available at {status.path}")
    print(f"Set {config.package_manager.root_variable}={status.path} to use it for builds")
    return EXIT_SUCCESS


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="buildmatrix", description="Preset-driven CMake build matrix orchestrator")
    parser.add_argument(
        "-C",
        "--config-dir",
        dest="config_dirs",
        action="append",
        default=[],
        metavar="PATH",
        help="Additional configuration directory (repeat or separate with PATH separator)",
    )
    parser.add_argument("-S", "--source-dir", help="Project directory containing CMakePresets.json (default: cwd)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Configure, build and optionally install/test presets")
    build_parser.add_argument(
        "--debug",
        dest="configurations",
        action="append_const",
        const="Debug",
        help="Build the Debug configuration",
    )
    build_parser.add_argument(
        "--release",
        dest="configurations",
        action="append_const",
        const="Release",
        help="Build the Release configuration",
    )
    build_parser.add_argument(
        "-c",
        "--configuration",
        dest="configurations",
        action="append",
        choices=["debug", "release", "both"],
        help="Configuration to build (repeatable; 'both' builds Debug and Release)",
    )
    build_parser.add_argument(
        "--platform",
        dest="platforms",
        action="append",
        choices=["auto", "native", "cross", "all"],
        help="Target platform family (default: auto, chosen from the host)",
    )
    build_parser.add_argument(
        "-a",
        "--arch",
        dest="architectures",
        action="append",
        metavar="ARCH",
        help="Target architecture: x64, x86, arm64, arm64ec or all (repeatable)",
    )
    build_parser.add_argument(
        "--compiler",
        dest="compilers",
        action="append",
        choices=["default", "clang", "mingw", "icc", "icx", "all"],
        help="Compiler family (default: the platform's default compiler)",
    )
    build_parser.add_argument("--tools", action="store_true", help="Enable the BuildTools feature (requires vcpkg)")
    build_parser.add_argument("--clean", action="store_true", help="Remove the whole output directory first")
    build_parser.add_argument("--install", action="store_true", help="Install after build")
    build_parser.add_argument("--test", action="store_true", help="Run tests after build")
    build_parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    build_parser.add_argument("-j", "--jobs", type=int, help="Number of presets to build concurrently")
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--redetect", action="store_true", help="Ignore the cached toolchain environment")

    detect_parser = subparsers.add_parser("detect", help="Probe the host for toolchains and save the result")
    detect_parser.add_argument("--no-save", action="store_true", help="Do not write the environment file")
    detect_parser.add_argument("--guidance", action="store_true", help="Show installation guidance for missing tools")
    detect_parser.add_argument("--verbose", action="store_true", help="Enable verbose output")

    list_parser = subparsers.add_parser("list", help="List build dimension combinations and their preset names")
    list_parser.add_argument("--declared", action="store_true", help="Only show presets declared by the project")

    validate_parser = subparsers.add_parser("validate", help="Validate configuration and the preset catalog")
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Treat legal combinations without a declared preset as errors",
    )

    fetch_parser = subparsers.add_parser("fetch", help="Clone and bootstrap vcpkg (best effort)")
    fetch_parser.add_argument("--destination", help="Where to clone vcpkg (default: ~/vcpkg)")
    fetch_parser.add_argument(
        "-p",
        "--package",
        dest="packages",
        action="append",
        default=[],
        metavar="NAME",
        help="Package to install after bootstrapping (repeatable; default from configuration)",
    )
    fetch_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")

    return parser.parse_args(list(argv))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
