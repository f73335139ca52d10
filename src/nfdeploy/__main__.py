from __future__ import annotations

import argparse
import logging
import sys
import textwrap
from collections.abc import Sequence
from pathlib import Path
from typing import cast

from . import __version__
from .configuration import read_configuration
from .logsink import LogLevel, LogSink, filtered, parse_level
from .schema import dumps_json
from .targets import resolve_deployment_targets
from .task import Task, TaskContext, run_task
from .verify import VerifyFirmwareConsistency, VerifyPackageVersions

_EXIT_OK = 0
_EXIT_ERRORS = 10
_EXIT_FATAL = 20


def _stderr_sink(level: LogLevel, message: str) -> None:
    print(f"{level.label}: {message}", file=sys.stderr)


def _build_parser() -> argparse.ArgumentParser:
    epilog = textwrap.dedent(
        """\
        Exit codes:
          0   Success
          10  Errors reported
          20  Fatal error
        """
    )

    parser = argparse.ArgumentParser(
        prog="nfdeploy",
        description="Verify that nanoFramework assemblies can be deployed to their targets",
        epilog=epilog,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    _ = parser.add_argument(
        "--version",
        action="version",
        version=f"nfdeploy {__version__}",
        help="Print version and exit.",
    )
    _ = parser.add_argument(
        "--min-level",
        default="warning",
        help="Lowest message level to print: detailed, verbose, warning or error (default: warning).",
    )
    _ = parser.add_argument(
        "--user-profile",
        default=None,
        help="User home directory holding .nanoFramework and .dotnet/tools (default: current user's).",
    )
    sub = parser.add_subparsers(dest="command")

    verify_firmware = sub.add_parser(
        "verify-firmware",
        help="Check native requirements of the assemblies against every deployment target.",
    )
    _ = verify_firmware.add_argument(
        "--project-dir",
        required=True,
        help="Directory of the project; nano.devices.json is looked up here.",
    )
    _ = verify_firmware.add_argument(
        "--cache-dir",
        required=True,
        help="Directory for the cache files; relative to the project directory.",
    )
    _ = verify_firmware.add_argument(
        "--assembly",
        required=True,
        help="The assembly built by the project (.pe, .dll or .exe).",
    )
    _ = verify_firmware.add_argument(
        "--reference",
        action="append",
        default=[],
        metavar="PATH",
        help="A referenced assembly; may be repeated.",
    )

    verify_packages = sub.add_parser(
        "verify-packages",
        help="Check the project's packages.config against the NuGet package list.",
    )
    _ = verify_packages.add_argument(
        "--project-file",
        required=True,
        help="Path to the project file.",
    )

    targets = sub.add_parser(
        "targets",
        help="Print the deployment targets resolved from the configuration.",
    )
    _ = targets.add_argument(
        "--project-dir",
        required=True,
        help="Directory of the project; nano.devices.json is looked up here.",
    )
    return parser


def _exit_code(status: str) -> int:
    if status == "ok":
        return _EXIT_OK
    if status == "errors":
        return _EXIT_ERRORS
    return _EXIT_FATAL


def main(argv: Sequence[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    parser = _build_parser()
    try:
        args = parser.parse_args(list(argv))
    except SystemExit as e:
        return int(e.code) if isinstance(e.code, int) else _EXIT_FATAL

    command = cast(str | None, getattr(args, "command", None))
    if command is None:
        parser.print_help()
        return _EXIT_OK

    try:
        min_level = parse_level(cast(str, getattr(args, "min_level")))
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return _EXIT_FATAL

    logging.basicConfig(
        level=logging.DEBUG if min_level <= LogLevel.DETAILED else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    user_profile_raw = cast(str | None, getattr(args, "user_profile", None))
    home = Path(user_profile_raw) if user_profile_raw else Path.home()
    sink: LogSink = filtered(_stderr_sink, min_level)
    ctx = TaskContext.for_home(sink, home)

    if command == "targets":
        project_dir = Path(cast(str, getattr(args, "project_dir")))
        try:
            config = read_configuration(project_dir, ctx.config_context)
        except (OSError, ValueError) as e:
            print(f"Cannot read configuration: {e}", file=sys.stderr)
            return _EXIT_FATAL
        target_set = resolve_deployment_targets(config, sink, home=home)
        report = target_set.to_json()
        report["virtualDeviceRequested"] = target_set.virtual_requested
        _ = sys.stdout.write(dumps_json(report))
        return _EXIT_OK if target_set.has_targets else _EXIT_ERRORS

    task: Task
    if command == "verify-firmware":
        task = VerifyFirmwareConsistency(
            project_dir=Path(cast(str, getattr(args, "project_dir"))),
            cache_dir=Path(cast(str, getattr(args, "cache_dir"))),
            assembly_path=Path(cast(str, getattr(args, "assembly"))),
            referenced_assemblies=tuple(
                Path(p) for p in cast(list[str], getattr(args, "reference", []))
            ),
        )
    elif command == "verify-packages":
        task = VerifyPackageVersions(
            project_file=Path(cast(str, getattr(args, "project_file")))
        )
    else:
        parser.print_help()
        return _EXIT_FATAL

    result = run_task(task, ctx)
    return _exit_code(result.status)


if __name__ == "__main__":
    raise SystemExit(main())
