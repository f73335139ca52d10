"""Management of the `nanoclr` runtime tool.

The tool is a .NET global tool (or a locally installed copy) that hosts the
virtual nanoDevice. It is queried for its version, updated through
`dotnet tool update` and asked for the native implementations it provides.
Every invocation happens under the cross-process lock of the tool directory:
shared for queries, exclusive for updates.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import cast
from urllib import request as url_request

from packaging.version import InvalidVersion, Version

from .configuration import DevicesConfiguration
from .locking import CrossProcessLock
from .logsink import LogLevel, LogSink, emit
from .model import NativeRequirement, parse_checksum

TOOL_NAME = "nanoclr"
CLR_INSTANCE_FILE_NAME = "nanoFramework.nanoCLR.dll"
NUGET_INDEX_URL = "https://api.nuget.org/v3-flatcontainer/nanoclr/index.json"
NATIVE_ASSEMBLIES_MARKER = "Native assemblies:"

VERSION_TIMEOUT_S = 10.0
UPDATE_TIMEOUT_S = 60.0
INVENTORY_TIMEOUT_S = 60.0

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")
_UPDATED_VERSION_RE = re.compile(r"version '(\d+\.\d+\.\d+)'")


def global_tool_path(home: Path, *, windows: bool | None = None) -> Path:
    if windows is None:
        windows = os.name == "nt"
    return home / ".dotnet" / "tools" / (TOOL_NAME + ".exe" if windows else TOOL_NAME)


@dataclass(frozen=True)
class _CommandResult:
    exit_code: int | None
    stdout: str
    executable_missing: bool = False
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _run_command(argv: list[str], *, timeout_s: float) -> _CommandResult:
    try:
        proc = subprocess.run(
            argv,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout_s,
            stdin=subprocess.DEVNULL,
        )
    except FileNotFoundError:
        return _CommandResult(exit_code=None, stdout="", executable_missing=True)
    except subprocess.TimeoutExpired as e:
        stdout = e.stdout or ""
        if isinstance(stdout, bytes):
            stdout = stdout.decode("utf-8", errors="replace")
        return _CommandResult(exit_code=None, stdout=stdout, timed_out=True)
    return _CommandResult(exit_code=int(proc.returncode), stdout=proc.stdout or "")


def parse_tool_version(text: str) -> str | None:
    """Return the last `x.y.z` in the tool's help output."""
    found = _VERSION_RE.findall(text)
    if not found:
        return None
    return str(found[-1])


def parse_native_inventory(stdout: str) -> list[NativeRequirement] | None:
    """Parse the `instance --getnativeassemblies` listing.

    Returns `None` when the output has no `Native assemblies:` section.
    """
    result: list[NativeRequirement] | None = None
    for line in stdout.splitlines():
        if not line.strip():
            continue
        if line.startswith(NATIVE_ASSEMBLIES_MARKER):
            if result is None:
                result = []
            continue
        if result is None:
            continue
        parts = line.split()
        if len(parts) != 3:
            continue
        checksum = parse_checksum(parts[2])
        if checksum is None:
            continue
        version = parts[1][1:] if parts[1].startswith("v") else parts[1]
        result.append(
            NativeRequirement(assembly_name=parts[0], version=version, checksum=checksum)
        )
    return result


def fetch_latest_version(
    url: str = NUGET_INDEX_URL, *, timeout_s: float = 30.0
) -> str | None:
    """Return the last published version listed by the package index, if reachable."""
    req = url_request.Request(
        url=url, method="GET", headers={"User-Agent": "nfdeploy"}
    )
    try:
        with url_request.urlopen(req, timeout=timeout_s) as resp:
            body = cast(bytes, resp.read())
        payload = cast(object, json.loads(body.decode("utf-8")))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    versions = cast(dict[str, object], payload).get("versions")
    if not isinstance(versions, list) or not versions:
        return None
    last = cast(list[object], versions)[-1]
    return last if isinstance(last, str) else None


def _is_newer(candidate: str, current: str) -> bool:
    try:
        return Version(candidate) > Version(current)
    except InvalidVersion:
        return False


class RuntimeToolManager:
    def __init__(
        self,
        *,
        tool_path: Path | None,
        instance_dir: Path | None,
        auto_update: bool,
        home: Path,
        sink: LogSink | None,
        lock: CrossProcessLock | None = None,
        fetch_latest: Callable[[], str | None] = fetch_latest_version,
    ) -> None:
        self.tool_path: Path | None = tool_path
        self.instance_dir: Path | None = instance_dir
        self.auto_update: bool = auto_update
        self.home: Path = home
        self.is_installed: bool = False
        self._sink: LogSink | None = sink
        self._lock: CrossProcessLock = lock or CrossProcessLock.for_tool(
            tool_path, home=home
        )
        self._fetch_latest: Callable[[], str | None] = fetch_latest

    @classmethod
    def from_configuration(
        cls,
        config: DevicesConfiguration,
        *,
        home: Path,
        sink: LogSink | None,
        fetch_latest: Callable[[], str | None] = fetch_latest_version,
    ) -> RuntimeToolManager:
        """Create the manager for `config` and make sure the tool is usable.

        The global tool is installed or updated on demand; a configured local
        tool or runtime instance is only checked for existence.
        """
        tool_path = config.path_to_local_nanoclr
        instance_dir = config.path_to_local_clr_instance_directory
        manager = cls(
            tool_path=tool_path,
            instance_dir=instance_dir,
            auto_update=tool_path is None and instance_dir is None,
            home=home,
            sink=sink,
            fetch_latest=fetch_latest,
        )
        manager.check_instance_dir()
        if tool_path is not None:
            manager.is_installed = tool_path.is_file()
            if not manager.is_installed:
                emit(
                    sink,
                    LogLevel.ERROR,
                    f"*** Failed to locate nanoCLR tool '{tool_path}' ***",
                )
        else:
            _ = manager.ensure_installed()
        return manager

    @property
    def executable(self) -> str:
        if self.tool_path is not None:
            return str(self.tool_path)
        global_tool = global_tool_path(self.home)
        return str(global_tool) if global_tool.is_file() else TOOL_NAME

    def check_instance_dir(self) -> None:
        if self.instance_dir is None:
            return
        if not self.instance_dir.is_dir():
            emit(
                self._sink,
                LogLevel.ERROR,
                f"*** Failed to locate directory for nanoCLR instance '{self.instance_dir}' ***",
            )
            return
        clr_file = self.instance_dir / CLR_INSTANCE_FILE_NAME
        if not clr_file.is_file():
            emit(
                self._sink,
                LogLevel.ERROR,
                f"*** Failed to locate nanoCLR instance '{clr_file}' ***",
            )

    def _version_info(self) -> str | None:
        res = _run_command([self.executable, "--help"], timeout_s=VERSION_TIMEOUT_S)
        if not res.ok:
            self.is_installed = False
            return None
        return res.stdout

    def installed_version(self) -> str | None:
        outcome = self._lock.run(self._version_info, exclusive=False)
        if outcome.value is None:
            return None
        return parse_tool_version(outcome.value)

    def ensure_installed(self) -> bool:
        """Install the tool if missing; with auto-update, update it when a newer one is published."""
        emit(self._sink, LogLevel.DETAILED, "Install/update nanoclr tool")

        info = self._lock.run(self._version_info, exclusive=False).value
        perform_update = info is None
        if info is not None:
            current = parse_tool_version(info)
            if current is None:
                emit(self._sink, LogLevel.ERROR, "Failed to parse current nanoCLR version!")
            else:
                self.is_installed = True
                emit(self._sink, LogLevel.DETAILED, f"Running nanoclr v{current}")
                if self.auto_update:
                    latest = self._fetch_latest()
                    if latest is None:
                        emit(
                            self._sink,
                            LogLevel.DETAILED,
                            "Cannot retrieve nanoclr package; keep using the current version.",
                        )
                    elif _is_newer(latest, current):
                        perform_update = True
                    else:
                        emit(
                            self._sink,
                            LogLevel.DETAILED,
                            f"No need to update. Running v{latest}",
                        )

        if perform_update:
            _ = self._lock.run(self._install_update, exclusive=True)
        return self.is_installed

    def _install_update(self) -> None:
        argv = ["dotnet", "tool", "update"]
        if self.tool_path is None:
            argv.append("-g")
        else:
            argv.extend(["--tool-path", str(self.tool_path.parent)])
        argv.append(TOOL_NAME)

        res = _run_command(argv, timeout_s=UPDATE_TIMEOUT_S)
        if res.executable_missing:
            emit(
                self._sink,
                LogLevel.ERROR,
                "Failed to install/update nanoclr: 'dotnet' was not found.",
            )
            self.is_installed = False
            return
        if not res.ok:
            detail = "timed out" if res.timed_out else f"Exit code {res.exit_code}."
            emit(
                self._sink,
                LogLevel.ERROR,
                f"Failed to install/update nanoclr. {detail}",
            )
            self.is_installed = False
            return

        # "updated from version 'a' to version 'b'": the last one is current.
        found = _UPDATED_VERSION_RE.findall(res.stdout)
        if not found:
            emit(
                self._sink,
                LogLevel.ERROR,
                f"*** Failed to install/update nanoclr *** {res.stdout}",
            )
            self.is_installed = False
            return
        emit(
            self._sink,
            LogLevel.DETAILED,
            f"Install/update successful. Running v{found[-1]}",
        )
        self.is_installed = True

    def _query_native_inventory(self) -> list[NativeRequirement] | None:
        args = ["instance", "--getnativeassemblies"]
        if self.instance_dir is not None:
            args.extend(["--clrpath", str(self.instance_dir)])
        emit(
            self._sink,
            LogLevel.DETAILED,
            f"Launching nanoCLR with these arguments: '{' '.join(args)}'",
        )

        res = _run_command([self.executable, *args], timeout_s=INVENTORY_TIMEOUT_S)
        if res.executable_missing:
            emit(
                self._sink,
                LogLevel.VERBOSE,
                f"nanoCLR tool '{self.executable}' not found.",
            )
            return None
        if not res.ok:
            # Older tools do not know --getnativeassemblies.
            emit(self._sink, LogLevel.VERBOSE, res.stdout)
            if res.timed_out:
                emit(self._sink, LogLevel.VERBOSE, "nanoCLR timed out.")
            else:
                emit(
                    self._sink,
                    LogLevel.VERBOSE,
                    f"nanoCLR ended with exit code '{res.exit_code}'.",
                )
            return None
        return parse_native_inventory(res.stdout)

    def native_inventory(self) -> list[NativeRequirement] | None:
        return self._lock.run(self._query_native_inventory, exclusive=False).value
