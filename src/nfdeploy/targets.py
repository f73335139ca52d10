from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

from packaging.version import InvalidVersion, Version

from .cache import mtime_fingerprint, read_snapshot
from .configuration import CONFIGURATION_FILE_NAME, DevicesConfiguration
from .logsink import LogLevel, LogSink, emit
from .model import VIRTUAL_DEVICE_NAME
from .runtime_tool import CLR_INSTANCE_FILE_NAME, global_tool_path
from .schema import JsonValue, as_str, read_json, write_json


@dataclass(frozen=True, eq=False)
class DeploymentTargetSet:
    """The targets a project deploys to, as resolved from its configuration.

    `tool_or_runtime_path` is the configured runtime instance or local tool;
    it is `None` when the global tool is used or no virtual device is wanted.
    """

    virtual_requested: bool = False
    tool_or_runtime_path: str | None = None
    runtime_last_modified_utc: str | None = None
    archives: Mapping[str, Path] = field(default_factory=dict)

    @property
    def has_targets(self) -> bool:
        return self.runtime_last_modified_utc is not None or bool(self.archives)

    @property
    def target_names(self) -> tuple[str, ...]:
        return tuple(sorted(self.archives))

    def to_json(self) -> dict[str, JsonValue]:
        return {
            "toolOrRuntimePath": self.tool_or_runtime_path,
            "runtimeLastModifiedUtc": self.runtime_last_modified_utc,
            "targetNameToArchivePath": {
                name: str(path) for name, path in sorted(self.archives.items())
            },
        }

    def matches(self, saved: dict[str, JsonValue] | None) -> bool:
        if saved is None:
            return self.tool_or_runtime_path is None and not self.archives
        current = self.to_json()
        return (
            saved.get("toolOrRuntimePath") == current["toolOrRuntimePath"]
            and saved.get("runtimeLastModifiedUtc") == current["runtimeLastModifiedUtc"]
            and saved.get("targetNameToArchivePath") == current["targetNameToArchivePath"]
        )

    def matches_snapshot(self, path: Path) -> bool:
        return self.matches(read_snapshot(path))

    def save_snapshot(self, path: Path) -> None:
        write_json(path, self.to_json())


def _resolve_runtime(
    config: DevicesConfiguration, home: Path, tool_factory: Callable[[], object] | None
) -> tuple[str | None, str | None]:
    if config.path_to_local_clr_instance_directory is not None:
        runtime_file = config.path_to_local_clr_instance_directory / CLR_INSTANCE_FILE_NAME
        snapshot_path: str | None = str(runtime_file)
    elif config.path_to_local_nanoclr is not None:
        runtime_file = config.path_to_local_nanoclr
        snapshot_path = str(runtime_file)
    else:
        runtime_file = global_tool_path(home)
        snapshot_path = None
        if not runtime_file.is_file() and tool_factory is not None:
            _ = tool_factory()

    last_modified = mtime_fingerprint(runtime_file) if runtime_file.is_file() else None
    return snapshot_path, last_modified


def _scan_descriptors(
    archive_dir: Path,
    requested: list[str],
    platforms: tuple[str, ...],
    sink: LogSink | None,
) -> dict[str, tuple[Version | None, Path | None]]:
    found: dict[str, tuple[Version | None, Path | None]] = {
        name: (None, None) for name in requested
    }
    wanted_platforms = {p.casefold() for p in platforms}

    for info_path in sorted(archive_dir.glob("*.json")):
        if not platforms and not any(
            info_path.name.startswith(f"{name}-") for name in requested
        ):
            continue
        try:
            raw = read_json(info_path)
        except (OSError, ValueError):
            continue
        if not isinstance(raw, dict):
            continue
        info = cast(dict[str, object], raw)
        name = as_str(info.get("Name"))
        version_text = as_str(info.get("Version"))
        platform = as_str(info.get("Platform"))
        if name is None or version_text is None:
            continue
        if name not in found and (
            platform is None or platform.casefold() not in wanted_platforms
        ):
            continue

        try:
            version = Version(version_text)
        except InvalidVersion:
            emit(
                sink,
                LogLevel.WARNING,
                f"Cannot parse version '{version_text}' in firmware descriptor '{info_path}'; the descriptor is ignored.",
            )
            continue

        current, _ = found.get(name, (None, None))
        if current is None or version > current:
            found[name] = (version, info_path.with_suffix(""))
    return found


def resolve_deployment_targets(
    config: DevicesConfiguration,
    sink: LogSink | None,
    *,
    home: Path,
    tool_factory: Callable[[], object] | None = None,
) -> DeploymentTargetSet:
    """Resolve the configured device types and platforms to deployment targets.

    `tool_factory` is called to install the global runtime tool when the
    virtual device is requested and the tool is not present yet.
    """
    virtual_requested = VIRTUAL_DEVICE_NAME in config.device_types
    tool_or_runtime_path: str | None = None
    last_modified: str | None = None
    if virtual_requested:
        tool_or_runtime_path, last_modified = _resolve_runtime(
            config, home, tool_factory
        )

    archives: dict[str, Path] = {}
    device_types = [dt for dt in config.device_types if dt != VIRTUAL_DEVICE_NAME]
    if config.platforms or device_types:
        requested: list[str] = []
        for device_type in device_types:
            names = config.targets_for(device_type)
            if not names:
                emit(
                    sink,
                    LogLevel.WARNING,
                    f"No target names provided for '{device_type}' in 'DeviceTypes' as read from the '{CONFIGURATION_FILE_NAME}' files.",
                )
            for name in names:
                if name not in requested:
                    requested.append(name)

        archive_dir = config.firmware_archive_path
        if archive_dir is None:
            emit(
                sink,
                LogLevel.ERROR,
                f"No value provided for 'FirmwareArchivePath' in any of the '{CONFIGURATION_FILE_NAME}' files.",
            )
        elif not archive_dir.is_dir():
            emit(
                sink,
                LogLevel.ERROR,
                f"Directory '{archive_dir}' not found; read as 'FirmwareArchivePath' from the '{CONFIGURATION_FILE_NAME}' files.",
            )
        else:
            found = _scan_descriptors(archive_dir, requested, config.platforms, sink)
            for name in sorted(found):
                _, archive_path = found[name]
                if archive_path is None or not archive_path.is_file():
                    emit(
                        sink,
                        LogLevel.ERROR,
                        f"No firmware package found for target '{name}' (read from the '{CONFIGURATION_FILE_NAME}' files).",
                    )
                else:
                    archives[name] = archive_path

    return DeploymentTargetSet(
        virtual_requested=virtual_requested,
        tool_or_runtime_path=tool_or_runtime_path,
        runtime_last_modified_utc=last_modified,
        archives=archives,
    )
