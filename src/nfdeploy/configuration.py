"""Hierarchical `nano.devices.json` configuration.

A configuration file may name a parent directory through
`GlobalSettingsDirectoryPath`; the parent is read first and every setting the
child declares overrides it. Relative paths are resolved against the directory
of the file that declares them. Reserved serial ports are additionally merged
from the user-wide configuration directory carried by `ConfigContext`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

from .schema import as_str, as_str_list, read_json

CONFIGURATION_FILE_NAME = "nano.devices.json"
DEFAULT_VIRTUAL_DEVICE_SERIAL_PORT = "COM30"
USER_PROFILE_DIR_NAME = ".nanoFramework"

_log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConfigContext:
    user_profile_dir: Path

    @classmethod
    def for_home(cls, home: Path | None = None) -> ConfigContext:
        base = home if home is not None else Path.home()
        return cls(user_profile_dir=base / USER_PROFILE_DIR_NAME)


@dataclass(frozen=True, eq=False)
class DevicesConfiguration:
    nuget_package_list: Path | None = None
    path_to_local_nanoclr: Path | None = None
    path_to_local_clr_instance_directory: Path | None = None
    virtual_device_serial_port: str = DEFAULT_VIRTUAL_DEVICE_SERIAL_PORT
    reserved_serial_ports: tuple[str, ...] = ()
    firmware_archive_path: Path | None = None
    device_type_targets: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    device_types: tuple[str, ...] = ()
    platforms: tuple[str, ...] = ()

    @property
    def device_type_names(self) -> tuple[str, ...]:
        return tuple(self.device_type_targets)

    def targets_for(self, device_type: str) -> tuple[str, ...]:
        return self.device_type_targets.get(device_type, ())


@dataclass
class _Settings:
    nuget_package_list: Path | None = None
    path_to_local_nanoclr: Path | None = None
    path_to_local_clr_instance_directory: Path | None = None
    virtual_device_serial_port: str | None = None
    reserved_serial_ports: list[str] = field(default_factory=list)
    firmware_archive_path: Path | None = None
    device_type_targets: dict[str, tuple[str, ...]] = field(default_factory=dict)
    device_types: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)


def _complete_path(directory: Path, value: object) -> Path | None:
    text = as_str(value)
    if text is None or not text.strip():
        return None
    return Path(os.path.abspath(directory / text))


def _device_type_targets(value: object) -> dict[str, list[str]]:
    """Normalize `DeviceTypeTargets`; each value is a string or a list of strings."""
    if not isinstance(value, dict):
        return {}
    result: dict[str, list[str]] = {}
    for key, targets in cast(dict[str, object], value).items():
        if isinstance(targets, str):
            names = [targets]
        else:
            names = as_str_list(targets) or []
        result[key] = [n for n in names if n.strip()]
    return result


def _read_file(
    directory: Path, *, reserved_ports_only: bool, chain: frozenset[Path]
) -> _Settings:
    config_file = directory / CONFIGURATION_FILE_NAME
    if not config_file.is_file():
        return _Settings()
    raw = read_json(config_file)
    if not isinstance(raw, dict):
        return _Settings()
    doc = cast(dict[str, object], raw)

    parent = _complete_path(directory, doc.get("GlobalSettingsDirectoryPath"))
    if not reserved_ports_only and parent is not None:
        if parent in chain:
            _log.warning("configuration inheritance loop at %s", parent)
            result = _Settings()
        else:
            result = _read_file(
                parent, reserved_ports_only=False, chain=chain | {parent}
            )
    else:
        result = _Settings()

    reserved = as_str_list(doc.get("ReservedSerialPorts"))
    if reserved is not None:
        result.reserved_serial_ports = reserved

    if reserved_ports_only:
        return result

    if "NuGetPackageList" in doc:
        result.nuget_package_list = _complete_path(directory, doc["NuGetPackageList"])
    if "PathToLocalNanoCLR" in doc:
        result.path_to_local_nanoclr = _complete_path(
            directory, doc["PathToLocalNanoCLR"]
        )
    if "PathToLocalCLRInstanceDirectory" in doc:
        result.path_to_local_clr_instance_directory = _complete_path(
            directory, doc["PathToLocalCLRInstanceDirectory"]
        )
    port = as_str(doc.get("VirtualDeviceSerialPort"))
    if port is not None:
        result.virtual_device_serial_port = port if port.strip() else None
    if "FirmwareArchivePath" in doc:
        result.firmware_archive_path = _complete_path(
            directory, doc["FirmwareArchivePath"]
        )

    device_types = as_str_list(doc.get("DeviceTypes"))
    if device_types is not None:
        result.device_types = device_types
    platforms = as_str_list(doc.get("Platforms"))
    if platforms is not None:
        result.platforms = platforms

    for device_type, targets in _device_type_targets(
        doc.get("DeviceTypeTargets")
    ).items():
        if targets:
            result.device_type_targets[device_type] = tuple(targets)
        else:
            _ = result.device_type_targets.pop(device_type, None)

    return result


def read_configuration(directory: Path, context: ConfigContext) -> DevicesConfiguration:
    """Read the configuration that applies to `directory`.

    A missing or non-object file yields the defaults. Malformed JSON raises
    ValueError.
    """
    start = Path(os.path.abspath(directory))
    settings = _read_file(start, reserved_ports_only=False, chain=frozenset({start}))
    user = _read_file(
        context.user_profile_dir, reserved_ports_only=True, chain=frozenset()
    )

    reserved = list(settings.reserved_serial_ports)
    for port in user.reserved_serial_ports:
        if port not in reserved:
            reserved.append(port)
    virtual_port = settings.virtual_device_serial_port or DEFAULT_VIRTUAL_DEVICE_SERIAL_PORT
    if virtual_port in reserved:
        reserved.remove(virtual_port)

    return DevicesConfiguration(
        nuget_package_list=settings.nuget_package_list,
        path_to_local_nanoclr=settings.path_to_local_nanoclr,
        path_to_local_clr_instance_directory=settings.path_to_local_clr_instance_directory,
        virtual_device_serial_port=virtual_port,
        reserved_serial_ports=tuple(reserved),
        firmware_archive_path=settings.firmware_archive_path,
        device_type_targets=dict(settings.device_type_targets),
        device_types=tuple(settings.device_types),
        platforms=tuple(settings.platforms),
    )
