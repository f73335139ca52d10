from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING, cast

from .firmware import FirmwareInventoryCache, read_firmware_inventory
from .logsink import LogLevel, LogSink, emit
from .model import VIRTUAL_DEVICE_NAME, ImplementedNativeVersion, NativeRequirement
from .schema import JsonValue, read_json, write_json
from .targets import DeploymentTargetSet

if TYPE_CHECKING:
    from .runtime_tool import RuntimeToolManager


def merge_inventories(
    per_target: Iterable[tuple[str, Iterable[NativeRequirement]]],
) -> list[ImplementedNativeVersion]:
    """Group identical (name, version, checksum) triples across targets, sorted by triple."""
    merged: dict[tuple[str, str, int], set[str]] = {}
    for target_name, entries in per_target:
        for entry in entries:
            merged.setdefault(entry.key, set()).add(target_name)
    return [
        ImplementedNativeVersion(
            native=NativeRequirement(assembly_name=name, version=version, checksum=checksum),
            target_names=tuple(sorted(names)),
        )
        for (name, version, checksum), names in sorted(merged.items())
    ]


def encode_implemented_versions(items: list[ImplementedNativeVersion]) -> JsonValue:
    return [
        {
            "name": item.assembly_name,
            "version": item.version,
            "checksum": item.checksum,
            "targetNames": list(item.target_names),
        }
        for item in items
    ]


def decode_implemented_versions(raw: JsonValue) -> list[ImplementedNativeVersion]:
    if not isinstance(raw, list):
        raise TypeError("implemented versions must be a JSON list")
    result: list[ImplementedNativeVersion] = []
    for item in raw:
        obj = cast(dict[str, JsonValue], item)
        name, version, checksum = obj["name"], obj["version"], obj["checksum"]
        targets = obj["targetNames"]
        if (
            not isinstance(name, str)
            or not isinstance(version, str)
            or not isinstance(checksum, int)
            or not isinstance(targets, list)
        ):
            raise TypeError("malformed implemented version entry")
        result.append(
            ImplementedNativeVersion(
                native=NativeRequirement(
                    assembly_name=name, version=version, checksum=checksum
                ),
                target_names=tuple(str(t) for t in targets),
            )
        )
    return result


def save_implemented_versions(path: Path, items: list[ImplementedNativeVersion]) -> None:
    write_json(path, encode_implemented_versions(items))


def load_implemented_versions(path: Path) -> list[ImplementedNativeVersion]:
    """Reload a saved merge verbatim; empty when the file does not exist."""
    if not path.is_file():
        return []
    return decode_implemented_versions(cast(JsonValue, read_json(path)))


def collect_implemented_versions(
    targets: DeploymentTargetSet,
    sink: LogSink | None,
    *,
    tool_factory: Callable[[], RuntimeToolManager] | None = None,
    firmware_cache: FirmwareInventoryCache | None = None,
    save_path: Path | None = None,
) -> list[ImplementedNativeVersion]:
    """Gather and merge the native inventories of every resolved target.

    A target whose inventory is unknown is reported as a Warning and does not
    contribute; the other targets still do.
    """
    per_target: list[tuple[str, list[NativeRequirement]]] = []

    if targets.virtual_requested and tool_factory is not None:
        virtual = tool_factory().native_inventory()
        if virtual is None:
            emit(
                sink,
                LogLevel.WARNING,
                f"No native assembly metadata available for the {VIRTUAL_DEVICE_NAME}",
            )
        else:
            per_target.append((VIRTUAL_DEVICE_NAME, virtual))

    for target_name, archive_path in sorted(targets.archives.items()):
        if firmware_cache is not None:
            entries = firmware_cache.read(archive_path)
        else:
            entries = read_firmware_inventory(archive_path, sink)
        if entries is None:
            emit(
                sink,
                LogLevel.WARNING,
                f"No native assembly metadata available for devices with firmware '{target_name}'",
            )
            continue
        per_target.append((target_name, entries))

    result = merge_inventories(per_target)
    if save_path is not None:
        save_implemented_versions(save_path, result)
    return result
