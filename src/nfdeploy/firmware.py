from __future__ import annotations

import io
import zipfile
from pathlib import Path
from typing import cast

from .cache import KeyedCache, mtime_fingerprint
from .logsink import LogLevel, LogSink, emit
from .model import NativeRequirement, parse_checksum
from .schema import JsonValue

MANIFEST_NAME = "native_assemblies.csv"


def _member_basename(name: str) -> str:
    return name.replace("\\", "/").rsplit("/", 1)[-1]


def parse_manifest(text: str) -> list[NativeRequirement]:
    """Parse `name,version,checksum` lines; malformed lines are skipped."""
    result: list[NativeRequirement] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        parts = line.split(",")
        if len(parts) != 3:
            continue
        checksum = parse_checksum(parts[2])
        if checksum is None:
            continue
        result.append(
            NativeRequirement(
                assembly_name=parts[0].strip(),
                version=parts[1].strip(),
                checksum=checksum,
            )
        )
    return result


def read_firmware_inventory(
    archive_path: Path, sink: LogSink | None
) -> list[NativeRequirement] | None:
    """Read the native implementations listed in a firmware archive.

    Returns `None` when the archive has no manifest or cannot be read; the
    latter is also reported as an Error.
    """
    try:
        with zipfile.ZipFile(archive_path) as zf:
            member = next(
                (
                    info
                    for info in zf.infolist()
                    if _member_basename(info.filename) == MANIFEST_NAME
                ),
                None,
            )
            if member is None:
                return None
            with zf.open(member, "r") as raw:
                text = io.TextIOWrapper(raw, encoding="utf-8-sig").read()
    except Exception as exc:
        emit(
            sink,
            LogLevel.ERROR,
            f"Cannot read firmware package '{archive_path}': {exc}",
        )
        return None
    return parse_manifest(text)


def _encode_inventory(entries: list[NativeRequirement]) -> dict[str, JsonValue]:
    return {
        "nativeAssemblies": [
            {"name": e.assembly_name, "version": e.version, "checksum": e.checksum}
            for e in entries
        ]
    }


def _decode_inventory(entry: dict[str, JsonValue]) -> list[NativeRequirement]:
    items = entry["nativeAssemblies"]
    if not isinstance(items, list):
        raise TypeError("nativeAssemblies")
    result: list[NativeRequirement] = []
    for item in items:
        obj = cast(dict[str, JsonValue], item)
        name, version, checksum = obj["name"], obj["version"], obj["checksum"]
        if (
            not isinstance(name, str)
            or not isinstance(version, str)
            or not isinstance(checksum, int)
        ):
            raise TypeError("native assembly")
        result.append(
            NativeRequirement(assembly_name=name, version=version, checksum=checksum)
        )
    return result


class FirmwareInventoryCache:
    """Per-archive inventories, reused while the archive's mtime is unchanged.

    Archives without a manifest or that fail to open are not cached.
    """

    def __init__(self, cache_path: Path | None, sink: LogSink | None) -> None:
        self._sink: LogSink | None = sink
        self._cache: KeyedCache[list[NativeRequirement]] = KeyedCache(
            path=cache_path,
            encode=_encode_inventory,
            decode=_decode_inventory,
            sink=sink,
            label="cached firmware inventory",
        )
        self._cache.load()

    def read(self, archive_path: Path) -> list[NativeRequirement] | None:
        try:
            fingerprint = mtime_fingerprint(archive_path)
        except OSError:
            return read_firmware_inventory(archive_path, self._sink)
        return self._cache.get_or_compute(
            archive_path.name,
            fingerprint,
            lambda: read_firmware_inventory(archive_path, self._sink),
        )

    def save(self) -> None:
        self._cache.save()
