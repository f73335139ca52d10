"""Native requirements of compiled nanoFramework modules.

A module is a pair of files: the primary binary (`.dll` / `.exe`) carrying the
managed metadata, and the device-runtime image (`.pe`) whose header carries the
checksum of the native-call interface.
"""

from __future__ import annotations

import struct
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .assembly_image import AssemblyImageError, read_assembly_image
from .cache import KeyedCache, mtime_fingerprint
from .logsink import LogLevel, LogSink, emit
from .model import NativeRequirement
from .schema import JsonValue

PE_CHECKSUM_OFFSET = 0x14

_PRIMARY_SUFFIXES = (".exe", ".dll")


@dataclass(frozen=True)
class ModuleMetadata:
    assembly_path: Path
    pe_path: Path
    version: str | None
    native: NativeRequirement | None

    @property
    def owner_name(self) -> str:
        return self.assembly_path.name


@dataclass(frozen=True)
class _ModuleFacts:
    version: str | None
    native: NativeRequirement | None


def _primary_for_pe(pe_path: Path) -> Path:
    for suffix in _PRIMARY_SUFFIXES:
        candidate = pe_path.with_suffix(suffix)
        if candidate.is_file():
            return candidate
    return pe_path


def read_native_checksum(pe_path: Path) -> int | None:
    """Return the native-interface checksum of a `.pe` image; `None` if none is required."""
    if not pe_path.is_file():
        return None
    with pe_path.open("rb") as f:
        _ = f.seek(PE_CHECKSUM_OFFSET)
        raw = f.read(4)
    if len(raw) < 4:
        return None
    checksum = int(cast(tuple[int], struct.unpack("<I", raw))[0])
    return checksum or None


def _read_facts(assembly_path: Path, pe_path: Path) -> _ModuleFacts:
    checksum = read_native_checksum(pe_path)
    if not assembly_path.is_file():
        return _ModuleFacts(version=None, native=None)
    image = read_assembly_image(assembly_path)
    native: NativeRequirement | None = None
    if checksum is not None and image.native_version is not None:
        native = NativeRequirement(
            assembly_name=assembly_path.stem,
            version=image.native_version,
            checksum=checksum,
        )
    return _ModuleFacts(version=image.version, native=native)


def read_module_metadata_file(path: Path) -> ModuleMetadata:
    """Read one module given its `.pe`, `.dll` or `.exe` path.

    Raises AssemblyImageError when the primary binary exists but cannot be parsed.
    """
    if path.suffix.lower() == ".pe":
        pe_path = path
        assembly_path = _primary_for_pe(path)
    else:
        assembly_path = path
        pe_path = path.with_suffix(".pe")
    facts = _read_facts(assembly_path, pe_path)
    return ModuleMetadata(
        assembly_path=assembly_path,
        pe_path=pe_path,
        version=facts.version,
        native=facts.native,
    )


def _encode_facts(facts: _ModuleFacts) -> dict[str, JsonValue]:
    native = facts.native
    return {
        "version": facts.version,
        "nativeName": native.assembly_name if native else None,
        "nativeVersion": native.version if native else None,
        "checksum": native.checksum if native else None,
    }


def _decode_facts(entry: dict[str, JsonValue]) -> _ModuleFacts:
    version = entry.get("version")
    if version is not None and not isinstance(version, str):
        raise TypeError("version")
    name = entry.get("nativeName")
    if name is None:
        return _ModuleFacts(version=version, native=None)
    native_version = entry["nativeVersion"]
    checksum = entry["checksum"]
    if (
        not isinstance(name, str)
        or not isinstance(native_version, str)
        or not isinstance(checksum, int)
        or isinstance(checksum, bool)
    ):
        raise TypeError("native requirement")
    return _ModuleFacts(
        version=version,
        native=NativeRequirement(
            assembly_name=name, version=native_version, checksum=checksum
        ),
    )


def read_module_metadata(
    paths: Iterable[Path], cache_path: Path | None, sink: LogSink | None
) -> list[ModuleMetadata]:
    """Read many modules, reusing cached facts for unchanged primary binaries.

    Paths with other extensions and `.pe` files without a primary binary are
    skipped. The cache file is rewritten with exactly the modules seen here.
    """
    cache: KeyedCache[_ModuleFacts] = KeyedCache(
        path=cache_path,
        encode=_encode_facts,
        decode=_decode_facts,
        sink=sink,
        label="cached assembly metadata",
    )
    cache.load()

    result: list[ModuleMetadata] = []
    for path in paths:
        suffix = path.suffix.lower()
        if suffix == ".pe":
            pe_path = path
            assembly_path = _primary_for_pe(path)
            if assembly_path == path:
                continue
        elif suffix in _PRIMARY_SUFFIXES:
            assembly_path = path
            pe_path = path.with_suffix(".pe")
        else:
            continue
        if not assembly_path.is_file():
            continue

        key = assembly_path.name
        fingerprint = mtime_fingerprint(assembly_path)
        facts = cache.lookup(key, fingerprint)
        if facts is None:
            try:
                facts = _read_facts(assembly_path, pe_path)
            except AssemblyImageError as e:
                emit(
                    sink,
                    LogLevel.ERROR,
                    f"Cannot read assembly metadata from '{assembly_path}': {e}",
                )
                continue
            cache.store(key, fingerprint, facts)

        result.append(
            ModuleMetadata(
                assembly_path=assembly_path,
                pe_path=pe_path,
                version=facts.version,
                native=facts.native,
            )
        )

    cache.save()
    return result


def read_module_metadata_dir(
    directory: Path, cache_path: Path | None, sink: LogSink | None
) -> list[ModuleMetadata]:
    """Read every `*.pe` module in `directory` (not recursive)."""
    if not directory.is_dir():
        return []
    return read_module_metadata(sorted(directory.glob("*.pe")), cache_path, sink)
