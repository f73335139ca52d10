from __future__ import annotations

import io
import json
import struct
import zipfile
from collections.abc import Callable
from pathlib import Path

import pytest

from nfdeploy.logsink import LogLevel


class RecordingSink:
    def __init__(self) -> None:
        self.records: list[tuple[LogLevel, str]] = []

    def __call__(self, level: LogLevel, message: str) -> None:
        self.records.append((level, message))

    def messages(self, level: LogLevel) -> list[str]:
        return [m for lvl, m in self.records if lvl == level]

    @property
    def errors(self) -> list[str]:
        return self.messages(LogLevel.ERROR)

    @property
    def warnings(self) -> list[str]:
        return self.messages(LogLevel.WARNING)


def _u16(v: int) -> bytes:
    return struct.pack("<H", v)


def _u32(v: int) -> bytes:
    return struct.pack("<I", v)


def _pad4(b: bytes) -> bytes:
    return bytes(b) + b"\x00" * (-len(b) % 4)


def _compressed(n: int) -> bytes:
    if n < 0x80:
        return bytes([n])
    return bytes([0x80 | (n >> 8), n & 0xFF])


class _Heap:
    def __init__(self) -> None:
        self.data: bytearray = bytearray(b"\x00")

    def add_string(self, s: str) -> int:
        offset = len(self.data)
        self.data += s.encode("utf-8") + b"\x00"
        return offset

    def add_blob(self, b: bytes) -> int:
        offset = len(self.data)
        self.data += _compressed(len(b)) + b
        return offset


def make_assembly_image(
    *,
    version: tuple[int, int, int, int] = (1, 0, 0, 0),
    native_version: str | None = "100.5.0.19",
    attribute_name: str = "AssemblyNativeVersionAttribute",
) -> bytes:
    """Build a minimal PE32 managed image with Module, TypeRef, MemberRef,
    CustomAttribute and Assembly tables."""
    strings = _Heap()
    blobs = _Heap()
    module_name = strings.add_string("Test.Module.dll")
    attr_name = strings.add_string(attribute_name)
    attr_ns = strings.add_string("System.Reflection")
    ctor_name = strings.add_string(".ctor")
    asm_name = strings.add_string("Test.Module")
    ctor_sig = blobs.add_blob(bytes([0x20, 0x01, 0x01, 0x0E]))

    rows = {0x00: 1, 0x01: 1, 0x0A: 1, 0x20: 1}
    value_blob = 0
    if native_version is not None:
        encoded = native_version.encode("utf-8")
        value_blob = blobs.add_blob(
            b"\x01\x00" + _compressed(len(encoded)) + encoded + b"\x00\x00"
        )
        rows[0x0C] = 1

    valid = sum(1 << t for t in rows)
    stream = bytearray()
    stream += _u32(0) + bytes([2, 0, 0, 1]) + struct.pack("<QQ", valid, 0)
    for table in sorted(rows):
        stream += _u32(rows[table])
    stream += _u16(0) + _u16(module_name) + _u16(0) * 3
    stream += _u16(0) + _u16(attr_name) + _u16(attr_ns)
    stream += _u16((1 << 3) | 1) + _u16(ctor_name) + _u16(ctor_sig)
    if native_version is not None:
        stream += _u16((1 << 5) | 14) + _u16((1 << 3) | 3) + _u16(value_blob)
    stream += _u32(0x8004) + b"".join(_u16(p) for p in version)
    stream += _u32(0) + _u16(0) + _u16(asm_name) + _u16(0)

    streams = [
        ("#~", _pad4(bytes(stream))),
        ("#Strings", _pad4(bytes(strings.data))),
        ("#Blob", _pad4(bytes(blobs.data))),
    ]
    version_str = _pad4(b"v4.0.30319\x00")
    header_len = 16 + len(version_str) + 4
    header_len += sum(8 + len(_pad4(n.encode() + b"\x00")) for n, _ in streams)

    root = bytearray()
    root += _u32(0x424A5342) + _u16(1) + _u16(1) + _u32(0)
    root += _u32(len(version_str)) + version_str + _u16(0) + _u16(len(streams))
    offset = header_len
    for name, data in streams:
        root += _u32(offset) + _u32(len(data)) + _pad4(name.encode() + b"\x00")
        offset += len(data)
    for _, data in streams:
        root += data

    cli = _u32(72) + _u16(2) + _u16(5) + _u32(0x2000 + 72) + _u32(len(root))
    cli += _u32(1) + bytes(72 - 20)
    section = cli + bytes(root)
    raw_size = len(section) + (-len(section) % 0x200)

    image = bytearray(0x200)
    image[0:2] = b"MZ"
    image[0x3C:0x40] = _u32(0x80)
    image[0x80:0x84] = b"PE\x00\x00"
    image[0x84:0x98] = _u16(0x14C) + _u16(1) + _u32(0) * 3 + _u16(224) + _u16(0x2102)
    optional = bytearray(224)
    optional[0:2] = _u16(0x10B)
    optional[92:96] = _u32(16)
    optional[96 + 14 * 8 : 96 + 15 * 8] = _u32(0x2000) + _u32(72)
    image[0x98 : 0x98 + 224] = optional
    sec = bytearray(40)
    sec[0:8] = b".text\x00\x00\x00"
    sec[8:12] = _u32(len(section))
    sec[12:16] = _u32(0x2000)
    sec[16:20] = _u32(raw_size)
    sec[20:24] = _u32(0x200)
    image[0x178:0x1A0] = sec
    return bytes(image) + section + bytes(raw_size - len(section))


def make_pe_image(checksum: int) -> bytes:
    return b"NFMRK2\x00\x00" + bytes(0x14 - 8) + _u32(checksum) + bytes(16)


def make_firmware_zip(manifest: str | None, *, member: str = "native_assemblies.csv") -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("nanoCLR.bin", b"\x00" * 16)
        if manifest is not None:
            zf.writestr(member, manifest)
    return buf.getvalue()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def assembly_image() -> Callable[..., bytes]:
    return make_assembly_image


@pytest.fixture
def write_module() -> Callable[..., Path]:
    """Write `<name>.dll` (or `.exe`) plus `<name>.pe`; returns the `.pe` path."""

    def _write(
        directory: Path,
        name: str,
        *,
        checksum: int = 0,
        native_version: str | None = None,
        version: tuple[int, int, int, int] = (1, 0, 0, 0),
        primary_suffix: str = ".dll",
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        _ = (directory / f"{name}{primary_suffix}").write_bytes(
            make_assembly_image(version=version, native_version=native_version)
        )
        pe_path = directory / f"{name}.pe"
        _ = pe_path.write_bytes(make_pe_image(checksum))
        return pe_path

    return _write


@pytest.fixture
def write_firmware() -> Callable[..., Path]:
    """Write a firmware archive and its descriptor sidecar; returns the archive path."""

    def _write(
        directory: Path,
        name: str,
        version: str,
        manifest: str | None,
        *,
        platform: str | None = None,
    ) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        archive = directory / f"{name}-{version}.zip"
        _ = archive.write_bytes(make_firmware_zip(manifest))
        descriptor: dict[str, str] = {"Name": name, "Version": version}
        if platform is not None:
            descriptor["Platform"] = platform
        _ = (directory / f"{archive.name}.json").write_text(
            json.dumps(descriptor), encoding="utf-8"
        )
        return archive

    return _write
