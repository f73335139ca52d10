"""Minimal ECMA-335 reader for managed (CLI) portable executables.

Only two facts are extracted from a primary binary: the Assembly table version
and the string argument of an assembly-level `AssemblyNativeVersion` custom
attribute. Everything else in the metadata is walked over, never interpreted.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import cast

_METADATA_SIGNATURE = 0x424A5342
_CLI_HEADER_DIRECTORY = 14

_TABLE_MODULE = 0x00
_TABLE_TYPEREF = 0x01
_TABLE_TYPEDEF = 0x02
_TABLE_METHODDEF = 0x06
_TABLE_MEMBERREF = 0x0A
_TABLE_CUSTOMATTRIBUTE = 0x0C
_TABLE_ASSEMBLY = 0x20

NATIVE_VERSION_ATTRIBUTE_NAMES = frozenset(
    {"AssemblyNativeVersionAttribute", "AssemblyNativeVersion"}
)

# Coded index kinds: (tag bits, tables per tag; None for unused tags).
_CODED: dict[str, tuple[int, tuple[int | None, ...]]] = {
    "TypeDefOrRef": (2, (0x02, 0x01, 0x1B)),
    "HasConstant": (2, (0x04, 0x08, 0x17)),
    "HasCustomAttribute": (
        5,
        (
            0x06, 0x04, 0x01, 0x02, 0x08, 0x09, 0x0A, 0x00, 0x0E, 0x17, 0x14,
            0x11, 0x1A, 0x1B, 0x20, 0x23, 0x26, 0x27, 0x28, 0x2A, 0x2C, 0x2B,
        ),
    ),
    "HasFieldMarshal": (1, (0x04, 0x08)),
    "HasDeclSecurity": (2, (0x02, 0x06, 0x20)),
    "MemberRefParent": (3, (0x02, 0x01, 0x1A, 0x06, 0x1B)),
    "HasSemantics": (1, (0x14, 0x17)),
    "MethodDefOrRef": (1, (0x06, 0x0A)),
    "MemberForwarded": (1, (0x04, 0x06)),
    "CustomAttributeType": (3, (None, None, 0x06, 0x0A, None)),
    "ResolutionScope": (2, (0x00, 0x1A, 0x23, 0x01)),
}

# Column layouts of tables 0x00..0x20. "u1/u2/u4" are constants, "str/guid/blob"
# heap indexes, "=NN" a simple index into table NN, anything else a coded index.
_SCHEMA: tuple[tuple[str, ...], ...] = (
    ("u2", "str", "guid", "guid", "guid"),  # Module
    ("ResolutionScope", "str", "str"),  # TypeRef
    ("u4", "str", "str", "TypeDefOrRef", "=04", "=06"),  # TypeDef
    ("=04",),  # FieldPtr
    ("u2", "str", "blob"),  # Field
    ("=06",),  # MethodPtr
    ("u4", "u2", "u2", "str", "blob", "=08"),  # MethodDef
    ("=08",),  # ParamPtr
    ("u2", "u2", "str"),  # Param
    ("=02", "TypeDefOrRef"),  # InterfaceImpl
    ("MemberRefParent", "str", "blob"),  # MemberRef
    ("u1", "u1", "HasConstant", "blob"),  # Constant
    ("HasCustomAttribute", "CustomAttributeType", "blob"),  # CustomAttribute
    ("HasFieldMarshal", "blob"),  # FieldMarshal
    ("u2", "HasDeclSecurity", "blob"),  # DeclSecurity
    ("u2", "u4", "=02"),  # ClassLayout
    ("u4", "=04"),  # FieldLayout
    ("blob",),  # StandAloneSig
    ("=02", "=14"),  # EventMap
    ("=14",),  # EventPtr
    ("u2", "str", "TypeDefOrRef"),  # Event
    ("=02", "=17"),  # PropertyMap
    ("=17",),  # PropertyPtr
    ("u2", "str", "blob"),  # Property
    ("u2", "=06", "HasSemantics"),  # MethodSemantics
    ("=02", "MethodDefOrRef", "MethodDefOrRef"),  # MethodImpl
    ("str",),  # ModuleRef
    ("blob",),  # TypeSpec
    ("u2", "MemberForwarded", "str", "=1A"),  # ImplMap
    ("u4", "=04"),  # FieldRVA
    ("u4", "u4"),  # EncLog
    ("u4",),  # EncMap
    ("u4", "u2", "u2", "u2", "u2", "u4", "blob", "str", "str"),  # Assembly
)


class AssemblyImageError(ValueError):
    pass


@dataclass(frozen=True)
class AssemblyImage:
    version: str
    native_version: str | None


def _read_u8(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 1 > len(buf):
        raise AssemblyImageError(f"truncated image at offset {offset:#x}")
    return buf[offset]


def _read_u16le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 2 > len(buf):
        raise AssemblyImageError(f"truncated image at offset {offset:#x}")
    return int(cast(tuple[int], struct.unpack_from("<H", buf, offset))[0])


def _read_u32le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 4 > len(buf):
        raise AssemblyImageError(f"truncated image at offset {offset:#x}")
    return int(cast(tuple[int], struct.unpack_from("<I", buf, offset))[0])


def _read_u64le(buf: bytes, offset: int) -> int:
    if offset < 0 or offset + 8 > len(buf):
        raise AssemblyImageError(f"truncated image at offset {offset:#x}")
    return int(cast(tuple[int], struct.unpack_from("<Q", buf, offset))[0])


def _read_c_string(buf: bytes, start: int) -> str:
    if start < 0 or start >= len(buf):
        raise AssemblyImageError(f"string offset {start:#x} out of range")
    end = buf.find(b"\x00", start)
    if end < 0:
        end = len(buf)
    return buf[start:end].decode("utf-8", errors="replace")


def _align(n: int, align_to: int) -> int:
    return ((n + align_to - 1) // align_to) * align_to


def _read_compressed_length(buf: bytes, offset: int) -> tuple[int, int]:
    """Return `(value, header size)` of an ECMA-335 compressed unsigned integer."""
    b0 = _read_u8(buf, offset)
    if b0 & 0x80 == 0:
        return b0, 1
    if b0 & 0xC0 == 0x80:
        return ((b0 & 0x3F) << 8) | _read_u8(buf, offset + 1), 2
    if b0 & 0xE0 == 0xC0:
        value = (
            ((b0 & 0x1F) << 24)
            | (_read_u8(buf, offset + 1) << 16)
            | (_read_u8(buf, offset + 2) << 8)
            | _read_u8(buf, offset + 3)
        )
        return value, 4
    raise AssemblyImageError(f"bad compressed integer at offset {offset:#x}")


@dataclass(frozen=True)
class _Section:
    virtual_address: int
    virtual_size: int
    raw_pointer: int
    raw_size: int


def _locate_metadata(buf: bytes) -> int:
    """Return the file offset of the CLI metadata root."""
    if buf[:2] != b"MZ":
        raise AssemblyImageError("missing MZ signature")
    pe_off = _read_u32le(buf, 0x3C)
    if buf[pe_off : pe_off + 4] != b"PE\x00\x00":
        raise AssemblyImageError("missing PE signature")

    coff = pe_off + 4
    n_sections = _read_u16le(buf, coff + 2)
    optional_size = _read_u16le(buf, coff + 16)
    optional = coff + 20
    magic = _read_u16le(buf, optional)
    if magic == 0x10B:
        directories = optional + 96
    elif magic == 0x20B:
        directories = optional + 112
    else:
        raise AssemblyImageError(f"unknown optional header magic {magic:#x}")

    n_directories = _read_u32le(buf, directories - 4)
    if n_directories <= _CLI_HEADER_DIRECTORY:
        raise AssemblyImageError("no CLI header directory")
    cli_rva = _read_u32le(buf, directories + 8 * _CLI_HEADER_DIRECTORY)
    if cli_rva == 0:
        raise AssemblyImageError("not a managed assembly")

    sections: list[_Section] = []
    table = optional + optional_size
    for i in range(n_sections):
        s = table + 40 * i
        sections.append(
            _Section(
                virtual_size=_read_u32le(buf, s + 8),
                virtual_address=_read_u32le(buf, s + 12),
                raw_size=_read_u32le(buf, s + 16),
                raw_pointer=_read_u32le(buf, s + 20),
            )
        )

    def rva_to_offset(rva: int) -> int:
        for sec in sections:
            span = max(sec.virtual_size, sec.raw_size)
            if sec.virtual_address <= rva < sec.virtual_address + span:
                return rva - sec.virtual_address + sec.raw_pointer
        raise AssemblyImageError(f"RVA {rva:#x} is outside every section")

    cli = rva_to_offset(cli_rva)
    return rva_to_offset(_read_u32le(buf, cli + 8))


class _Tables:
    def __init__(self, buf: bytes, metadata: int) -> None:
        self._buf: bytes = buf
        if _read_u32le(buf, metadata) != _METADATA_SIGNATURE:
            raise AssemblyImageError("bad metadata signature")

        version_len = _read_u32le(buf, metadata + 12)
        pos = metadata + 16 + _align(version_len, 4)
        n_streams = _read_u16le(buf, pos + 2)
        pos += 4
        streams: dict[str, int] = {}
        for _ in range(n_streams):
            offset = _read_u32le(buf, pos)
            name = _read_c_string(buf, pos + 8)
            streams[name] = metadata + offset
            pos += 8 + _align(len(name) + 1, 4)

        tables = streams.get("#~", streams.get("#-"))
        if tables is None or "#Strings" not in streams:
            raise AssemblyImageError("missing metadata streams")
        self._strings: int = streams["#Strings"]
        self._blob: int | None = streams.get("#Blob")

        heap_sizes = _read_u8(buf, tables + 6)
        valid = _read_u64le(buf, tables + 8)
        pos = tables + 24
        self._rows: list[int] = [0] * 64
        for i in range(64):
            if valid >> i & 1:
                self._rows[i] = _read_u32le(buf, pos)
                pos += 4
        if heap_sizes & 0x40:
            pos += 4

        self._heap_size: dict[str, int] = {
            "str": 4 if heap_sizes & 0x01 else 2,
            "guid": 4 if heap_sizes & 0x02 else 2,
            "blob": 4 if heap_sizes & 0x04 else 2,
        }

        self._layout: list[tuple[int, ...]] = []
        self._offset: list[int] = []
        for columns in _SCHEMA:
            widths = tuple(self._column_size(c) for c in columns)
            self._layout.append(widths)
            self._offset.append(pos)
            pos += sum(widths) * self._rows[len(self._offset) - 1]

    def _column_size(self, column: str) -> int:
        if column in ("u1", "u2", "u4"):
            return int(column[1])
        if column in self._heap_size:
            return self._heap_size[column]
        if column.startswith("="):
            return 2 if self._rows[int(column[1:], 16)] < 0x10000 else 4
        bits, tables = _CODED[column]
        largest = max(self._rows[t] for t in tables if t is not None)
        return 2 if largest < (1 << (16 - bits)) else 4

    def row_count(self, table: int) -> int:
        return self._rows[table]

    def row(self, table: int, index: int) -> tuple[int, ...]:
        """Read row `index` (1-based) of `table`."""
        if index < 1 or index > self._rows[table]:
            raise AssemblyImageError(f"row {index} of table {table:#x} out of range")
        widths = self._layout[table]
        pos = self._offset[table] + (index - 1) * sum(widths)
        values: list[int] = []
        for width in widths:
            if width == 1:
                values.append(_read_u8(self._buf, pos))
            elif width == 2:
                values.append(_read_u16le(self._buf, pos))
            else:
                values.append(_read_u32le(self._buf, pos))
            pos += width
        return tuple(values)

    def string(self, index: int) -> str:
        return _read_c_string(self._buf, self._strings + index)

    def blob(self, index: int) -> bytes:
        if self._blob is None:
            raise AssemblyImageError("missing #Blob stream")
        start = self._blob + index
        length, header = _read_compressed_length(self._buf, start)
        start += header
        if start + length > len(self._buf):
            raise AssemblyImageError("truncated blob")
        return self._buf[start : start + length]


def _decode_coded(kind: str, value: int) -> tuple[int | None, int]:
    bits, tables = _CODED[kind]
    tag = value & ((1 << bits) - 1)
    table = tables[tag] if tag < len(tables) else None
    return table, value >> bits


def _attribute_type_name(tables: _Tables, ctor: int) -> str | None:
    table, index = _decode_coded("CustomAttributeType", ctor)
    if table == _TABLE_MEMBERREF:
        parent, _, _ = tables.row(_TABLE_MEMBERREF, index)
        owner, owner_index = _decode_coded("MemberRefParent", parent)
        if owner == _TABLE_TYPEREF:
            return tables.string(tables.row(_TABLE_TYPEREF, owner_index)[1])
        if owner == _TABLE_TYPEDEF:
            return tables.string(tables.row(_TABLE_TYPEDEF, owner_index)[1])
        return None
    if table == _TABLE_METHODDEF:
        # The owning TypeDef is the last one whose method list starts at or
        # before the constructor row.
        owner_name: str | None = None
        for i in range(1, tables.row_count(_TABLE_TYPEDEF) + 1):
            type_row = tables.row(_TABLE_TYPEDEF, i)
            if type_row[5] > index:
                break
            owner_name = tables.string(type_row[1])
        return owner_name
    return None


def _decode_string_argument(value: bytes) -> str | None:
    """Decode the first fixed argument of a custom attribute blob as a SerString."""
    if len(value) < 3 or value[0] != 0x01 or value[1] != 0x00:
        raise AssemblyImageError("bad custom attribute prolog")
    if value[2] == 0xFF:
        return None
    length, header = _read_compressed_length(value, 2)
    start = 2 + header
    if start + length > len(value):
        raise AssemblyImageError("truncated custom attribute string")
    return value[start : start + length].decode("utf-8", errors="replace")


def parse_assembly_image(buf: bytes) -> AssemblyImage:
    tables = _Tables(buf, _locate_metadata(buf))

    if tables.row_count(_TABLE_ASSEMBLY) < 1:
        raise AssemblyImageError("image has no Assembly table")
    asm = tables.row(_TABLE_ASSEMBLY, 1)
    version = f"{asm[1]}.{asm[2]}.{asm[3]}.{asm[4]}"

    native_version: str | None = None
    for i in range(1, tables.row_count(_TABLE_CUSTOMATTRIBUTE) + 1):
        parent, ctor, value = tables.row(_TABLE_CUSTOMATTRIBUTE, i)
        owner, _ = _decode_coded("HasCustomAttribute", parent)
        if owner not in (_TABLE_ASSEMBLY, _TABLE_MODULE):
            continue
        if _attribute_type_name(tables, ctor) not in NATIVE_VERSION_ATTRIBUTE_NAMES:
            continue
        native_version = _decode_string_argument(tables.blob(value))
        break

    return AssemblyImage(version=version, native_version=native_version)


def read_assembly_image(path: Path) -> AssemblyImage:
    try:
        buf = path.read_bytes()
    except OSError as e:
        raise AssemblyImageError(f"cannot read '{path}': {e}") from e
    return parse_assembly_image(buf)
