from __future__ import annotations

import re
from dataclasses import dataclass

VIRTUAL_DEVICE_NAME = "Virtual nanoDevice"


@dataclass(frozen=True, order=True)
class NativeRequirement:
    """A native implementation identified by name, version and interface checksum."""

    assembly_name: str
    version: str
    checksum: int

    @property
    def key(self) -> tuple[str, str, int]:
        return (self.assembly_name, self.version, self.checksum)


@dataclass(frozen=True)
class ImplementedNativeVersion:
    """One native implementation triple and every target that ships exactly it."""

    native: NativeRequirement
    target_names: tuple[str, ...]

    @property
    def assembly_name(self) -> str:
        return self.native.assembly_name

    @property
    def version(self) -> str:
        return self.native.version

    @property
    def checksum(self) -> int:
        return self.native.checksum


_DECIMAL_RE = re.compile(r"[0-9]+")
_HEX_RE = re.compile(r"[0-9A-Fa-f]+")


def parse_checksum(text: str) -> int | None:
    """Parse a `0x`-prefixed hexadecimal or a decimal 32-bit checksum."""
    text = text.strip()
    if text[:2].lower() == "0x":
        digits = text[2:]
        if not _HEX_RE.fullmatch(digits):
            return None
        value = int(digits, 16)
    else:
        if not _DECIMAL_RE.fullmatch(text):
            return None
        value = int(text, 10)
    if value > 0xFFFFFFFF:
        return None
    return value
