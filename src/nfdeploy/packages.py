"""Allow-list of NuGet package versions a nanoFramework project must use.

The list file is the plain output of `nuget list`: one `id version` pair per
line. Projects are checked through the `packages.config` next to the project
file.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path

from .logsink import LogLevel, LogSink, emit

PACKAGES_FILE_NAME = "packages.config"
NANO_TARGET_FRAMEWORK = "netnano1.0"

_LIST_LINE_RE = re.compile(
    r"^(?P<id>[A-Z0-9_\-.]+)[\s\r\n]+(?P<version>[0-9]+(\.[0-9]+){1,3})[\s\r\n]+",
    re.MULTILINE | re.IGNORECASE,
)


def _local_name(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


@dataclass(frozen=True)
class PackageList:
    versions: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: str) -> PackageList:
        versions: dict[str, str] = {}
        for m in _LIST_LINE_RE.finditer(text):
            versions[m.group("id")] = m.group("version")
        return cls(versions=versions)

    @classmethod
    def read(cls, path: Path, sink: LogSink | None) -> PackageList | None:
        if not path.is_file():
            emit(sink, LogLevel.ERROR, f"NuGet package list file '{path}' does not exist")
            return None
        return cls.parse(path.read_text(encoding="utf-8"))

    def validate(self, project_file: Path, sink: LogSink | None) -> bool:
        """Report every nanoFramework package whose version differs from the list.

        Returns False if at least one Error was reported.
        """
        packages_file = project_file.resolve().parent / PACKAGES_FILE_NAME
        if not packages_file.is_file():
            emit(sink, LogLevel.DETAILED, f"Cannot find project file '{packages_file}'.")
            return True

        try:
            root = ET.parse(packages_file).getroot()
        except (ET.ParseError, OSError) as e:
            emit(
                sink,
                LogLevel.ERROR,
                f"Cannot parse packages file '{packages_file}': {e}.",
            )
            return False

        ok = True
        for package in root.iter():
            if _local_name(package.tag) != "package":
                continue
            if package.get("targetFramework") != NANO_TARGET_FRAMEWORK:
                continue
            package_id = package.get("id")
            if package_id is None or package_id not in self.versions:
                continue
            required = self.versions[package_id]
            used = package.get("version")
            if used != required:
                ok = False
                emit(
                    sink,
                    LogLevel.ERROR,
                    f"The required version of package '{package_id}' is '{required}', but the project uses version '{used}'.",
                )
        return ok
