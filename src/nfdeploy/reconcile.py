from __future__ import annotations

from collections.abc import Iterable

from .logsink import LogLevel, LogSink, emit
from .model import ImplementedNativeVersion, NativeRequirement
from .module_metadata import ModuleMetadata


def _quoted(names: Iterable[str]) -> str:
    return ", ".join(f"'{n}'" for n in sorted(names))


def module_requirements(
    modules: Iterable[ModuleMetadata],
) -> list[tuple[str, NativeRequirement]]:
    return [(m.owner_name, m.native) for m in modules if m.native is not None]


def can_deploy(
    requirements: Iterable[tuple[str, NativeRequirement]],
    implemented: Iterable[ImplementedNativeVersion],
    sink: LogSink | None,
) -> bool:
    """Check every requirement against every target's native inventory.

    All problems are reported, one Error per mismatching inventory entry and
    one per requirement for the targets lacking the implementation entirely.
    """
    runtimes = list(implemented)
    all_targets: set[str] = set()
    for runtime in runtimes:
        all_targets.update(runtime.target_names)

    ok = True
    for owner, required in requirements:
        missing = set(all_targets)
        for runtime in runtimes:
            if runtime.assembly_name != required.assembly_name:
                continue
            if (
                runtime.version != required.version
                or runtime.checksum != required.checksum
            ):
                ok = False
                emit(
                    sink,
                    LogLevel.ERROR,
                    f"Assembly '{owner}' requires native '{required.assembly_name}' "
                    f"version '{required.version}+{required.checksum:X}' but version "
                    f"'{runtime.version}+{runtime.checksum:X}' is implemented by "
                    f"{_quoted(runtime.target_names)}.",
                )
            missing.difference_update(runtime.target_names)

        if missing:
            ok = False
            emit(
                sink,
                LogLevel.ERROR,
                f"Assembly '{owner}' requires native '{required.assembly_name}' "
                f"that is not implemented by {_quoted(missing)}.",
            )
    return ok
