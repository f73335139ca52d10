from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .cache import SnapshotGate
from .configuration import read_configuration
from .firmware import FirmwareInventoryCache
from .inventory import (
    collect_implemented_versions,
    decode_implemented_versions,
    encode_implemented_versions,
)
from .model import ImplementedNativeVersion
from .module_metadata import read_module_metadata
from .packages import PackageList
from .reconcile import can_deploy, module_requirements
from .runtime_tool import RuntimeToolManager
from .targets import resolve_deployment_targets
from .task import TaskContext

TARGETS_CACHE_FILE = "DeploymentTargets.json"
IMPLEMENTATIONS_CACHE_FILE = "Implementations.json"
REQUIREMENTS_CACHE_FILE = "Requirements.json"
FIRMWARE_CACHE_FILE = "FirmwareInventories.json"


def _under(base: Path, path: Path) -> Path:
    return path if path.is_absolute() else base / path


@dataclass(frozen=True)
class VerifyFirmwareConsistency:
    """Check that a project's modules can run on every deployment target it declares."""

    project_dir: Path
    cache_dir: Path
    assembly_path: Path
    referenced_assemblies: tuple[Path, ...] = ()

    @property
    def name(self) -> str:
        return "verify-firmware"

    def execute(self, ctx: TaskContext) -> None:
        sink = ctx.sink
        config = read_configuration(self.project_dir, ctx.config_context)
        cache_dir = _under(self.project_dir, self.cache_dir)

        tool: RuntimeToolManager | None = None

        def tool_factory() -> RuntimeToolManager:
            nonlocal tool
            if tool is None:
                tool = RuntimeToolManager.from_configuration(
                    config, home=ctx.home, sink=sink
                )
            return tool

        targets = resolve_deployment_targets(
            config, sink, home=ctx.home, tool_factory=tool_factory
        )
        if not targets.has_targets:
            return

        def aggregate() -> list[ImplementedNativeVersion]:
            firmware_cache = FirmwareInventoryCache(cache_dir / FIRMWARE_CACHE_FILE, sink)
            result = collect_implemented_versions(
                targets, sink, tool_factory=tool_factory, firmware_cache=firmware_cache
            )
            firmware_cache.save()
            return result

        gate: SnapshotGate[list[ImplementedNativeVersion]] = SnapshotGate(
            fingerprint_path=cache_dir / TARGETS_CACHE_FILE,
            payload_path=cache_dir / IMPLEMENTATIONS_CACHE_FILE,
            encode=encode_implemented_versions,
            decode=decode_implemented_versions,
        )
        implemented = gate.reuse_or_compute(targets, aggregate)
        if implemented is None:
            return

        modules = read_module_metadata(
            [*self.referenced_assemblies, _under(self.project_dir, self.assembly_path)],
            cache_dir / REQUIREMENTS_CACHE_FILE,
            sink,
        )
        _ = can_deploy(module_requirements(modules), implemented, sink)


@dataclass(frozen=True)
class VerifyPackageVersions:
    """Check a project's nanoFramework packages against the configured allow-list."""

    project_file: Path

    @property
    def name(self) -> str:
        return "verify-packages"

    def execute(self, ctx: TaskContext) -> None:
        config = read_configuration(self.project_file.parent, ctx.config_context)
        if config.nuget_package_list is None:
            return
        package_list = PackageList.read(config.nuget_package_list, ctx.sink)
        if package_list is not None:
            _ = package_list.validate(self.project_file, ctx.sink)
