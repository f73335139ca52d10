from __future__ import annotations

import io
import subprocess
import urllib.error
from collections.abc import Callable
from pathlib import Path

import pytest

from nfdeploy.configuration import DevicesConfiguration
from nfdeploy.locking import CrossProcessLock
from nfdeploy.logsink import LogLevel
from nfdeploy.model import NativeRequirement
from nfdeploy.runtime_tool import (
    CLR_INSTANCE_FILE_NAME,
    RuntimeToolManager,
    fetch_latest_version,
    global_tool_path,
    parse_native_inventory,
    parse_tool_version,
)

from conftest import RecordingSink

HELP_TEXT = "nanoclr 1.0.0+abc\nnanoFramework nanoCLR CLI v1.0.0\n"
INVENTORY_TEXT = (
    "Loading nanoCLR\n"
    "Native assemblies:\n"
    "  mscorlib                       v100.5.0.19  0x445C7AF9\n"
    "  nanoFramework.Runtime.Events   v100.0.8.0   0x0EAB00C9\n"
    "  broken line\n"
)


class FakeRun:
    """Stands in for `subprocess.run`; the first matching canned response wins."""

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.responses: list[tuple[Callable[[list[str]], bool], object]] = []

    def on(self, match: Callable[[list[str]], bool], response: object) -> None:
        self.responses.append((match, response))

    def __call__(self, argv: list[str], **_kwargs: object) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        for match, response in self.responses:
            if match(argv):
                if isinstance(response, BaseException):
                    raise response
                if isinstance(response, subprocess.CompletedProcess):
                    return response
        raise AssertionError(f"unexpected command: {argv}")


def _done(argv: list[str], code: int, stdout: str) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=argv, returncode=code, stdout=stdout, stderr="")


def _is_help(argv: list[str]) -> bool:
    return argv[-1] == "--help"


def _is_update(argv: list[str]) -> bool:
    return argv[:3] == ["dotnet", "tool", "update"]


def _is_inventory(argv: list[str]) -> bool:
    return "--getnativeassemblies" in argv


def _manager(
    tmp_path: Path,
    sink: RecordingSink,
    *,
    tool_path: Path | None = None,
    instance_dir: Path | None = None,
    auto_update: bool = True,
    latest: str | None = None,
) -> RuntimeToolManager:
    return RuntimeToolManager(
        tool_path=tool_path,
        instance_dir=instance_dir,
        auto_update=auto_update,
        home=tmp_path,
        sink=sink,
        lock=CrossProcessLock(tmp_path / "lock", poll_interval_s=0.001),
        fetch_latest=lambda: latest,
    )


@pytest.fixture
def fake_run(monkeypatch: pytest.MonkeyPatch) -> FakeRun:
    fake = FakeRun()
    monkeypatch.setattr("nfdeploy.runtime_tool.subprocess.run", fake)
    return fake


def test_parse_tool_version_takes_last_match() -> None:
    assert parse_tool_version("nanoclr 1.0.0\nCLI v1.10.42") == "1.10.42"
    assert parse_tool_version("no version here") is None


def test_parse_native_inventory() -> None:
    assert parse_native_inventory(INVENTORY_TEXT) == [
        NativeRequirement("mscorlib", "100.5.0.19", 0x445C7AF9),
        NativeRequirement("nanoFramework.Runtime.Events", "100.0.8.0", 0x0EAB00C9),
    ]
    assert parse_native_inventory("Native assemblies:\n") == []
    assert parse_native_inventory("Unknown option --getnativeassemblies\n") is None


def test_global_tool_path(tmp_path: Path) -> None:
    assert global_tool_path(tmp_path, windows=True) == tmp_path / ".dotnet" / "tools" / "nanoclr.exe"
    assert global_tool_path(tmp_path, windows=False) == tmp_path / ".dotnet" / "tools" / "nanoclr"


def test_current_tool_is_kept(tmp_path: Path, sink: RecordingSink, fake_run: FakeRun) -> None:
    fake_run.on(_is_help, _done(["nanoclr", "--help"], 0, HELP_TEXT))
    manager = _manager(tmp_path, sink, latest="1.0.0")

    assert manager.ensure_installed()
    assert manager.is_installed
    assert fake_run.calls == [["nanoclr", "--help"]]
    assert sink.messages(LogLevel.DETAILED) == [
        "Install/update nanoclr tool",
        "Running nanoclr v1.0.0",
        "No need to update. Running v1.0.0",
    ]


def test_newer_published_version_triggers_update(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done(["nanoclr", "--help"], 0, HELP_TEXT))
    fake_run.on(
        _is_update,
        _done(
            [],
            0,
            "Tool 'nanoclr' was successfully updated from version '1.0.0' to version '1.2.3'.\n",
        ),
    )
    manager = _manager(tmp_path, sink, latest="1.2.3")

    assert manager.ensure_installed()
    assert fake_run.calls[-1] == ["dotnet", "tool", "update", "-g", "nanoclr"]
    assert "Install/update successful. Running v1.2.3" in sink.messages(LogLevel.DETAILED)
    assert sink.errors == []


def test_unreachable_index_keeps_current_version(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done(["nanoclr", "--help"], 0, HELP_TEXT))
    manager = _manager(tmp_path, sink, latest=None)

    assert manager.ensure_installed()
    assert len(fake_run.calls) == 1
    assert (
        "Cannot retrieve nanoclr package; keep using the current version."
        in sink.messages(LogLevel.DETAILED)
    )


def test_missing_tool_is_installed(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, FileNotFoundError("nanoclr"))
    fake_run.on(
        _is_update,
        _done([], 0, "Tool 'nanoclr' (version '1.0.0') was successfully installed.\n"),
    )
    manager = _manager(tmp_path, sink)

    assert manager.ensure_installed()
    assert sink.errors == []


def test_missing_dotnet_is_an_error(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, FileNotFoundError("nanoclr"))
    fake_run.on(_is_update, FileNotFoundError("dotnet"))
    manager = _manager(tmp_path, sink)

    assert not manager.ensure_installed()
    assert sink.errors == ["Failed to install/update nanoclr: 'dotnet' was not found."]


def test_failed_update_is_an_error(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done([], 1, ""))
    fake_run.on(_is_update, _done([], 1, "boom"))
    manager = _manager(tmp_path, sink)

    assert not manager.ensure_installed()
    assert sink.errors == ["Failed to install/update nanoclr. Exit code 1."]


def test_update_without_version_in_output_is_an_error(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done([], 1, ""))
    fake_run.on(_is_update, _done([], 0, "something unexpected"))
    manager = _manager(tmp_path, sink)

    assert not manager.ensure_installed()
    assert sink.errors == ["*** Failed to install/update nanoclr *** something unexpected"]


def test_unparsable_help_is_an_error_without_update(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done([], 0, "nanoclr without a version"))
    manager = _manager(tmp_path, sink, latest="9.9.9")

    assert not manager.ensure_installed()
    assert sink.errors == ["Failed to parse current nanoCLR version!"]
    assert len(fake_run.calls) == 1


def test_local_tool_is_not_auto_updated(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    tool = tmp_path / "tools" / "nanoclr"
    fake_run.on(_is_help, _done([], 0, HELP_TEXT))
    fake_run.on(_is_update, _done([], 0, "version '2.0.0'"))

    def no_fetch() -> str | None:
        raise AssertionError("index should not be queried")

    manager = RuntimeToolManager(
        tool_path=tool,
        instance_dir=None,
        auto_update=False,
        home=tmp_path,
        sink=sink,
        fetch_latest=no_fetch,
    )
    assert manager.ensure_installed()
    assert fake_run.calls == [[str(tool), "--help"]]
    assert manager.installed_version() == "1.0.0"


def test_local_tool_update_uses_tool_path(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    tool = tmp_path / "tools" / "nanoclr"
    fake_run.on(_is_help, FileNotFoundError(str(tool)))
    fake_run.on(_is_update, _done([], 0, "version '2.0.0'"))
    manager = _manager(tmp_path, sink, tool_path=tool, auto_update=False)

    assert manager.ensure_installed()
    assert fake_run.calls[-1] == [
        "dotnet", "tool", "update", "--tool-path", str(tool.parent), "nanoclr",
    ]


def test_executable_prefers_global_tool_under_home(tmp_path: Path, sink: RecordingSink) -> None:
    manager = _manager(tmp_path, sink)
    assert manager.executable == "nanoclr"

    tool = global_tool_path(tmp_path)
    tool.parent.mkdir(parents=True)
    _ = tool.write_bytes(b"")
    assert manager.executable == str(tool)


def test_native_inventory_with_instance_directory(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    instance = tmp_path / "clr"
    fake_run.on(_is_inventory, _done([], 0, INVENTORY_TEXT))
    manager = _manager(tmp_path, sink, instance_dir=instance)

    inventory = manager.native_inventory()
    assert inventory is not None
    assert len(inventory) == 2
    assert fake_run.calls == [
        ["nanoclr", "instance", "--getnativeassemblies", "--clrpath", str(instance)]
    ]


def test_native_inventory_failure_is_verbose(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_inventory, _done([], 3, "Unrecognized command"))
    manager = _manager(tmp_path, sink)

    assert manager.native_inventory() is None
    assert sink.messages(LogLevel.VERBOSE) == [
        "Unrecognized command",
        "nanoCLR ended with exit code '3'.",
    ]
    assert sink.errors == []


def test_native_inventory_timeout(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_inventory, subprocess.TimeoutExpired(cmd="nanoclr", timeout=60.0))
    manager = _manager(tmp_path, sink)

    assert manager.native_inventory() is None
    assert "nanoCLR timed out." in sink.messages(LogLevel.VERBOSE)


def test_from_configuration_reports_missing_local_files(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    instance = tmp_path / "clr"
    instance.mkdir()
    tool = tmp_path / "missing" / "nanoclr"
    config = DevicesConfiguration(
        path_to_local_nanoclr=tool, path_to_local_clr_instance_directory=instance
    )

    manager = RuntimeToolManager.from_configuration(config, home=tmp_path, sink=sink)
    assert not manager.is_installed
    assert not manager.auto_update
    assert sink.errors == [
        f"*** Failed to locate nanoCLR instance '{instance / CLR_INSTANCE_FILE_NAME}' ***",
        f"*** Failed to locate nanoCLR tool '{tool}' ***",
    ]
    assert fake_run.calls == []


def test_from_configuration_with_global_tool_checks_for_update(
    tmp_path: Path, sink: RecordingSink, fake_run: FakeRun
) -> None:
    fake_run.on(_is_help, _done([], 0, HELP_TEXT))
    manager = RuntimeToolManager.from_configuration(
        DevicesConfiguration(), home=tmp_path, sink=sink, fetch_latest=lambda: "1.0.0"
    )
    assert manager.auto_update
    assert manager.is_installed


def test_fetch_latest_version(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(_req: object, timeout: float) -> io.BytesIO:
        assert timeout == 30.0
        return io.BytesIO(b'{"versions": ["1.0.0", "1.1.0", "1.2.0-preview"]}')

    monkeypatch.setattr("nfdeploy.runtime_tool.url_request.urlopen", fake_urlopen)
    assert fetch_latest_version() == "1.2.0-preview"


def test_fetch_latest_version_offline(monkeypatch: pytest.MonkeyPatch) -> None:
    def offline(_req: object, timeout: float) -> io.BytesIO:
        raise urllib.error.URLError("offline")

    monkeypatch.setattr("nfdeploy.runtime_tool.url_request.urlopen", offline)
    assert fetch_latest_version() is None
