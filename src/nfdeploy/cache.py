"""Fingerprint-gated caches.

Every cache in this package follows one rule: reuse a stored value while the
fingerprint it was computed from is unchanged, otherwise recompute and store.

- `KeyedCache` keeps many entities in one JSON object keyed by name, each entry
  carrying its own fingerprint (used for per-file metadata keyed by mtime).
- `SnapshotGate` keeps one entity in a payload file, guarded by a separate
  fingerprint file describing everything the entity was derived from.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Generic, Protocol, TypeVar, cast

from .logsink import LogLevel, LogSink, emit
from .schema import JsonValue, read_json, write_json

T = TypeVar("T")

_log = logging.getLogger(__name__)


def iso_utc(timestamp: float) -> str:
    return (
        datetime.fromtimestamp(timestamp, timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )


def mtime_fingerprint(path: Path) -> str:
    return iso_utc(path.stat().st_mtime)


@dataclass
class KeyedCache(Generic[T]):
    path: Path | None
    encode: Callable[[T], dict[str, JsonValue]]
    decode: Callable[[dict[str, JsonValue]], T]
    sink: LogSink | None = None
    fingerprint_field: str = "lastModifiedUtc"
    label: str = "cache"
    _previous: dict[str, dict[str, JsonValue]] = field(default_factory=dict)
    _current: dict[str, dict[str, JsonValue]] = field(default_factory=dict)

    def load(self) -> None:
        self._previous = {}
        if self.path is None or not self.path.is_file():
            return
        try:
            raw = read_json(self.path)
        except (OSError, ValueError) as e:
            emit(
                self.sink,
                LogLevel.VERBOSE,
                f"Cannot read the {self.label} file '{self.path}': {e}",
            )
            return
        if not isinstance(raw, dict):
            emit(
                self.sink,
                LogLevel.VERBOSE,
                f"Cannot read the {self.label} file '{self.path}': not a JSON object",
            )
            return
        for key, entry in cast(dict[str, object], raw).items():
            if isinstance(entry, dict):
                self._previous[key] = cast(dict[str, JsonValue], entry)

    def lookup(self, key: str, fingerprint: JsonValue) -> T | None:
        entry = self._previous.get(key)
        if entry is None or entry.get(self.fingerprint_field) != fingerprint:
            return None
        try:
            value = self.decode(entry)
        except (KeyError, TypeError, ValueError):
            _log.debug("discarding malformed %s entry %r", self.label, key)
            return None
        self._current[key] = entry
        return value

    def store(self, key: str, fingerprint: JsonValue, value: T) -> None:
        entry: dict[str, JsonValue] = dict(self.encode(value))
        entry[self.fingerprint_field] = fingerprint
        self._current[key] = entry

    def get_or_compute(
        self, key: str, fingerprint: JsonValue, compute: Callable[[], T | None]
    ) -> T | None:
        cached = self.lookup(key, fingerprint)
        if cached is not None:
            return cached
        value = compute()
        if value is not None:
            self.store(key, fingerprint, value)
        return value

    def save(self) -> None:
        """Write the entries seen in this pass; stale keys are dropped."""
        if self.path is None:
            return
        try:
            write_json(self.path, self._current)
        except OSError as e:
            emit(
                self.sink,
                LogLevel.VERBOSE,
                f"Cannot write the {self.label} file '{self.path}': {e}",
            )


class Snapshot(Protocol):
    def to_json(self) -> dict[str, JsonValue]: ...

    def matches(self, saved: dict[str, JsonValue] | None) -> bool: ...


def read_snapshot(path: Path) -> dict[str, JsonValue] | None:
    if not path.is_file():
        return None
    try:
        raw = read_json(path)
    except (OSError, ValueError):
        return None
    if not isinstance(raw, dict):
        return None
    return cast(dict[str, JsonValue], raw)


@dataclass(frozen=True)
class SnapshotGate(Generic[T]):
    fingerprint_path: Path
    payload_path: Path
    encode: Callable[[T], JsonValue]
    decode: Callable[[JsonValue], T]

    def is_current(self, snapshot: Snapshot) -> bool:
        return self.payload_path.is_file() and snapshot.matches(
            read_snapshot(self.fingerprint_path)
        )

    def reuse_or_compute(
        self, snapshot: Snapshot, compute: Callable[[], T | None]
    ) -> T | None:
        if self.is_current(snapshot):
            try:
                return self.decode(cast(JsonValue, read_json(self.payload_path)))
            except (OSError, KeyError, TypeError, ValueError) as e:
                _log.debug("recomputing %s: %s", self.payload_path.name, e)

        value = compute()
        if value is None:
            return None
        write_json(self.payload_path, self.encode(value))
        write_json(self.fingerprint_path, snapshot.to_json())
        return value

