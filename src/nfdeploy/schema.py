from __future__ import annotations

import json
from pathlib import Path
from typing import TypeAlias, cast

JsonPrimitive: TypeAlias = str | int | float | bool | None
JsonValue: TypeAlias = JsonPrimitive | list["JsonValue"] | dict[str, "JsonValue"]


def dumps_json(value: object) -> str:
    return json.dumps(value, indent=2, sort_keys=True, ensure_ascii=True) + "\n"


def write_json(path: Path, value: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    _ = path.write_text(dumps_json(value), encoding="utf-8")


def read_json(path: Path) -> object:
    return cast(object, json.loads(path.read_text(encoding="utf-8")))


def as_str(value: object) -> str | None:
    if isinstance(value, str):
        return value
    return None


def as_str_list(value: object) -> list[str] | None:
    if not isinstance(value, list):
        return None
    return [v for v in cast(list[object], value) if isinstance(v, str)]
