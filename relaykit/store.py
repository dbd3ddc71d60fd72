"""Durable key/record storage used for pipeline and step state."""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Mapping, Protocol

_RECORD_SUFFIX = ".json"


class StateStore(Protocol):
    def read(self, key: str) -> dict[str, Any] | None:
        ...

    def write(self, key: str, record: Mapping[str, Any]) -> None:
        ...

    def delete_with_prefix(self, prefix: str) -> list[str]:
        ...

    def exists(self, key: str) -> bool:
        ...

    def list(self, prefix: str = "") -> list[str]:
        ...


def _validate_key(key: str) -> str:
    if not isinstance(key, str) or not key.strip():
        raise ValueError("State key must be a non-empty string")
    normalized = key.strip()
    if "/" in normalized or "\\" in normalized or normalized in (".", ".."):
        raise ValueError(f"State key cannot contain path separators: {key!r}")
    return normalized


class MemoryStateStore:
    """In-process store; records are deep-copied on the way in and out."""

    def __init__(self, records: Mapping[str, Mapping[str, Any]] | None = None):
        self._records: dict[str, dict[str, Any]] = {}
        for key, record in (records or {}).items():
            self.write(key, record)

    def read(self, key: str) -> dict[str, Any] | None:
        record = self._records.get(_validate_key(key))
        return copy.deepcopy(record) if record is not None else None

    def write(self, key: str, record: Mapping[str, Any]) -> None:
        self._records[_validate_key(key)] = copy.deepcopy(dict(record))

    def delete_with_prefix(self, prefix: str) -> list[str]:
        removed = self.list(prefix)
        for key in removed:
            del self._records[key]
        return removed

    def exists(self, key: str) -> bool:
        return _validate_key(key) in self._records

    def list(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._records if key.startswith(prefix))


class FileStateStore:
    """One JSON file per key under a state directory."""

    def __init__(self, root: str | os.PathLike[str]):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{_validate_key(key)}{_RECORD_SUFFIX}"

    def read(self, key: str) -> dict[str, Any] | None:
        path = self.path_for(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid JSON in state record {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"State record must contain a JSON object: {path}")
        return payload

    def write(self, key: str, record: Mapping[str, Any]) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(dict(record), ensure_ascii=False, indent=2) + "\n"
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            newline="",
            delete=False,
            dir=str(path.parent),
            prefix=path.name + ".",
            suffix=".tmp",
        ) as handle:
            handle.write(content)
            temp_path = Path(handle.name)
        os.replace(temp_path, path)

    def delete_with_prefix(self, prefix: str) -> list[str]:
        removed = self.list(prefix)
        for key in removed:
            try:
                self.path_for(key).unlink()
            except FileNotFoundError:
                continue
        return removed

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def list(self, prefix: str = "") -> list[str]:
        if not self.root.is_dir():
            return []
        keys: list[str] = []
        for path in self.root.iterdir():
            if not path.is_file() or not path.name.endswith(_RECORD_SUFFIX):
                continue
            key = path.name[: -len(_RECORD_SUFFIX)]
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)
