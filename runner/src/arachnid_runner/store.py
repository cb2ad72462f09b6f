from __future__ import annotations

"""Key-value persistence for agent progress records.

Read-modify-write with last-write-wins semantics: concurrent writers for the
same token race and the later `put` wins. No optimistic concurrency control.
"""

import copy
import hashlib
import json
import logging
import time
from pathlib import Path
from typing import Any, Protocol

from .errors import StoreUnavailableError
from .records import AgentRecord


AGENT_KEY_PREFIX = "agent:"

logger = logging.getLogger(__name__)


class ProgressStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def put(self, key: str, value: dict[str, Any]) -> None: ...

    def list_by_prefix(self, prefix: str) -> list[dict[str, Any]]: ...


class MemoryStore:
    """In-process store; values are copied on the way in and out."""

    def __init__(self) -> None:
        self._items: dict[str, dict[str, Any]] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        value = self._items.get(key)
        return copy.deepcopy(value) if value is not None else None

    def put(self, key: str, value: dict[str, Any]) -> None:
        self._items[key] = copy.deepcopy(value)

    def list_by_prefix(self, prefix: str) -> list[dict[str, Any]]:
        return [copy.deepcopy(value) for key, value in sorted(self._items.items()) if key.startswith(prefix)]


def _key_filename(key: str) -> str:
    return f"{hashlib.sha256(key.encode('utf-8')).hexdigest()}.json"


def _save_json(path: Path, value: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    payload = json.dumps(value, indent=2, sort_keys=True)
    for attempt in range(5):
        temp_path.write_text(payload, encoding="utf-8")
        try:
            temp_path.replace(path)
            return
        except PermissionError:
            if attempt == 4:
                raise
            # On Windows, AV/indexers can briefly lock newly-written temp files.
            time.sleep(0.02 * (attempt + 1))


class JsonFileStore:
    """One JSON document per key under `root`, written atomically."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        return self.root / _key_filename(key)

    def _read(self, path: Path) -> dict[str, Any] | None:
        try:
            wrapper = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Unable to read store document %s: %s", path.name, exc)
            raise StoreUnavailableError(f"Unable to read store document {path.name}") from exc
        if not isinstance(wrapper, dict) or not isinstance(wrapper.get("value"), dict):
            logger.warning("Ignoring malformed store document %s", path.name)
            return None
        return wrapper

    def get(self, key: str) -> dict[str, Any] | None:
        wrapper = self._read(self._path(key))
        if wrapper is None or wrapper.get("key") != key:
            return None
        return wrapper["value"]

    def put(self, key: str, value: dict[str, Any]) -> None:
        try:
            _save_json(self._path(key), {"key": key, "value": value})
        except OSError as exc:
            logger.error("Unable to write store document for %s: %s", key, exc)
            raise StoreUnavailableError("Unable to write store document") from exc

    def list_by_prefix(self, prefix: str) -> list[dict[str, Any]]:
        if not self.root.exists():
            return []
        rows: list[tuple[str, dict[str, Any]]] = []
        for path in sorted(self.root.glob("*.json")):
            wrapper = self._read(path)
            if wrapper is None:
                continue
            key = wrapper.get("key")
            if isinstance(key, str) and key.startswith(prefix):
                rows.append((key, wrapper["value"]))
        rows.sort(key=lambda item: item[0])
        return [value for _, value in rows]


def agent_key(token: str) -> str:
    return f"{AGENT_KEY_PREFIX}{token}"


class AgentRepository:
    """Typed `AgentRecord` access over a `ProgressStore`."""

    def __init__(self, store: ProgressStore) -> None:
        self.store = store

    def get(self, token: str) -> AgentRecord | None:
        payload = self.store.get(agent_key(token))
        if payload is None:
            return None
        try:
            return AgentRecord.from_dict(payload)
        except ValueError as exc:
            raise StoreUnavailableError(f"Stored record for token is unreadable: {exc}") from exc

    def save(self, record: AgentRecord) -> None:
        self.store.put(agent_key(record.token), record.to_dict())

    def list_all(self) -> list[AgentRecord]:
        records: list[AgentRecord] = []
        for payload in self.store.list_by_prefix(AGENT_KEY_PREFIX):
            try:
                records.append(AgentRecord.from_dict(payload))
            except ValueError:
                logger.warning("Skipping unreadable agent record during listing")
        return records
