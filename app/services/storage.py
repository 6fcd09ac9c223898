from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import Depends

from app.constants import DEFAULT_CONFIG, MAX_CONCURRENT_LIMIT

STATE_VERSION = 1


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_state() -> Dict[str, Any]:
    return {
        "version": STATE_VERSION,
        "runs": {},
        "items": {},
        "events": {},
        "config": dict(DEFAULT_CONFIG),
    }


def _item_key(run_id: str, item_id: str) -> str:
    return f"{run_id}:{item_id}"


class LocalDynamoStorage:
    """Very small DynamoDB-like persistence layer backed by a JSON file.

    Each top-level collection stores records keyed by their primary identifier.
    Writes are synchronised via an internal lock and flushed to disk immediately.
    Passing ``path=None`` keeps the state in memory only.
    """

    def __init__(self, path: Optional[Path]) -> None:
        self._path = path
        self._lock = threading.RLock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if self._path is None or not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        for collection in ("runs", "items", "events"):
            state.setdefault(collection, {})
        config = state.setdefault("config", {})
        for key, value in DEFAULT_CONFIG.items():
            config.setdefault(key, value)
        return state

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", dict(DEFAULT_CONFIG))

    def update_config(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            config.update(changes)
            self._persist()
            return dict(config)

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def upsert_many(self, collection: str, payloads: Dict[str, Dict[str, Any]]) -> None:
        with self._lock:
            self._collection(collection).update(payloads)
            self._persist()

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._collection(collection).get(item_id)
            return dict(record) if record is not None else None

    def list(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self._collection(collection).values()]

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]

    def append(self, collection: str, key: str, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Append ``entry`` to the list stored under ``key``, stamping its sequence."""
        with self._lock:
            entries = self._collection(collection).setdefault(key, [])
            entry = dict(entry)
            entry["sequence"] = len(entries)
            entries.append(entry)
            self._persist()
            return entry

    def slice(self, collection: str, key: str, start: int = 0) -> List[Dict[str, Any]]:
        with self._lock:
            entries = self._collection(collection).get(key) or []
            return [dict(entry) for entry in entries[max(0, start):]]


class FlowRepository:
    """Repository offering domain-focused helpers on top of LocalDynamoStorage."""

    def __init__(self, storage: LocalDynamoStorage) -> None:
        self._storage = storage

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        merged = dict(DEFAULT_CONFIG)
        merged.update({key: value for key, value in config.items() if key in DEFAULT_CONFIG})
        return {
            "max_concurrent_items": int(merged["max_concurrent_items"]),
            "poll_interval_seconds": float(merged["poll_interval_seconds"]),
            "login_timeout_seconds": int(merged["login_timeout_seconds"]),
            "input_timeout_seconds": int(merged["input_timeout_seconds"]),
            "poll_timeout_seconds": int(merged["poll_timeout_seconds"]),
            "poll_backoff_max_seconds": float(merged["poll_backoff_max_seconds"]),
            "await_handle_before_submit": bool(merged["await_handle_before_submit"]),
            "profile_dir": str(merged["profile_dir"]),
            "headless": bool(merged["headless"]),
            "type_delay_ms": int(merged["type_delay_ms"]),
        }

    def set_max_concurrent_items(self, limit: int) -> Dict[str, Any]:
        if limit <= 0:
            raise ValueError("Maximum concurrent items must be a positive integer.")
        if limit > MAX_CONCURRENT_LIMIT:
            raise ValueError(
                f"Maximum concurrent items cannot exceed {MAX_CONCURRENT_LIMIT}."
            )
        self._storage.update_config({"max_concurrent_items": int(limit)})
        return self.get_config()

    def set_poll_interval_seconds(self, seconds: float) -> Dict[str, Any]:
        if seconds <= 0:
            raise ValueError("Poll interval must be greater than zero.")
        self._storage.update_config({"poll_interval_seconds": float(seconds)})
        return self.get_config()

    def set_login_timeout_seconds(self, seconds: int) -> Dict[str, Any]:
        if seconds < 0:
            raise ValueError("Login timeout must be zero (unbounded) or greater.")
        self._storage.update_config({"login_timeout_seconds": int(seconds)})
        return self.get_config()

    def set_input_timeout_seconds(self, seconds: int) -> Dict[str, Any]:
        if seconds <= 0:
            raise ValueError("Input timeout must be a positive number of seconds.")
        self._storage.update_config({"input_timeout_seconds": int(seconds)})
        return self.get_config()

    def set_poll_timeout_seconds(self, seconds: int) -> Dict[str, Any]:
        if seconds < 0:
            raise ValueError("Poll timeout must be zero (unbounded) or greater.")
        self._storage.update_config({"poll_timeout_seconds": int(seconds)})
        return self.get_config()

    def set_poll_backoff_max_seconds(self, seconds: float) -> Dict[str, Any]:
        if seconds <= 0:
            raise ValueError("Poll backoff cap must be greater than zero.")
        self._storage.update_config({"poll_backoff_max_seconds": float(seconds)})
        return self.get_config()

    def set_profile_dir(self, profile_dir: str) -> Dict[str, Any]:
        normalized = profile_dir.strip()
        if not normalized:
            raise ValueError("Profile directory cannot be blank.")
        self._storage.update_config({"profile_dir": normalized})
        return self.get_config()

    def set_type_delay_ms(self, milliseconds: int) -> Dict[str, Any]:
        if milliseconds < 0:
            raise ValueError("Typing delay must be zero or greater.")
        self._storage.update_config({"type_delay_ms": int(milliseconds)})
        return self.get_config()

    def update_config(self, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Apply several settings at once; every value is validated before any is stored."""
        setters = {
            "max_concurrent_items": self.set_max_concurrent_items,
            "poll_interval_seconds": self.set_poll_interval_seconds,
            "login_timeout_seconds": self.set_login_timeout_seconds,
            "input_timeout_seconds": self.set_input_timeout_seconds,
            "poll_timeout_seconds": self.set_poll_timeout_seconds,
            "poll_backoff_max_seconds": self.set_poll_backoff_max_seconds,
            "profile_dir": self.set_profile_dir,
            "type_delay_ms": self.set_type_delay_ms,
        }
        unknown = set(changes) - set(DEFAULT_CONFIG)
        if unknown:
            raise ValueError("Unknown configuration keys: " + ", ".join(sorted(unknown)))
        snapshot = self._storage.get_config().copy()
        try:
            for key, value in changes.items():
                setter = setters.get(key)
                if setter is not None:
                    setter(value)
                else:
                    self._storage.update_config({key: bool(value)})
        except ValueError:
            self._storage.update_config(snapshot)
            raise
        return self.get_config()

    # -- Runs ---------------------------------------------------------------------
    def list_runs(self, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        items = self._storage.list("runs")
        if status:
            items = [it for it in items if it.get("status") == status]
        return sorted(items, key=lambda it: it["created_at"], reverse=True)

    def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("runs", run_id)

    def create_run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        run_id = str(uuid.uuid4())
        record = {
            "id": run_id,
            "status": payload.get("status", "queued"),
            "limit": int(payload["limit"]),
            "project_id": payload.get("project_id"),
            "note": payload.get("note"),
            "source_run_id": payload.get("source_run_id"),
            "summary": payload.get("summary")
            or {
                "items_total": 0,
                "items_succeeded": 0,
                "items_failed": 0,
                "items_pending": 0,
                "progress": 0.0,
            },
            "created_at": now,
            "updated_at": now,
            "started_at": None,
            "completed_at": None,
        }
        return self._storage.upsert("runs", run_id, record)

    def update_run(self, run_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_run(run_id)
        if not record:
            return None
        record.update({k: v for k, v in payload.items() if v is not None})
        record["updated_at"] = _utcnow()
        return self._storage.upsert("runs", run_id, record)

    # -- Items --------------------------------------------------------------------
    def create_items(self, run_id: str, items: List[Dict[str, str]]) -> List[Dict[str, Any]]:
        now = _utcnow()
        records: Dict[str, Dict[str, Any]] = {}
        for sequence, item in enumerate(items):
            records[_item_key(run_id, item["id"])] = {
                "run_id": run_id,
                "item_id": item["id"],
                "text": item["text"],
                "state": "idle",
                "message": "",
                "result_url": None,
                "operation_name": None,
                "scene_id": None,
                "sequence": sequence,
                "updated_at": now,
            }
        self._storage.upsert_many("items", records)
        return sorted(records.values(), key=lambda it: it["sequence"])

    def get_item(self, run_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("items", _item_key(run_id, item_id))

    def update_item(self, run_id: str, item_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_item(run_id, item_id)
        if not record:
            return None
        record.update({k: v for k, v in payload.items() if v is not None})
        record["updated_at"] = _utcnow()
        return self._storage.upsert("items", _item_key(run_id, item_id), record)

    def list_items(self, run_id: str) -> List[Dict[str, Any]]:
        return sorted(
            self._storage.filter("items", key="run_id", value=run_id),
            key=lambda it: it.get("sequence", 0),
        )

    # -- Events -------------------------------------------------------------------
    def append_event(self, run_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        payload = dict(event)
        payload["run_id"] = run_id
        payload.setdefault("created_at", _utcnow())
        return self._storage.append("events", run_id, payload)

    def list_events(self, run_id: str, *, since: int = 0) -> List[Dict[str, Any]]:
        return self._storage.slice("events", run_id, since)


_repository: Optional[FlowRepository] = None


def get_repository() -> FlowRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path("flow.db.json")
        backend = LocalDynamoStorage(storage_path)
        _repository = FlowRepository(backend)
    return _repository


RepositoryDep = Depends(get_repository)
