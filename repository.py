"""Persistence collaborator: ``create`` / ``save`` / ``destroy`` records by kind.

The engine never assumes a storage engine; it only talks to something shaped
like :class:`Repository`. :class:`JsonFileRepository` is the file-backed
implementation the service uses by default.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol


class Repository(Protocol):
    async def create(self, kind: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def save(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def destroy(self, kind: str, record_id: str) -> bool:
        ...

    async def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        ...

    async def list(self, kind: str) -> List[Dict[str, Any]]:
        ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonFileRepository:
    """All records in one JSON document, rewritten atomically on every change."""

    def __init__(self, path: Path):
        self._path = path
        self._lock = asyncio.Lock()
        self._records: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._load_sync()

    def _load_sync(self) -> None:
        self._records.clear()
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            return
        try:
            raw = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError) as exc:
            print(f"[repository] failed to load {self._path}: {exc}")
            return
        kinds = raw.get("records", {}) if isinstance(raw, dict) else {}
        for kind, entries in kinds.items():
            if not isinstance(entries, list):
                continue
            bucket = self._records.setdefault(kind, {})
            for entry in entries:
                if isinstance(entry, dict) and entry.get("id"):
                    bucket[str(entry["id"])] = entry

    def _serialise_state(self) -> str:
        data = {
            "records": {kind: list(bucket.values()) for kind, bucket in self._records.items()},
            "updated_at": _now_iso(),
        }
        return json.dumps(data, indent=2, sort_keys=True, default=str)

    async def _persist(self) -> None:
        payload = self._serialise_state()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(payload)
        tmp_path.replace(self._path)

    async def create(self, kind: str, attrs: Dict[str, Any]) -> Dict[str, Any]:
        record = {**attrs}
        record.setdefault("id", uuid.uuid4().hex)
        record.setdefault("created_at", _now_iso())
        record["updated_at"] = _now_iso()
        async with self._lock:
            self._records.setdefault(kind, {})[str(record["id"])] = record
            await self._persist()
        return dict(record)

    async def save(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        record_id = record.get("id")
        if not record_id:
            return await self.create(kind, record)
        async with self._lock:
            bucket = self._records.setdefault(kind, {})
            existing = bucket.get(str(record_id), {})
            merged = {**existing, **record, "updated_at": _now_iso()}
            merged.setdefault("created_at", merged["updated_at"])
            bucket[str(record_id)] = merged
            await self._persist()
        return dict(merged)

    async def destroy(self, kind: str, record_id: str) -> bool:
        async with self._lock:
            bucket = self._records.get(kind, {})
            if str(record_id) not in bucket:
                return False
            del bucket[str(record_id)]
            await self._persist()
            return True

    async def get(self, kind: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._records.get(kind, {}).get(str(record_id))
            return dict(record) if record else None

    async def list(self, kind: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(r) for r in self._records.get(kind, {}).values()]


__all__ = ["JsonFileRepository", "Repository"]
