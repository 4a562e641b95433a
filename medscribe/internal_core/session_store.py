from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from threading import RLock
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ValidationError

from .contracts import Session, utc_now

logger = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    pass


class SessionValidationError(SessionStoreError):
    def __init__(self, session_id: str, errors: List[str]):
        super().__init__(f"Invalid session {session_id}: " + "; ".join(errors))
        self.session_id = session_id
        self.errors = list(errors)


class SessionNotFoundError(KeyError):
    def __init__(self, session_id: str):
        super().__init__(f"Unknown session_id: {session_id}")
        self.session_id = session_id


def validate_session(data: Any) -> List[str]:
    """
    Structural checks applied at the persistence boundary.

    Returns a list of human-readable problems; empty means the record is storable.
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        session = Session.model_validate(data)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(part) for part in err['loc']) or 'session'}: {err['msg']}"
            for err in exc.errors()
        ]

    errors: List[str] = []
    seen: set[str] = set()
    for index, segment in enumerate(session.transcript):
        if segment.id in seen:
            errors.append(f"transcript.{index}.id: duplicate segment id {segment.id}")
        seen.add(segment.id)
    if session.updated_at < session.created_at:
        errors.append("updated_at: must not precede created_at")
    return errors


def _to_record(session: Session) -> Dict[str, Any]:
    errors = validate_session(session)
    if errors:
        raise SessionValidationError(session.id, errors)
    # JSON mode turns datetimes into ISO-8601 strings.
    return session.model_dump(mode="json")


def _from_record(record: Mapping[str, Any]) -> Session:
    return Session.model_validate(dict(record))


def _merge_fields(current: Session, fields: Mapping[str, Any]) -> Session:
    unknown = set(fields) - set(Session.model_fields)
    if unknown:
        raise SessionValidationError(current.id, [f"{name}: unknown field" for name in sorted(unknown)])
    payload = dict(current)
    payload.update(fields)
    payload["id"] = current.id
    payload["updated_at"] = utc_now()
    try:
        return Session.model_validate(payload)
    except ValidationError as exc:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        raise SessionValidationError(current.id, errors) from exc


class SessionStore(ABC):
    @abstractmethod
    async def save(self, session: Session) -> None: ...

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]: ...

    @abstractmethod
    async def update(self, session_id: str, fields: Mapping[str, Any]) -> Session: ...

    @abstractmethod
    async def delete(self, session_id: str) -> None: ...

    @abstractmethod
    async def list_all(self) -> List[Session]: ...


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._lock = RLock()
        self._records: Dict[str, Dict[str, Any]] = {}

    async def save(self, session: Session) -> None:
        record = _to_record(session)
        with self._lock:
            self._records[session.id] = record

    async def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            record = self._records.get(session_id)
        if record is None:
            return None
        return _from_record(record)

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> Session:
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            merged = _merge_fields(_from_record(record), fields)
            self._records[session_id] = _to_record(merged)
        return merged

    async def delete(self, session_id: str) -> None:
        with self._lock:
            self._records.pop(session_id, None)

    async def list_all(self) -> List[Session]:
        with self._lock:
            records = list(self._records.values())
        sessions = [_from_record(r) for r in records]
        sessions.sort(key=lambda s: s.created_at)
        return sessions


class JsonFileSessionStore(SessionStore):
    """One `<session_id>.json` file per session under `root`."""

    def __init__(self, root: Path):
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        safe = "".join(ch for ch in session_id if ch.isalnum() or ch in {"_", "-"})
        if not safe:
            raise SessionStoreError(f"Unusable session_id: {session_id!r}")
        return self._root / f"{safe}.json"

    def _write(self, session: Session) -> None:
        record = _to_record(session)
        path = self._path(session.id)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(record, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise SessionStoreError(f"Failed to write {path}: {exc}") from exc

    def _read(self, session_id: str) -> Optional[Session]:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            record = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise SessionStoreError(f"Failed to read {path}: {exc}") from exc
        return _from_record(record)

    async def save(self, session: Session) -> None:
        await asyncio.to_thread(self._write, session)

    async def get(self, session_id: str) -> Optional[Session]:
        return await asyncio.to_thread(self._read, session_id)

    async def update(self, session_id: str, fields: Mapping[str, Any]) -> Session:
        current = await self.get(session_id)
        if current is None:
            raise SessionNotFoundError(session_id)
        merged = _merge_fields(current, fields)
        await asyncio.to_thread(self._write, merged)
        return merged

    def _unlink(self, session_id: str) -> None:
        path = self._path(session_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise SessionStoreError(f"Failed to delete {path}: {exc}") from exc

    def _read_all(self) -> List[Session]:
        sessions: List[Session] = []
        for path in sorted(self._root.glob("*.json")):
            try:
                record = json.loads(path.read_text(encoding="utf-8"))
                sessions.append(_from_record(record))
            except (OSError, ValueError) as exc:
                # A single corrupt file must not hide the rest of the history.
                logger.warning("session_store skip unreadable file=%s error=%s", path.name, exc)
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    async def delete(self, session_id: str) -> None:
        await asyncio.to_thread(self._unlink, session_id)

    async def list_all(self) -> List[Session]:
        return await asyncio.to_thread(self._read_all)
