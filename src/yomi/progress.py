from __future__ import annotations

import json
import math
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import requests

from .cursor import Cursor
from .logging_utils import debug_log

PROGRESS_STATE_VERSION = 1


class PersistenceFailure(RuntimeError):
    """Raised by progress backends when a read or write fails."""


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    user_id: str
    book_id: str
    position: Cursor
    updated_at: float = field(default_factory=time.time)
    text_sha1: str | None = None

    def as_payload(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "book_id": self.book_id,
            "position": self.position.as_payload(),
            "updated_at": self.updated_at,
            "text_sha1": self.text_sha1,
        }

    @classmethod
    def from_payload(cls, user_id: str, book_id: str, payload: object) -> "ProgressSnapshot | None":
        if not isinstance(payload, dict):
            return None
        position = Cursor.from_payload(payload.get("position"))
        if position is None:
            return None
        updated_at = payload.get("updated_at")
        text_sha1 = payload.get("text_sha1")
        return cls(
            user_id=user_id,
            book_id=book_id,
            position=position,
            updated_at=_finite_float(updated_at) or 0.0,
            text_sha1=text_sha1 if isinstance(text_sha1, str) and text_sha1 else None,
        )


class ProgressBackend(Protocol):
    def get(self, user_id: str, book_id: str) -> dict[str, object] | None: ...

    def upsert(self, user_id: str, book_id: str, payload: dict[str, object]) -> None: ...

    def delete(self, user_id: str, book_id: str) -> bool: ...

    def list_for_user(self, user_id: str) -> list[dict[str, object]]: ...


UserProgress = dict[str, dict[str, dict[str, object]]]


def _finite_float(value: object) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if math.isfinite(value) else None


def _normalize_entry(payload: object) -> dict[str, object] | None:
    if not isinstance(payload, dict):
        return None
    position = Cursor.from_payload(payload.get("position"))
    if position is None:
        return None
    text_sha1 = payload.get("text_sha1")
    return {
        "position": position.as_payload(),
        "updated_at": _finite_float(payload.get("updated_at")),
        "text_sha1": text_sha1 if isinstance(text_sha1, str) else None,
    }


class JsonProgressBackend:
    """
    Reading positions for every user and book in one JSON file.

    Unreadable files and malformed entries are treated as missing data.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()

    def _load_users(self) -> UserProgress:
        if not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            debug_log(f"Ignoring unreadable progress file {self.path}: {exc}")
            return {}
        users_payload = raw.get("users") if isinstance(raw, dict) else None
        if not isinstance(users_payload, dict):
            return {}
        users: UserProgress = {}
        for user_id, books in users_payload.items():
            if not isinstance(user_id, str) or not isinstance(books, dict):
                continue
            entries: dict[str, dict[str, object]] = {}
            for book_id, entry in books.items():
                if not isinstance(book_id, str):
                    continue
                normalized = _normalize_entry(entry)
                if normalized is not None:
                    entries[book_id] = normalized
            if entries:
                users[user_id] = entries
        return users

    def _save_users(self, users: UserProgress) -> None:
        state = {"version": PROGRESS_STATE_VERSION, "users": users}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_name(self.path.name + ".tmp")
            tmp_path.write_text(
                json.dumps(state, ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceFailure(f"Failed to write progress file {self.path}: {exc}") from exc

    def get(self, user_id: str, book_id: str) -> dict[str, object] | None:
        with self._lock:
            users = self._load_users()
        entry = users.get(user_id, {}).get(book_id)
        return dict(entry) if entry is not None else None

    def upsert(self, user_id: str, book_id: str, payload: dict[str, object]) -> None:
        normalized = _normalize_entry(payload)
        if normalized is None:
            raise PersistenceFailure("Progress payload is missing a valid position.")
        with self._lock:
            users = self._load_users()
            users.setdefault(user_id, {})[book_id] = normalized
            self._save_users(users)

    def delete(self, user_id: str, book_id: str) -> bool:
        with self._lock:
            users = self._load_users()
            books = users.get(user_id)
            if books is None or book_id not in books:
                return False
            del books[book_id]
            if not books:
                del users[user_id]
            self._save_users(users)
            return True

    def list_for_user(self, user_id: str) -> list[dict[str, object]]:
        with self._lock:
            users = self._load_users()
        books = users.get(user_id, {})
        return [dict(entry, book_id=book_id) for book_id, entry in books.items()]


class HttpProgressBackend:
    """
    Client for the progress service (see ``yomi.progress_server``).
    """

    def __init__(self, base_url: str, timeout: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = requests.Session()

    def _url(self, user_id: str, book_id: str | None = None) -> str:
        url = f"{self.base_url}/api/progress/{quote(user_id, safe='')}"
        if book_id is not None:
            url += f"/{quote(book_id, safe='')}"
        return url

    def _request(self, method: str, url: str, **kwargs: object) -> requests.Response:
        try:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise PersistenceFailure(f"Failed to contact progress service at {self.base_url}") from exc

    @staticmethod
    def _json(resp: requests.Response, endpoint: str) -> object:
        if resp.status_code != 200:
            raise PersistenceFailure(
                f"{endpoint} failed with status {resp.status_code}: {resp.text}"
            )
        try:
            return resp.json()
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"Progress service returned invalid JSON for {endpoint}") from exc

    def get(self, user_id: str, book_id: str) -> dict[str, object] | None:
        resp = self._request("GET", self._url(user_id, book_id))
        if resp.status_code == 404:
            return None
        payload = self._json(resp, "GET progress")
        return payload if isinstance(payload, dict) else None

    def upsert(self, user_id: str, book_id: str, payload: dict[str, object]) -> None:
        resp = self._request("PUT", self._url(user_id, book_id), json=payload)
        self._json(resp, "PUT progress")

    def delete(self, user_id: str, book_id: str) -> bool:
        resp = self._request("DELETE", self._url(user_id, book_id))
        payload = self._json(resp, "DELETE progress")
        return bool(payload.get("deleted")) if isinstance(payload, dict) else False

    def list_for_user(self, user_id: str) -> list[dict[str, object]]:
        resp = self._request("GET", self._url(user_id))
        payload = self._json(resp, "GET recent progress")
        entries = payload.get("progress") if isinstance(payload, dict) else None
        if not isinstance(entries, list):
            return []
        return [entry for entry in entries if isinstance(entry, dict)]

    def close(self) -> None:
        self._session.close()


class ProgressStore:
    """
    Best-effort access to saved reading positions.

    Backend failures never propagate: a failed load reads as "no snapshot"
    and a failed save returns False so the caller can retry later.
    """

    def __init__(self, backend: ProgressBackend) -> None:
        self.backend = backend

    def load(self, user_id: str, book_id: str) -> ProgressSnapshot | None:
        try:
            payload = self.backend.get(user_id, book_id)
        except Exception as exc:
            debug_log(f"Progress load failed for {user_id}/{book_id}: {exc}")
            return None
        if payload is None:
            return None
        return ProgressSnapshot.from_payload(user_id, book_id, payload)

    def save(
        self,
        user_id: str,
        book_id: str,
        position: Cursor,
        *,
        text_sha1: str | None = None,
    ) -> bool:
        snapshot = ProgressSnapshot(
            user_id=user_id,
            book_id=book_id,
            position=position,
            text_sha1=text_sha1,
        )
        try:
            self.backend.upsert(user_id, book_id, snapshot.as_payload())
        except Exception as exc:
            debug_log(f"Progress save failed for {user_id}/{book_id}: {exc}")
            return False
        return True

    def recent(self, user_id: str, limit: int | None = 10) -> list[ProgressSnapshot]:
        try:
            entries = self.backend.list_for_user(user_id)
        except Exception as exc:
            debug_log(f"Progress listing failed for {user_id}: {exc}")
            return []
        snapshots: list[ProgressSnapshot] = []
        for entry in entries:
            book_id = entry.get("book_id")
            if not isinstance(book_id, str):
                continue
            snapshot = ProgressSnapshot.from_payload(user_id, book_id, entry)
            if snapshot is not None:
                snapshots.append(snapshot)
        snapshots.sort(key=lambda snap: (-snap.updated_at, snap.book_id))
        if limit is not None and limit >= 0:
            return snapshots[:limit]
        return snapshots

    def reset(self, user_id: str, book_id: str) -> bool:
        try:
            return self.backend.delete(user_id, book_id)
        except Exception as exc:
            debug_log(f"Progress reset failed for {user_id}/{book_id}: {exc}")
            return False


__all__ = [
    "HttpProgressBackend",
    "JsonProgressBackend",
    "PROGRESS_STATE_VERSION",
    "PersistenceFailure",
    "ProgressBackend",
    "ProgressSnapshot",
    "ProgressStore",
]
