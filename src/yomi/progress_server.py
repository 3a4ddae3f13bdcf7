from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from pathlib import Path

from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from .cursor import Cursor
from .progress import JsonProgressBackend, PersistenceFailure, ProgressSnapshot, ProgressStore

_MAX_ID_LENGTH = 200


@dataclass(slots=True)
class ProgressServerConfig:
    store_path: Path
    recent_limit: int = 10


def _validate_id(value: str, name: str) -> str:
    cleaned = value.strip() if isinstance(value, str) else ""
    if not cleaned:
        raise HTTPException(status_code=400, detail=f"{name} is required.")
    if len(cleaned) > _MAX_ID_LENGTH:
        raise HTTPException(status_code=400, detail=f"{name} is too long.")
    return cleaned


def _position_from_body(payload: object) -> dict[str, int]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    position = payload.get("position")
    if not isinstance(position, dict):
        raise HTTPException(status_code=400, detail="position is required.")
    values: dict[str, int] = {}
    for key in ("paragraph_index", "sentence_index", "char_offset"):
        value = position.get(key, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise HTTPException(status_code=400, detail=f"{key} must be a non-negative integer.")
        values[key] = value
    return values


def create_app(config: ProgressServerConfig) -> FastAPI:
    backend = JsonProgressBackend(config.store_path)
    store = ProgressStore(backend)
    write_lock = threading.Lock()
    app = FastAPI(title="yomi progress")

    @app.get("/api/progress/{user_id}")
    def api_recent_progress(user_id: str, limit: int | None = None) -> JSONResponse:
        user = _validate_id(user_id, "user_id")
        if limit is not None and limit < 0:
            raise HTTPException(status_code=400, detail="limit must be non-negative.")
        snapshots = store.recent(user, limit if limit is not None else config.recent_limit)
        return JSONResponse({"progress": [snap.as_payload() for snap in snapshots]})

    @app.get("/api/progress/{user_id}/{book_id:path}")
    def api_get_progress(user_id: str, book_id: str) -> JSONResponse:
        user = _validate_id(user_id, "user_id")
        book = _validate_id(book_id, "book_id")
        try:
            payload = backend.get(user, book)
        except PersistenceFailure as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        snapshot = ProgressSnapshot.from_payload(user, book, payload) if payload else None
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No progress saved for this book.")
        return JSONResponse(snapshot.as_payload())

    @app.put("/api/progress/{user_id}/{book_id:path}")
    def api_put_progress(
        user_id: str,
        book_id: str,
        payload: dict[str, object] = Body(...),
    ) -> JSONResponse:
        user = _validate_id(user_id, "user_id")
        book = _validate_id(book_id, "book_id")
        position = _position_from_body(payload)
        text_sha1 = payload.get("text_sha1")
        if text_sha1 is not None and not isinstance(text_sha1, str):
            raise HTTPException(status_code=400, detail="text_sha1 must be a string or null.")
        updated_at = time.time()
        entry = {
            "position": position,
            "updated_at": updated_at,
            "text_sha1": text_sha1,
        }
        try:
            with write_lock:
                backend.upsert(user, book, entry)
        except PersistenceFailure as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        snapshot = ProgressSnapshot(
            user_id=user,
            book_id=book,
            position=Cursor(**position),
            updated_at=updated_at,
            text_sha1=text_sha1,
        )
        return JSONResponse(snapshot.as_payload())

    @app.delete("/api/progress/{user_id}/{book_id:path}")
    def api_delete_progress(user_id: str, book_id: str) -> JSONResponse:
        user = _validate_id(user_id, "user_id")
        book = _validate_id(book_id, "book_id")
        try:
            with write_lock:
                removed = backend.delete(user, book)
        except PersistenceFailure as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc
        return JSONResponse({"deleted": removed, "user_id": user, "book_id": book})

    return app


__all__ = ["ProgressServerConfig", "create_app"]
