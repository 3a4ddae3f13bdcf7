from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

from yomi.cursor import Cursor
from yomi.progress import (
    HttpProgressBackend,
    JsonProgressBackend,
    PersistenceFailure,
    ProgressSnapshot,
    ProgressStore,
)


class FailingBackend:
    def __init__(self) -> None:
        self.attempts = 0

    def get(self, user_id, book_id):
        self.attempts += 1
        raise PersistenceFailure("offline")

    def upsert(self, user_id, book_id, payload):
        self.attempts += 1
        raise PersistenceFailure("offline")

    def delete(self, user_id, book_id):
        self.attempts += 1
        raise PersistenceFailure("offline")

    def list_for_user(self, user_id):
        self.attempts += 1
        raise PersistenceFailure("offline")


class DummyResponse:
    def __init__(self, status_code: int = 200, payload: object = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self) -> object:
        if self._payload is None:
            raise json.JSONDecodeError("no body", "", 0)
        return self._payload


class DummySession:
    def __init__(self, responses: list[DummyResponse]) -> None:
        self.responses = list(responses)
        self.requests: list[tuple[str, str, dict]] = []
        self.closed = False

    def request(self, method: str, url: str, **kwargs):
        self.requests.append((method, url, kwargs))
        return self.responses.pop(0)

    def close(self) -> None:
        self.closed = True


def test_json_backend_save_and_load(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    store = ProgressStore(JsonProgressBackend(path))

    assert store.load("u1", "b1") is None
    assert store.save("u1", "b1", Cursor(3, 2, 140), text_sha1="abc")

    snapshot = store.load("u1", "b1")
    assert snapshot is not None
    assert snapshot.position == Cursor(3, 2, 140)
    assert snapshot.text_sha1 == "abc"
    assert snapshot.updated_at > 0

    raw = json.loads(path.read_text(encoding="utf-8"))
    assert raw["version"] == 1
    assert raw["users"]["u1"]["b1"]["position"]["paragraph_index"] == 3


def test_save_overwrites_previous_snapshot(tmp_path: Path) -> None:
    store = ProgressStore(JsonProgressBackend(tmp_path / "progress.json"))
    store.save("u1", "b1", Cursor(1, 0))
    store.save("u1", "b1", Cursor(4, 1))

    snapshot = store.load("u1", "b1")
    assert snapshot is not None
    assert snapshot.position.paragraph_index == 4
    assert len(store.recent("u1")) == 1


def test_json_backend_ignores_malformed_data(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    path.write_text(
        json.dumps(
            {
                "version": 1,
                "users": {
                    "u1": {
                        "good": {"position": {"paragraph_index": 2, "sentence_index": 1}},
                        "bad": {"position": "nope"},
                        "worse": 12,
                    },
                    "u2": [],
                },
            }
        ),
        encoding="utf-8",
    )
    backend = JsonProgressBackend(path)
    assert backend.get("u1", "bad") is None
    assert backend.get("u1", "good")["position"]["paragraph_index"] == 2
    assert backend.list_for_user("u2") == []

    path.write_text("{broken", encoding="utf-8")
    assert ProgressStore(backend).load("u1", "good") is None


def test_json_backend_drops_non_finite_positions(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    path.write_text(
        '{"version": 1, "users": {"u1": {'
        '"inf": {"position": {"paragraph_index": Infinity}},'
        '"nan": {"position": {"paragraph_index": 1, "sentence_index": NaN}},'
        '"good": {"position": {"paragraph_index": 2}, "updated_at": -Infinity}'
        "}}}",
        encoding="utf-8",
    )
    store = ProgressStore(JsonProgressBackend(path))

    assert store.load("u1", "inf") is None
    assert store.load("u1", "nan") is None
    good = store.load("u1", "good")
    assert good is not None
    assert good.position == Cursor(2, 0, 0)
    assert good.updated_at == 0.0

    assert store.save("u1", "other", Cursor(1, 0, 5)) is True
    raw = json.loads(path.read_text(encoding="utf-8"))
    assert sorted(raw["users"]["u1"]) == ["good", "other"]


def test_json_backend_rejects_payload_without_position(tmp_path: Path) -> None:
    backend = JsonProgressBackend(tmp_path / "progress.json")
    with pytest.raises(PersistenceFailure):
        backend.upsert("u1", "b1", {"updated_at": 1.0})


def test_reset_removes_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "progress.json"
    store = ProgressStore(JsonProgressBackend(path))
    store.save("u1", "b1", Cursor(1, 1))

    assert store.reset("u1", "b1") is True
    assert store.reset("u1", "b1") is False
    assert store.load("u1", "b1") is None
    assert json.loads(path.read_text(encoding="utf-8"))["users"] == {}


def test_recent_orders_by_update_time(tmp_path: Path) -> None:
    backend = JsonProgressBackend(tmp_path / "progress.json")
    for book, stamp in (("old", 10.0), ("new", 30.0), ("mid", 20.0)):
        backend.upsert(
            "u1",
            book,
            ProgressSnapshot("u1", book, Cursor(), updated_at=stamp).as_payload(),
        )
    store = ProgressStore(backend)

    assert [snap.book_id for snap in store.recent("u1")] == ["new", "mid", "old"]
    assert [snap.book_id for snap in store.recent("u1", limit=2)] == ["new", "mid"]
    assert store.recent("nobody") == []


def test_store_swallows_backend_failures() -> None:
    backend = FailingBackend()
    store = ProgressStore(backend)

    assert store.load("u1", "b1") is None
    assert store.save("u1", "b1", Cursor(1, 0)) is False
    assert store.recent("u1") == []
    assert store.reset("u1", "b1") is False
    assert backend.attempts == 4


def test_store_swallows_unexpected_errors() -> None:
    class Exploding(FailingBackend):
        def upsert(self, user_id, book_id, payload):
            raise KeyError("boom")

    assert ProgressStore(Exploding()).save("u1", "b1", Cursor()) is False


def test_http_backend_round_trip() -> None:
    backend = HttpProgressBackend("http://progress.local/")
    stored = {
        "user_id": "u 1",
        "book_id": "books/b1",
        "position": {"paragraph_index": 2, "sentence_index": 0, "char_offset": 9},
        "updated_at": 5.0,
        "text_sha1": None,
    }
    session = DummySession(
        [
            DummyResponse(200, stored),
            DummyResponse(200, stored),
            DummyResponse(404, None),
            DummyResponse(200, {"progress": [dict(stored), "junk"]}),
            DummyResponse(200, {"deleted": True}),
        ]
    )
    backend._session = session  # type: ignore[assignment]
    store = ProgressStore(backend)

    assert store.save("u 1", "books/b1", Cursor(2, 0, 9))
    snapshot = store.load("u 1", "books/b1")
    assert snapshot is not None and snapshot.position == Cursor(2, 0, 9)
    assert store.load("u 1", "missing") is None
    assert [snap.book_id for snap in store.recent("u 1")] == ["books/b1"]
    assert store.reset("u 1", "books/b1") is True

    method, url, kwargs = session.requests[0]
    assert method == "PUT"
    assert url == "http://progress.local/api/progress/u%201/books%2Fb1"
    assert kwargs["json"]["position"]["paragraph_index"] == 2
    assert session.requests[3][1] == "http://progress.local/api/progress/u%201"

    backend.close()
    assert session.closed


def test_http_backend_errors_become_persistence_failures() -> None:
    class ExplodingSession(DummySession):
        def request(self, method, url, **kwargs):
            raise requests.ConnectionError("refused")

    backend = HttpProgressBackend("http://progress.local")
    backend._session = ExplodingSession([])  # type: ignore[assignment]
    with pytest.raises(PersistenceFailure):
        backend.get("u1", "b1")

    backend._session = DummySession([DummyResponse(500, {"detail": "x"}, text="x")])  # type: ignore[assignment]
    with pytest.raises(PersistenceFailure):
        backend.upsert("u1", "b1", {"position": {}})
    assert ProgressStore(backend).save("u1", "b1", Cursor()) is False
