from __future__ import annotations

import json
import socket
import threading
from datetime import UTC, datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

import requests

from src.personality.config import StreamSettings
from src.personality.domain.errors import PersistenceFailure
from src.personality.domain.models import UserRecord
from src.personality.infrastructure.user_store import InMemoryUserStore
from src.personality.services.wordware_client import WordwareClient


def make_settings(**overrides: Any) -> StreamSettings:
    base: Dict[str, Any] = {
        "api_key": "test-key",
        "base_url": "https://wordware.test",
        "roast_prompt_id": "roast-123",
        "full_prompt_id": "full-456",
    }
    base.update(overrides)
    return StreamSettings(**base)


def make_user(username: str = "alice", *, age_seconds: float = 3600, **fields: Any) -> UserRecord:
    created = datetime.now(UTC) - timedelta(seconds=age_seconds)
    data: Dict[str, Any] = {
        "username": username,
        "created_at": created,
        "profile_picture": "https://img.test/alice.png",
        "full_profile": {"bio": "hello"},
        "tweets": [{"text": "first tweet", "createdAt": "2024-01-01", "likeCount": 3}],
        "analysis": {"about": "previous"},
    }
    data.update(fields)
    return UserRecord(**data)


def jsonl(*records: Dict[str, Any]) -> bytes:
    return b"".join(json.dumps(r).encode("utf-8") + b"\n" for r in records)


def hello_world_stream() -> bytes:
    return jsonl(
        {"type": "generation", "value": {"state": "start", "label": "output"}},
        {"type": "chunk", "value": {"value": "Hello "}},
        {"type": "chunk", "value": {"value": "world"}},
        {"type": "generation", "value": {"state": "end", "label": "output"}},
        {"type": "outputs", "values": {"output": {"roast": "ok"}}},
    )


def split_every(data: bytes, size: int) -> List[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class FakeResponse:
    """Stand-in for a streamed ``requests.Response``."""

    def __init__(self, chunks: Iterable[bytes], status_code: int = 200) -> None:
        self._chunks = list(chunks)
        self.status_code = status_code
        self.closed = False
        self.close_calls = 0
        self.on_chunk = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 400

    def iter_content(self, chunk_size: Optional[int] = None):
        for chunk in self._chunks:
            if self.closed:
                raise requests.exceptions.ConnectionError("response closed")
            if self.on_chunk is not None:
                self.on_chunk(chunk)
            yield chunk

    def close(self) -> None:
        self.closed = True
        self.close_calls += 1


class FakeClient(WordwareClient):
    def __init__(self, response: Optional[FakeResponse] = None, error: Optional[Exception] = None) -> None:
        super().__init__(make_settings(), session=requests.Session())
        self.response = response
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def open_run(self, prompt_id: str, inputs: Dict[str, Any]):
        self.calls.append({"prompt_id": prompt_id, "inputs": inputs})
        if self.error is not None:
            raise self.error
        return self.response


class FlakyStore(InMemoryUserStore):
    """In-memory store whose analysis writes fail ``fail_times`` times (-1 = always)."""

    def __init__(self, fail_times: int = -1) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.updates: List[Dict[str, Any]] = []

    def update(self, username, partial):
        self.updates.append(dict(partial))
        if "analysis" in partial and self.fail_times != 0:
            if self.fail_times > 0:
                self.fail_times -= 1
            raise PersistenceFailure(username, "database unavailable")
        return super().update(username, partial)


class StallingUpstream:
    """Local HTTP server that sends one chunk of ``body`` and then goes silent.

    The connection stays open until :meth:`stop`, so a client read after the
    first chunk blocks on the socket exactly like a hung upstream.
    """

    def __init__(self, body: bytes) -> None:
        self._body = body
        self._release = threading.Event()
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(1)
        self.port = self._server.getsockname()[1]
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.port}"

    def __enter__(self) -> "StallingUpstream":
        self._thread.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    def stop(self) -> None:
        self._release.set()
        self._server.close()
        self._thread.join(timeout=5)

    def _serve(self) -> None:
        try:
            conn, _ = self._server.accept()
        except OSError:
            return
        with conn:
            request = b""
            while b"\r\n\r\n" not in request:
                data = conn.recv(65536)
                if not data:
                    return
                request += data
            conn.sendall(
                b"HTTP/1.1 200 OK\r\n"
                b"Content-Type: application/x-ndjson\r\n"
                b"Transfer-Encoding: chunked\r\n\r\n"
                + f"{len(self._body):x}\r\n".encode("ascii")
                + self._body
                + b"\r\n"
            )
            self._release.wait(30)
