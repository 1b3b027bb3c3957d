from __future__ import annotations

import logging
import socket
from typing import Any, Dict, Iterator, Optional

import requests
from requests.adapters import HTTPAdapter

from ..config import StreamSettings
from ..domain.errors import UpstreamUnavailable

LOG = logging.getLogger("personality.stream")


def _build_session() -> requests.Session:
    session = requests.Session()
    # The run itself is never retried; a second POST would start a second generation.
    adapter = HTTPAdapter(max_retries=0, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class WordwareClient:
    """Open streamed runs of a released Wordware app."""

    def __init__(self, settings: StreamSettings, session: Optional[requests.Session] = None) -> None:
        self._settings = settings
        self._session = session or _build_session()

    def run_url(self, prompt_id: str) -> str:
        return f"{self._settings.base_url}/api/released-app/{prompt_id}/run"

    def open_run(self, prompt_id: str, inputs: Dict[str, Any]) -> requests.Response:
        """POST the run and return the streaming response with headers read.

        Raises :class:`UpstreamUnavailable` on connect failure or a non-2xx
        status; the response is closed before raising.
        """

        headers = {"Content-Type": "application/json"}
        if self._settings.api_key:
            headers["Authorization"] = f"Bearer {self._settings.api_key}"
        url = self.run_url(prompt_id)
        try:
            resp = self._session.post(
                url,
                json={"inputs": inputs},
                headers=headers,
                timeout=(self._settings.connect_timeout, self._settings.read_timeout),
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            LOG.error("upstream_connect_failed", extra={"url": url, "err": str(exc)})
            raise UpstreamUnavailable(str(exc)) from exc

        LOG.info("upstream_responded", extra={"url": url, "status": resp.status_code})
        if not resp.ok:
            resp.close()
            raise UpstreamUnavailable(f"upstream returned {resp.status_code}", status_code=resp.status_code)
        return resp

    @staticmethod
    def iter_bytes(resp: requests.Response) -> Iterator[bytes]:
        """Raw body chunks as they arrive; line framing is left to the caller."""
        for chunk in resp.iter_content(chunk_size=None):
            if chunk:
                yield chunk

    @staticmethod
    def abort(resp: requests.Response) -> None:
        """Close ``resp`` and wake any thread blocked reading its body.

        ``Response.close()`` alone leaves a concurrent ``recv`` waiting for the
        read timeout; shutting the socket down makes that read return at once.
        """
        sock = _socket_of(resp)
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError as exc:
                LOG.debug("upstream_shutdown_failed", extra={"err": str(exc)})
        resp.close()


def _socket_of(resp: Any) -> Optional[socket.socket]:
    raw = getattr(resp, "raw", None)
    if raw is None:
        return None
    sock = getattr(getattr(raw, "_connection", None), "sock", None)
    if sock is None:
        # http.client keeps the socket behind its buffered reader
        fp = getattr(getattr(raw, "_fp", None), "fp", None)
        sock = getattr(getattr(fp, "raw", None), "_sock", None)
    return sock if isinstance(sock, socket.socket) else None
