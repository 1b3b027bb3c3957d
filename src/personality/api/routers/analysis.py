from __future__ import annotations

import logging
import threading
from typing import Optional

import anyio
import anyio.to_thread
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, StreamingResponse

from ...config import StreamSettings
from ...domain.errors import PersistenceFailure, UpstreamUnavailable, UserNotFound
from ...domain.models import AnalysisRequest, AnalysisStatus
from ...infrastructure.user_store import UserStore, get_user_store
from ...services.supervisor import AlreadyInProgress, StreamSupervisor, start_analysis
from ...services.wordware_client import WordwareClient

logger = logging.getLogger("personality.api")

router = APIRouter(prefix="/wordware", tags=["wordware"])


def get_settings() -> StreamSettings:
    return StreamSettings.from_env()


def get_client(settings: StreamSettings = Depends(get_settings)) -> WordwareClient:
    return WordwareClient(settings)


def get_store() -> UserStore:
    return get_user_store()


def _stream_body(supervisor: StreamSupervisor):
    chunks = supervisor.stream()
    step = threading.Lock()

    def next_piece() -> Optional[str]:
        with step:
            return next(chunks, None)

    def finish() -> None:
        # Waits for an abandoned next_piece; cancel() has already woken its read.
        with step:
            chunks.close()
        supervisor.close()

    async def body():
        try:
            while True:
                piece = await anyio.to_thread.run_sync(next_piece, abandon_on_cancel=True)
                if piece is None:
                    break
                yield piece
        finally:
            # Caller went away mid-stream: unblock the upstream read.
            if supervisor.exit_reason is None:
                supervisor.cancel()
            with anyio.CancelScope(shield=True):
                await anyio.to_thread.run_sync(finish)

    return body()


@router.post("")
def run_analysis(
    req: AnalysisRequest,
    store: UserStore = Depends(get_store),
    client: WordwareClient = Depends(get_client),
    settings: StreamSettings = Depends(get_settings),
):
    try:
        outcome = start_analysis(req.username, req.full, store=store, client=client, settings=settings)
    except UserNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except UpstreamUnavailable as exc:
        logger.error("analysis_upstream_unavailable", extra={"username": req.username, "err": str(exc)})
        return JSONResponse({"error": "No reader"}, status_code=status.HTTP_502_BAD_GATEWAY)
    except PersistenceFailure as exc:
        logger.error("analysis_start_not_recorded", extra={"username": req.username, "err": str(exc)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="User store unavailable") from exc

    if isinstance(outcome, AlreadyInProgress):
        return {"error": outcome.message}

    return StreamingResponse(_stream_body(outcome), media_type="text/plain")


@router.get("/{username}", response_model=AnalysisStatus)
def get_analysis(username: str, store: UserStore = Depends(get_store)) -> AnalysisStatus:
    user = store.get(username)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"User not found: {username}")
    return AnalysisStatus(
        username=user.username,
        wordware_started=user.wordware_started,
        wordware_completed=user.wordware_completed,
        paid_wordware_started=user.paid_wordware_started,
        paid_wordware_completed=user.paid_wordware_completed,
        analysis=user.analysis,
    )
