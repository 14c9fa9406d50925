"""
Delivery router: synthesized fragment listing, byte-range streaming and the
WebSocket channel announcing new fragments.
"""

import os
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from app.dependencies import get_languages, get_store, get_ws_notifier, valid_video_id
from app.models.schemas import FragmentListResponse
from app.services.fragment_store import FragmentStore, Stage, parse_fragment_index
from app.services.notifier import FragmentNotifier
from app.utils.range_utils import stream_file


logger = logging.getLogger("orchestrator")

router = APIRouter(tags=["Fragments"])


def resolve_language(language: Optional[str], languages: List[str]) -> str:
    """
    Match a requested language against the configured set (case-insensitive).
    Defaults to the first configured language. Raises HTTPException 404 otherwise.
    """
    if not language:
        return languages[0]
    for configured in languages:
        if configured.lower() == language.lower():
            return configured
    raise HTTPException(status_code=404, detail=f"Language '{language}' is not configured")


@router.get("/api/audio/{video_id}/fragments", response_model=FragmentListResponse)
async def list_fragments(
    video_id: str = Depends(valid_video_id),
    language: Optional[str] = Query(None, description="Target language name, e.g. Hindi"),
    store: FragmentStore = Depends(get_store),
    languages: List[str] = Depends(get_languages)
):
    """List synthesized fragments for one language, sorted by index (fragment-2 before fragment-10)."""
    language = resolve_language(language, languages)
    directory = store.stage_dir(video_id, Stage.SYNTHESIZED, language)

    files = store.list_filenames(video_id, Stage.SYNTHESIZED, language)
    try:
        total = len([name for name in os.listdir(directory) if not name.endswith(".tmp")])
    except FileNotFoundError:
        total = 0

    return FragmentListResponse(
        files=files,
        directory=f"{Stage.SYNTHESIZED.subdir}/{language}",
        totalFiles=total,
        audioFiles=len(files),
    )


@router.get("/api/audio/{video_id}/{language}/{filename}")
async def get_fragment(
    request: Request,
    filename: str,
    language: str,
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store),
    languages: List[str] = Depends(get_languages)
):
    """
    Stream one synthesized fragment.

    Honors a single ``Range: bytes=start-end`` header with 206 Partial Content,
    returns 200 with the full body otherwise, 416 for unsatisfiable ranges and
    404 when the fragment doesn't exist.
    """
    language = resolve_language(language, languages)
    if parse_fragment_index(filename, Stage.SYNTHESIZED.extensions) is None:
        raise HTTPException(status_code=400, detail="Invalid fragment filename")

    path = os.path.join(store.stage_dir(video_id, Stage.SYNTHESIZED, language), filename)
    if not os.path.isfile(path) or os.path.getsize(path) == 0:
        raise HTTPException(status_code=404, detail="Fragment not found")

    return stream_file(path, request.headers.get("range"))


@router.websocket("/ws/fragments")
async def fragment_events(
    websocket: WebSocket,
    videoId: Optional[str] = None,
    notifier: FragmentNotifier = Depends(get_ws_notifier)
):
    """
    Push ``{type: 'newFragment', videoId, language, fragment}`` events.

    Optional ``?videoId=`` limits events to one source. Late joiners get no
    replay and should catch up through the fragments listing.
    """
    await websocket.accept()
    await notifier.connect(websocket, videoId)
    await websocket.send_json({"type": "connected", "videoId": videoId})
    try:
        while True:
            # Client messages are ignored; receiving detects disconnects
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await notifier.disconnect(websocket)
