"""
FastAPI dependency injection functions.

The registry, fragment store and notifier are created by the application
lifespan and stored on ``app.state``; handlers receive them through these
dependencies instead of importing module-level globals.
"""

from typing import List

from fastapi import HTTPException, Request, WebSocket

from app.services.fragment_store import FragmentStore
from app.services.notifier import FragmentNotifier
from app.services.registry import SourceRegistry
from app.utils.platform_utils import is_valid_video_id


def get_registry(request: Request) -> SourceRegistry:
    return request.app.state.registry


def get_store(request: Request) -> FragmentStore:
    return request.app.state.store


def get_languages(request: Request) -> List[str]:
    return request.app.state.registry.languages


def get_ws_notifier(websocket: WebSocket) -> FragmentNotifier:
    return websocket.app.state.notifier


def valid_video_id(video_id: str) -> str:
    """
    Path dependency rejecting IDs that aren't safe directory names.
    Raises HTTPException 400 for anything outside the YouTube ID alphabet.
    """
    if not is_valid_video_id(video_id):
        raise HTTPException(status_code=400, detail="Invalid video ID")
    return video_id
