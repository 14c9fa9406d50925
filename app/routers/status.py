"""
Status router: best-effort progress snapshots per stage.

These endpoints never fail for "still working"; a source that hasn't started
reports not_started or zero counts.
"""

from typing import List

from fastapi import APIRouter, Depends

from app.dependencies import get_languages, get_store, valid_video_id
from app.services import status_service
from app.services.fragment_store import FragmentStore


router = APIRouter(prefix="/api", tags=["Status"])


@router.get("/extraction-status/{video_id}")
async def extraction_status(
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store)
):
    return status_service.extraction_status(store, video_id).to_wire()


@router.get("/transcription-status/{video_id}")
async def transcription_status(
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store)
):
    return status_service.transcription_status(store, video_id).to_wire()


@router.get("/translation-status/{video_id}")
async def translation_status(
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store),
    languages: List[str] = Depends(get_languages)
):
    return status_service.translation_status(store, video_id, languages).to_wire()


@router.get("/audio-status/{video_id}")
async def audio_status(
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store),
    languages: List[str] = Depends(get_languages)
):
    """Per-language synthesized fragment counts and overallProgress."""
    return status_service.audio_status(store, video_id, languages).to_wire()
