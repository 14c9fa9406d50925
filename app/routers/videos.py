"""
Video router: URL validation, metadata persistence and saved-source listing.

POST /api/validate-youtube is the entry point of the whole pipeline: it
resolves the video, stores metadata.json and (unless checkOnly) starts
extraction plus the downstream stages for the source.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.dependencies import get_registry, get_store, valid_video_id
from app.models.schemas import ValidateYoutubeRequest, ValidateYoutubeResponse, VideoMetadata
from app.services.errors import MalformedFragmentError, VideoNotFoundError
from app.services.extraction_service import fetch_video_metadata
from app.services.fragment_store import FragmentStore
from app.services.registry import SourceRegistry
from app.utils.platform_utils import extract_video_id


logger = logging.getLogger("orchestrator")

router = APIRouter(prefix="/api", tags=["Videos"])


def watch_url(video_id: str) -> str:
    return f"https://www.youtube.com/watch?v={video_id}"


@router.post("/validate-youtube", response_model=ValidateYoutubeResponse)
async def validate_youtube(
    payload: ValidateYoutubeRequest,
    store: FragmentStore = Depends(get_store),
    registry: SourceRegistry = Depends(get_registry)
):
    """
    Validate a YouTube URL, persist its metadata and start processing.

    - 400 when the URL is missing or not a YouTube video URL
    - 404 when yt-dlp can't find the video
    - 400 when a live stream is submitted without liveStreamChoice
    - checkOnly=true returns metadata without starting anything
    """
    if not payload.url or not payload.url.strip():
        raise HTTPException(status_code=400, detail="YouTube URL is required")

    video_id = extract_video_id(payload.url)
    if not video_id:
        raise HTTPException(status_code=400, detail="Invalid YouTube URL")

    try:
        metadata = store.read_metadata(video_id)
    except MalformedFragmentError:
        metadata = None

    if metadata is None:
        try:
            metadata = await fetch_video_metadata(watch_url(video_id))
        except VideoNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except Exception as e:
            logger.exception(f"Metadata lookup failed for {video_id}")
            raise HTTPException(status_code=500, detail=f"Failed to fetch video metadata: {str(e)}")
        store.write_metadata(video_id, metadata)
        logger.info(f"Saved metadata for {video_id}: {metadata.get('title')}")

    video = VideoMetadata(**metadata)

    if payload.checkOnly:
        return ValidateYoutubeResponse(
            videoId=video_id,
            metadata=video,
            message="Video metadata retrieved",
        )

    if video.isLiveContent and not payload.liveStreamChoice:
        raise HTTPException(
            status_code=400,
            detail="liveStreamChoice ('beginning' or 'now') is required for live streams"
        )

    _, started = await registry.start(
        video_id,
        url=watch_url(video_id),
        is_live=video.isLiveContent,
        live_choice=payload.liveStreamChoice,
        duration=video.duration,
    )
    return ValidateYoutubeResponse(
        videoId=video_id,
        metadata=video,
        extractionStarted=started,
        message="Processing started" if started else "Processing already running",
    )


@router.get("/saved-videos")
async def saved_videos(store: FragmentStore = Depends(get_store)):
    """List saved sources, newest first."""
    videos = store.list_sources()
    return {"videos": videos, "count": len(videos)}


@router.get("/video/{video_id}", response_model=VideoMetadata)
async def get_video(
    video_id: str = Depends(valid_video_id),
    store: FragmentStore = Depends(get_store)
):
    """Return stored metadata for one source."""
    try:
        metadata = store.read_metadata(video_id)
    except MalformedFragmentError:
        metadata = None
    if metadata is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return metadata
