"""
Pipeline control router: explicit start/stop of a source's processing tasks.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.dependencies import get_registry, get_store, valid_video_id
from app.services.errors import MalformedFragmentError
from app.services.fragment_store import FragmentStore
from app.services.registry import SourceRegistry
from app.routers.videos import watch_url


router = APIRouter(prefix="/api/pipeline", tags=["Pipeline"])


@router.get("")
async def list_pipelines(request: Request, registry: SourceRegistry = Depends(get_registry)):
    """Snapshot of every known source controller plus the stall monitor."""
    monitor = getattr(request.app.state, "stall_monitor", None)
    return {
        "sources": registry.snapshot(),
        "running": len(registry.running()),
        "stallMonitor": monitor.status() if monitor is not None else None,
    }


@router.post("/{video_id}/start")
async def start_pipeline(
    video_id: str = Depends(valid_video_id),
    extract: bool = Query(False, description="Also (re)run audio extraction"),
    liveStreamChoice: Literal["beginning", "now"] = Query("now", description="Live start point when extracting"),
    store: FragmentStore = Depends(get_store),
    registry: SourceRegistry = Depends(get_registry)
):
    """
    (Re)start processing for a saved source. Idempotent: a running source is left alone.
    """
    try:
        metadata = store.read_metadata(video_id)
    except MalformedFragmentError:
        metadata = None
    if metadata is None:
        raise HTTPException(status_code=404, detail="Video not found")

    is_live = bool(metadata.get("isLiveContent"))
    controller, started = await registry.start(
        video_id,
        url=watch_url(video_id) if extract else None,
        is_live=is_live,
        live_choice=liveStreamChoice if is_live else None,
        duration=metadata.get("duration"),
    )
    return {"videoId": video_id, "started": started, "controller": controller.snapshot()}


@router.post("/{video_id}/stop")
async def stop_pipeline(
    video_id: str = Depends(valid_video_id),
    registry: SourceRegistry = Depends(get_registry)
):
    """Cancel a running source. Fragments on disk are kept and processing can resume later."""
    stopped = await registry.stop(video_id)
    return {"videoId": video_id, "stopped": stopped}
