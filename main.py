"""
Fragment pipeline orchestrator API.

YouTube URL -> extracted audio fragments -> transcripts -> per-language
translations -> synthesized speech, served over HTTP with byte-range support
and announced over a WebSocket channel.
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.config import (
    get_settings,
    validate_required_credentials,
    ensure_directories,
    log_startup_configuration,
)
from app.routers import videos_router, pipeline_router, status_router, fragments_router
from app.services.extraction_service import AudioExtractor
from app.services.fragment_store import FragmentStore, now_iso
from app.services.notifier import FragmentNotifier
from app.services.providers import ProviderBundle, build_providers
from app.services.registry import SourceRegistry
from app.services.stall_monitor import StallMonitor
from app.utils.logging_utils import setup_logger


def create_app(
    providers: Optional[ProviderBundle] = None,
    extractor_factory: Callable[..., AudioExtractor] = AudioExtractor
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        providers: Provider bundle to use instead of the OpenAI/ElevenLabs clients
        extractor_factory: AudioExtractor replacement (tests avoid real subprocesses)
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        print("INFO: Starting application...")

        # Fail fast before any source is accepted
        validate_required_credentials(settings)
        ensure_directories(settings)
        setup_logger(getattr(logging, settings.log_level.upper(), logging.INFO))
        log_startup_configuration(settings)

        http_client = httpx.AsyncClient()
        store = FragmentStore(settings.temp_files_dir, settings.synthesis_format)
        notifier = FragmentNotifier(store, send_timeout=settings.websocket_send_timeout)
        registry = SourceRegistry(
            store,
            providers or build_providers(settings, http_client),
            settings,
            notifier=notifier,
            extractor_factory=extractor_factory,
        )
        stall_monitor = StallMonitor(
            registry,
            store,
            timeout_seconds=settings.stall_timeout_seconds,
            interval_seconds=settings.stall_check_interval,
        )

        app.state.settings = settings
        app.state.http_client = http_client
        app.state.store = store
        app.state.notifier = notifier
        app.state.registry = registry
        app.state.stall_monitor = stall_monitor

        try:
            stall_monitor.start()
        except Exception as e:
            print(f"WARNING: Failed to start stall monitor: {str(e)}")
            print("WARNING: Live sources will not be stopped automatically")

        try:
            yield
        finally:
            print("INFO: Shutting down application...")
            stall_monitor.stop()
            await registry.shutdown()
            await http_client.aclose()

    app = FastAPI(
        title="Fragment Pipeline Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.allowed_origin],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(videos_router)
    app.include_router(pipeline_router)
    app.include_router(status_router)
    app.include_router(fragments_router)

    @app.get("/health")
    async def health(request: Request):
        registry = getattr(request.app.state, "registry", None)
        return {
            "status": "ok",
            "timestamp": now_iso(),
            "activeSources": len(registry.running()) if registry is not None else 0,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="::", port=int(os.getenv("PORT", "8000")))
