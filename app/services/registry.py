"""
Source registry: one controller per videoId, owned by the application lifespan.

A SourceController holds the source's cancellation event and its background
tasks (extraction, transcription scanner, translation scanner, sync
coordinator). The registry's only job is to prevent duplicate starts and to
tear sources down cleanly; data flows through the fragment store alone.
"""

import time
import asyncio
import logging
import functools
from typing import Callable, Dict, List, Optional, Tuple

from app.config import Settings
from app.models.schemas import PipelineSnapshot
from app.services.extraction_service import AudioExtractor
from app.services.fragment_scanner import FragmentScanner
from app.services.fragment_store import FragmentStore, Stage, now_iso
from app.services.providers import ProviderBundle
from app.services.stage_processor import SynthesisStage, TranscriptionStage, TranslationStage
from app.services.sync_coordinator import SyncCoordinator
from app.utils.logging_utils import get_source_logger


logger = logging.getLogger("orchestrator")


class SourceController:
    """Cancellation token plus running tasks for one source."""

    def __init__(self, video_id: str, is_live: bool = False):
        self.video_id = video_id
        self.is_live = is_live
        self.cancel_event = asyncio.Event()
        self.tasks: Dict[str, asyncio.Task] = {}
        self.extractor: Optional[AudioExtractor] = None
        self.scanners: Dict[str, FragmentScanner] = {}
        self.coordinator: Optional[SyncCoordinator] = None
        self.started_at = now_iso()
        self.started_ts = time.time()
        self.logger = get_source_logger(video_id)

    @property
    def is_running(self) -> bool:
        return not self.cancel_event.is_set() and any(not t.done() for t in self.tasks.values())

    def add_task(self, name: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{self.video_id}:{name}")
        task.add_done_callback(functools.partial(self._on_task_done, name))
        self.tasks[name] = task
        return task

    def _on_task_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        self.logger.error(f"Task {task.get_name()} failed: {exc}")

        # Without extraction a normal source never reaches its final count
        if name == "extraction" and not self.is_live and not self.cancel_event.is_set():
            self.logger.warning("Extraction failed, stopping the remaining stages")
            self.cancel_event.set()
            for other in self.tasks.values():
                if not other.done():
                    other.cancel()

    def snapshot(self) -> Dict[str, object]:
        tasks: Dict[str, str] = {}
        for name, task in self.tasks.items():
            if not task.done():
                tasks[name] = "running"
            elif task.cancelled():
                tasks[name] = "cancelled"
            elif task.exception() is not None:
                tasks[name] = "failed"
            else:
                tasks[name] = "finished"
        return PipelineSnapshot(
            videoId=self.video_id,
            isLive=self.is_live,
            startedAt=self.started_at,
            tasks=tasks,
        ).model_dump()

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Wait for every task to finish (used by shutdown and tests)."""
        if self.tasks:
            await asyncio.wait_for(
                asyncio.gather(*self.tasks.values(), return_exceptions=True),
                timeout=timeout,
            )

    async def stop(self) -> None:
        """Signal cancellation, terminate extraction processes and cancel tasks."""
        self.cancel_event.set()
        if self.extractor is not None:
            await self.extractor.stop()
        for task in self.tasks.values():
            if not task.done():
                task.cancel()
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.logger.info("Source stopped")


class SourceRegistry:
    """
    Maps videoId -> SourceController and wires each source's pipeline.

    Args:
        store: Fragment store shared by every source
        providers: Transcription, translation and synthesis providers
        settings: Application settings
        notifier: Fan-out used by the sync coordinator for newFragment events
        extractor_factory: Builds the AudioExtractor (replaced in tests)
    """

    def __init__(
        self,
        store: FragmentStore,
        providers: ProviderBundle,
        settings: Settings,
        notifier=None,
        extractor_factory: Callable[..., AudioExtractor] = AudioExtractor
    ):
        self.store = store
        self.providers = providers
        self.settings = settings
        self.notifier = notifier
        self.extractor_factory = extractor_factory
        self.languages: List[str] = settings.languages
        self._controllers: Dict[str, SourceController] = {}
        self._lock = asyncio.Lock()

    def get(self, video_id: str) -> Optional[SourceController]:
        return self._controllers.get(video_id)

    def is_running(self, video_id: str) -> bool:
        controller = self._controllers.get(video_id)
        return controller is not None and controller.is_running

    def running(self) -> List[SourceController]:
        return [c for c in self._controllers.values() if c.is_running]

    def snapshot(self) -> List[Dict[str, object]]:
        return [c.snapshot() for c in self._controllers.values()]

    async def start(
        self,
        video_id: str,
        url: Optional[str] = None,
        is_live: bool = False,
        live_choice: Optional[str] = None,
        duration: Optional[float] = None
    ) -> Tuple[SourceController, bool]:
        """
        Start the pipeline for a source unless it's already running.

        When ``url`` is given the extraction stage is started as well; otherwise
        only the downstream stages run against fragments already on disk.

        Returns:
            (controller, started) where started is False for a duplicate start
        """
        async with self._lock:
            existing = self._controllers.get(video_id)
            if existing is not None and existing.is_running:
                return existing, False

            controller = self._build(video_id, url, is_live, live_choice, duration)
            self._controllers[video_id] = controller
            controller.logger.info(
                f"Pipeline started (live={is_live}, extraction={'yes' if url else 'no'}, "
                f"languages={', '.join(self.languages)})"
            )
            return controller, True

    def _build(
        self,
        video_id: str,
        url: Optional[str],
        is_live: bool,
        live_choice: Optional[str],
        duration: Optional[float]
    ) -> SourceController:
        settings = self.settings
        languages = self.languages
        controller = SourceController(video_id, is_live=is_live)
        cancel = controller.cancel_event
        self.store.ensure_source_dirs(video_id, languages)

        def expected_total() -> Optional[int]:
            return self.store.final_fragment_count(video_id)

        stage_args = (self.store, self.providers, video_id, cancel)
        transcription = TranscriptionStage(*stage_args, retry_delay=settings.stage_retry_delay)
        translation = TranslationStage(
            *stage_args,
            retry_delay=settings.stage_retry_delay,
            source_language=settings.source_language,
        )
        synthesis = SynthesisStage(*stage_args, retry_delay=settings.stage_retry_delay)

        scan_args = dict(
            cancel_event=cancel,
            expected_total=expected_total,
            poll_interval=settings.scan_poll_interval,
            debounce_seconds=settings.scan_debounce_seconds,
        )
        controller.scanners["transcription"] = FragmentScanner(
            self.store, video_id, Stage.EXTRACTED,
            handler=transcription.process,
            is_done=transcription.is_done,
            name="transcription",
            **scan_args,
        )

        async def translate_all(index: int) -> List[str]:
            return await translation.process_all(index, languages)

        controller.scanners["translation"] = FragmentScanner(
            self.store, video_id, Stage.TRANSCRIBED,
            handler=translate_all,
            is_done=lambda index: translation.all_done(index, languages),
            name="translation",
            **scan_args,
        )

        controller.coordinator = SyncCoordinator(
            self.store, synthesis, video_id, languages, cancel,
            notifier=self.notifier,
            expected_total=expected_total,
            wait_interval=settings.sync_wait_interval,
            retry_delay=settings.stage_retry_delay,
        )

        if url:
            controller.extractor = self.extractor_factory(
                self.store, video_id, url, settings, cancel,
                is_live=is_live, live_choice=live_choice, duration=duration,
            )
            controller.add_task("extraction", controller.extractor.run())

        for name, scanner in controller.scanners.items():
            controller.add_task(name, scanner.run())
        controller.add_task("sync", controller.coordinator.run())
        return controller

    async def stop(self, video_id: str) -> bool:
        """
        Cancel a running source.

        Returns:
            False if the source wasn't running
        """
        async with self._lock:
            controller = self._controllers.get(video_id)
        if controller is None or not controller.is_running:
            return False
        await controller.stop()
        return True

    async def shutdown(self) -> None:
        """Stop every source; called from the application lifespan."""
        controllers = list(self._controllers.values())
        if controllers:
            logger.info(f"Stopping {len(controllers)} source(s)")
        await asyncio.gather(*(c.stop() for c in controllers), return_exceptions=True)
        self._controllers.clear()
