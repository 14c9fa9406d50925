"""
Sync coordinator: synthesizes speech index by index, all languages in lockstep.

For each index starting at 0 the coordinator waits until every configured
language has a usable translation, synthesizes the languages one after another,
re-checks every output and only then moves on. A client streaming fragment 0,
1, 2... for any language therefore never gets ahead of what is actually ready.
"""

import asyncio
from typing import Callable, List, Optional

from app.services.errors import FragmentNotReady, StageCancelled
from app.services.fragment_store import FragmentStore, Stage
from app.services.stage_processor import SynthesisStage, cancellable_sleep
from app.utils.logging_utils import get_source_logger


class SyncCoordinator:
    """Index-by-index blocking-wait coordinator for one source."""

    def __init__(
        self,
        store: FragmentStore,
        synthesis: SynthesisStage,
        video_id: str,
        languages: List[str],
        cancel_event: asyncio.Event,
        notifier=None,
        expected_total: Optional[Callable[[], Optional[int]]] = None,
        wait_interval: float = 5.0,
        retry_delay: float = 2.0
    ):
        self.store = store
        self.synthesis = synthesis
        self.video_id = video_id
        self.languages = list(languages)
        self.cancel_event = cancel_event
        self.notifier = notifier
        self.expected_total = expected_total
        self.wait_interval = wait_interval
        self.retry_delay = retry_delay
        self.current_index = 0
        self.logger = get_source_logger(video_id, "sync")

    async def translations_ready(self, index: int) -> bool:
        """True when every language has a parseable translation for ``index``."""
        for language in self.languages:
            try:
                await self.synthesis.load_input(index, language)
            except FragmentNotReady:
                return False
        return True

    def missing_outputs(self, index: int) -> List[str]:
        return [
            language for language in self.languages
            if not self.store.exists(self.video_id, Stage.SYNTHESIZED, index, language)
        ]

    async def synthesize_index(self, index: int) -> List[str]:
        """
        Synthesize every language for ``index`` in sequence until all outputs verify.

        Returns:
            Languages whose output was newly written
        """
        produced: List[str] = []
        while True:
            for language in self.languages:
                if self.cancel_event.is_set():
                    raise StageCancelled(f"sync cancelled for {self.video_id}")
                try:
                    if await self.synthesis.process(index, language):
                        produced.append(language)
                except FragmentNotReady as e:
                    self.logger.warning(f"fragment-{index} [{language}] input not ready: {e}")

            missing = self.missing_outputs(index)
            if not missing:
                return produced

            self.logger.warning(
                f"fragment-{index} verification failed for {', '.join(missing)}, retrying"
            )
            if await cancellable_sleep(self.cancel_event, self.retry_delay):
                raise StageCancelled(f"sync cancelled for {self.video_id}")

    async def advance_once(self) -> bool:
        """
        Try to complete ``current_index``.

        Returns:
            True if the index completed and the coordinator advanced
        """
        index = self.current_index
        if not await self.translations_ready(index):
            return False

        produced = await self.synthesize_index(index)
        self.current_index = index + 1

        if produced:
            self.logger.info(f"fragment-{index} synthesized for {', '.join(produced)}")
        if self.notifier is not None:
            for language in produced:
                await self.notifier.fragment_ready(self.video_id, language, index)
        return True

    def is_finished(self) -> bool:
        if self.expected_total is None:
            return False
        total = self.expected_total()
        return total is not None and self.current_index >= total

    async def run(self) -> None:
        """Advance until cancelled or until the upstream final count is reached."""
        self.logger.info(f"Sync coordinator started for {', '.join(self.languages)}")
        try:
            while not self.cancel_event.is_set():
                if self.is_finished():
                    self.logger.info(f"All {self.current_index} fragments synchronized")
                    return
                try:
                    advanced = await self.advance_once()
                except StageCancelled:
                    break
                if advanced:
                    continue
                if await cancellable_sleep(self.cancel_event, self.wait_interval):
                    break
        finally:
            self.logger.info(f"Sync coordinator stopped at fragment-{self.current_index}")
