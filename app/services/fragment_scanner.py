"""
Fragment scanner: polls a stage's input directory and dispatches new indices.

The scanner keeps an in-memory state per index:

    UNSEEN -> DISCOVERED -> PROCESSING -> DONE

A file is only discovered once it is non-empty and its mtime is at least
SCAN_DEBOUNCE_SECONDS old. Dispatch is strictly in index order: only the lowest
index that is not DONE is handed to the stage, so a gap (fragment 3 missing
while 4 is present) holds everything after it until the gap fills.

State is rebuilt at startup from existing outputs, which makes restarts cheap:
already-processed fragments go straight to DONE without a provider call.
"""

import time
import asyncio
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from app.services.errors import FragmentNotReady, StageCancelled
from app.services.fragment_store import FragmentStore, Stage
from app.services.stage_processor import cancellable_sleep
from app.utils.logging_utils import get_source_logger


class FragmentState(str, Enum):
    UNSEEN = "unseen"
    DISCOVERED = "discovered"
    PROCESSING = "processing"
    DONE = "done"


class FragmentScanner:
    """
    Drive one stage for one source by polling its input directory.

    Args:
        store: Fragment store
        video_id: Source identifier
        input_stage: Store location whose fragments are this stage's input
        handler: Coroutine function processing one index
        is_done: Whether the output for an index is already complete
        cancel_event: Source cancellation token
        expected_total: Returns the upstream final fragment count, or None while open-ended
        poll_interval: Seconds between scans
        debounce_seconds: Minimum file age before a fragment is discovered
        name: Stage name used in log lines
    """

    def __init__(
        self,
        store: FragmentStore,
        video_id: str,
        input_stage: Stage,
        handler: Callable[[int], Awaitable[object]],
        is_done: Callable[[int], bool],
        cancel_event: asyncio.Event,
        expected_total: Optional[Callable[[], Optional[int]]] = None,
        poll_interval: float = 3.0,
        debounce_seconds: float = 1.0,
        name: str = "scanner",
        clock: Callable[[], float] = time.time
    ):
        self.store = store
        self.video_id = video_id
        self.input_stage = input_stage
        self.handler = handler
        self.is_done = is_done
        self.cancel_event = cancel_event
        self.expected_total = expected_total
        self.poll_interval = poll_interval
        self.debounce_seconds = debounce_seconds
        self.name = name
        self.clock = clock
        self.states: Dict[int, FragmentState] = {}
        self.next_index = 0
        self.logger = get_source_logger(video_id, name)

    def state(self, index: int) -> FragmentState:
        return self.states.get(index, FragmentState.UNSEEN)

    def _advance_frontier(self) -> None:
        while self.state(self.next_index) is FragmentState.DONE:
            self.next_index += 1

    def recover(self) -> int:
        """
        Mark every input whose output already exists as DONE.

        Returns:
            Number of fragments recovered
        """
        recovered = 0
        for index in self.store.list_indices(self.video_id, self.input_stage):
            if self.state(index) is not FragmentState.DONE and self.is_done(index):
                self.states[index] = FragmentState.DONE
                recovered += 1
        self._advance_frontier()
        if recovered:
            self.logger.info(f"Recovered {recovered} completed fragments, resuming at {self.next_index}")
        return recovered

    def discover(self) -> int:
        """Move settled, non-empty input files from UNSEEN to DISCOVERED (or DONE)."""
        now = self.clock()
        discovered = 0
        for index, entry in self.store.list_entries(self.video_id, self.input_stage).items():
            if self.state(index) is not FragmentState.UNSEEN:
                continue
            if self.debounce_seconds > 0 and now - entry.mtime < self.debounce_seconds:
                continue
            if self.is_done(index):
                self.states[index] = FragmentState.DONE
            else:
                self.states[index] = FragmentState.DISCOVERED
                discovered += 1
        self._advance_frontier()
        return discovered

    async def scan_once(self) -> int:
        """
        Discover new inputs and process the in-order run of DISCOVERED indices.

        Returns:
            Number of indices that reached DONE during this pass
        """
        self.discover()

        completed = 0
        while self.state(self.next_index) is FragmentState.DISCOVERED:
            index = self.next_index
            self.states[index] = FragmentState.PROCESSING
            try:
                await self.handler(index)
            except FragmentNotReady as e:
                self.logger.warning(f"fragment-{index} not ready: {e}")
                self.states[index] = FragmentState.DISCOVERED
                break
            except BaseException:
                self.states[index] = FragmentState.DISCOVERED
                raise

            if not self.is_done(index):
                self.logger.warning(f"fragment-{index} output missing after processing, will retry")
                self.states[index] = FragmentState.DISCOVERED
                break

            self.states[index] = FragmentState.DONE
            self._advance_frontier()
            completed += 1
        return completed

    def is_finished(self) -> bool:
        if self.expected_total is None:
            return False
        total = self.expected_total()
        return total is not None and self.next_index >= total

    async def run(self) -> None:
        """Poll until the upstream count is reached or the source is cancelled."""
        self.recover()
        self.logger.info(f"Scanner started for {self.input_stage.subdir}")
        try:
            while not self.cancel_event.is_set():
                try:
                    await self.scan_once()
                except StageCancelled:
                    break
                except Exception as e:
                    self.logger.exception(f"Scan pass failed: {e}")

                if self.is_finished():
                    self.logger.info(f"All {self.next_index} fragments processed")
                    return

                if await cancellable_sleep(self.cancel_event, self.poll_interval):
                    break
        finally:
            self.logger.info(f"Scanner stopped at fragment-{self.next_index}")
