"""
Extraction service: video metadata lookup and the yt-dlp | ffmpeg audio pipeline.

Extraction Flow:
1. yt-dlp streams the best audio track to stdout
2. ffmpeg reads it from a pipe and cuts SEGMENT_TIME second, 16 kHz mono PCM
   WAV segments into ExtractedAudio/PreProcessing
3. Each time ffmpeg opens segment N, segment N-1 is finished and promoted to
   ExtractedAudio/FinalExtracted through an atomic store write
4. ExtractedAudio/status.json tracks starting -> processing -> completed | error

Live sources pass --live-from-start when the user chose "beginning" and are
restarted after LIVE_RESTART_DELAY when the pipeline exits unexpectedly,
continuing the fragment numbering where the previous run stopped.
"""

import os
import re
import asyncio
from typing import Any, AsyncIterator, Dict, List, Optional

import yt_dlp

from app.config import Settings
from app.services.errors import ExtractionError, MalformedFragmentError, VideoNotFoundError
from app.services.fragment_store import FragmentStore, Stage, now_iso
from app.services.stage_processor import cancellable_sleep
from app.utils.logging_utils import get_source_logger


OPENING_RE = re.compile(r"Opening '(?P<path>[^']*fragment-(?P<index>\d+)\.wav)' for writing")

PROCESSING_PROGRESS_CAP = 95


# =============================================================================
# Metadata
# =============================================================================

def _extract_info(url: str) -> Dict[str, Any]:
    """Run yt-dlp metadata extraction (blocking)."""
    ydl_opts = {
        'quiet': True,
        'no_warnings': True,
        'skip_download': True,
        'noplaylist': True,
    }
    with yt_dlp.YoutubeDL(ydl_opts) as ydl:
        return ydl.extract_info(url, download=False)


async def fetch_video_metadata(url: str) -> Dict[str, Any]:
    """
    Fetch video metadata without downloading.

    Returns:
        Dict with id, title, description, channelTitle, channelId, thumbnail,
        duration, isLiveContent and savedAt

    Raises:
        VideoNotFoundError: If yt-dlp can't resolve the URL
    """
    try:
        info = await asyncio.to_thread(_extract_info, url)
    except yt_dlp.utils.DownloadError as e:
        raise VideoNotFoundError(f"Video not found: {e}") from e

    if not info or not info.get("id"):
        raise VideoNotFoundError(f"Video not found: {url}")

    live_status = info.get("live_status")
    return {
        "id": info["id"],
        "title": info.get("title") or "Unknown",
        "description": info.get("description") or "",
        "channelTitle": info.get("channel") or info.get("uploader") or "",
        "channelId": info.get("channel_id") or info.get("uploader_id") or "",
        "thumbnail": info.get("thumbnail"),
        "duration": info.get("duration"),
        "isLiveContent": bool(info.get("is_live")) or live_status in ("is_live", "is_upcoming"),
        "savedAt": now_iso(),
    }


# =============================================================================
# Audio extraction
# =============================================================================

async def _iter_stderr_lines(stream: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield stderr lines split on both \\n and \\r (ffmpeg rewrites its progress line)."""
    buffer = ""
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        buffer += chunk.decode("utf-8", errors="replace")
        parts = re.split(r"[\r\n]", buffer)
        buffer = parts.pop()
        for line in parts:
            if line:
                yield line
    if buffer:
        yield buffer


class AudioExtractor:
    """Runs and supervises the yt-dlp | ffmpeg segmentation pipeline for one source."""

    def __init__(
        self,
        store: FragmentStore,
        video_id: str,
        url: str,
        settings: Settings,
        cancel_event: asyncio.Event,
        is_live: bool = False,
        live_choice: Optional[str] = None,
        duration: Optional[float] = None
    ):
        self.store = store
        self.video_id = video_id
        self.url = url
        self.settings = settings
        self.cancel_event = cancel_event
        self.is_live = is_live
        self.live_choice = live_choice
        self.duration = duration
        self.logger = get_source_logger(video_id, "extraction")
        self._processes: List[asyncio.subprocess.Process] = []
        self._promoted = 0
        self._highest_index = -1
        self._status: Dict[str, Any] = {}
        self._last_error = ""

    # =========================================================================
    # Status file
    # =========================================================================

    def _write_status(self, **fields) -> None:
        self._status.update(fields)
        try:
            self.store.write_extraction_status(self.video_id, self._status)
        except OSError as e:
            self.logger.warning(f"Could not write extraction status: {e}")

    def _progress(self) -> float:
        if self.duration:
            estimate = self._promoted * self.settings.segment_time / self.duration * 100
        else:
            estimate = self._promoted / 20 * 100
        return round(min(PROCESSING_PROGRESS_CAP, estimate), 2)

    # =========================================================================
    # Process handling
    # =========================================================================

    def ytdlp_command(self) -> List[str]:
        args = [
            self.settings.ytdlp_binary,
            '--format', 'bestaudio',
            '--no-warnings',
            '--no-playlist',
            '--quiet',
            '-o', '-',
        ]
        if self.is_live and self.live_choice == "beginning":
            args.append('--live-from-start')
        args.append(self.url)
        return args

    def ffmpeg_command(self, start_number: int) -> List[str]:
        template = os.path.join(self.store.stage_dir(self.video_id, Stage.PREPROCESSING), 'fragment-%d.wav')
        return [
            self.settings.ffmpeg_binary,
            '-hide_banner',
            '-loglevel', 'info',
            '-i', 'pipe:0',
            '-f', 'segment',
            '-segment_time', str(self.settings.segment_time),
            '-segment_start_number', str(start_number),
            '-reset_timestamps', '1',
            '-acodec', 'pcm_s16le',
            '-ar', '16000',
            '-ac', '1',
            '-map', '0:a',
            template,
        ]

    async def _promote(self, index: int) -> None:
        if await self.store.promote(self.video_id, index):
            self._promoted += 1
            self._highest_index = max(self._highest_index, index)
            self.logger.info(f"Promoted fragment-{index}.wav to FinalExtracted")
            self._write_status(
                status="processing",
                progress=self._progress(),
                currentFragment=index + 1,
                lastUpdate=now_iso(),
            )
        else:
            self.logger.warning(f"Skipped empty fragment-{index}.wav")

    async def _drain(self, stream: asyncio.StreamReader, tail: List[str]) -> None:
        async for line in _iter_stderr_lines(stream):
            tail.append(line)
            del tail[:-20]

    async def _run_once(self, start_number: int) -> int:
        """
        Run one yt-dlp | ffmpeg pipeline until ffmpeg exits.

        Returns:
            Non-zero when either process failed
        """
        read_fd, write_fd = os.pipe()
        try:
            ytdlp = await asyncio.create_subprocess_exec(
                *self.ytdlp_command(),
                stdout=write_fd,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                ffmpeg = await asyncio.create_subprocess_exec(
                    *self.ffmpeg_command(start_number),
                    stdin=read_fd,
                    stdout=asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                )
            except BaseException:
                ytdlp.kill()
                await ytdlp.wait()
                raise
        finally:
            # The children hold their own copies of the pipe ends
            os.close(write_fd)
            os.close(read_fd)

        self._processes = [ytdlp, ffmpeg]
        if self._promoted == 0:
            self._write_status(status="downloading", lastUpdate=now_iso())
        ytdlp_tail: List[str] = []
        ffmpeg_tail: List[str] = []
        drain = asyncio.create_task(self._drain(ytdlp.stderr, ytdlp_tail))

        current: Optional[int] = None
        try:
            async for line in _iter_stderr_lines(ffmpeg.stderr):
                match = OPENING_RE.search(line)
                if match:
                    index = int(match.group("index"))
                    if current is not None:
                        await self._promote(current)
                    current = index
                else:
                    ffmpeg_tail.append(line)
                    del ffmpeg_tail[:-20]

            ffmpeg_code = await ffmpeg.wait()
            ytdlp_code = await ytdlp.wait()
            await drain
        finally:
            # Cancellation or a stderr read error can land here with children alive
            self._terminate_running()
            self._processes = []
            if not drain.done():
                drain.cancel()

        # ffmpeg finished the last segment when it exited
        if current is not None:
            await self._promote(current)

        if ytdlp_code != 0 or ffmpeg_code != 0:
            detail = "\n".join(ytdlp_tail[-5:] or ffmpeg_tail[-5:])
            self._last_error = f"yt-dlp exited {ytdlp_code}, ffmpeg exited {ffmpeg_code}: {detail}"
            return ytdlp_code or ffmpeg_code
        return 0

    def _terminate_running(self) -> None:
        for process in list(self._processes):
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

    async def stop(self) -> None:
        """Terminate both processes if they are still running."""
        self._terminate_running()

    # =========================================================================
    # Main loop
    # =========================================================================

    async def run(self) -> None:
        """
        Extract audio until the source ends, fails or is cancelled.

        Raises:
            ExtractionError: If a non-live extraction fails
        """
        try:
            existing = self.store.read_extraction_status(self.video_id)
        except MalformedFragmentError:
            existing = None
        if existing and existing.get("status") == "completed" and not self.is_live:
            self.logger.info("Extraction already completed, skipping")
            return

        self.store.ensure_source_dirs(self.video_id)
        self._status = {"status": "starting", "progress": 0, "startTime": now_iso()}
        self._write_status()

        start_number = 0
        if self.is_live:
            extracted = self.store.list_indices(self.video_id, Stage.EXTRACTED)
            start_number = extracted[-1] + 1 if extracted else 0
            self._highest_index = start_number - 1

        while True:
            self.logger.info(f"Starting extraction at fragment-{start_number} (live={self.is_live})")
            try:
                code = await self._run_once(start_number)
            except OSError as e:
                code = -1
                self._last_error = f"Failed to start extraction process: {e}"
            except asyncio.CancelledError:
                await self.stop()
                raise

            if self.cancel_event.is_set():
                self.logger.info("Extraction stopped")
                return

            if code == 0:
                self._write_status(
                    status="completed",
                    progress=100,
                    completionTime=now_iso(),
                    totalFragments=self._highest_index + 1,
                )
                self.logger.info(f"Extraction completed with {self._highest_index + 1} fragments")
                return

            if not self.is_live:
                self._write_status(status="error", error=self._last_error, errorTime=now_iso())
                self.logger.error(self._last_error)
                raise ExtractionError(self._last_error)

            self.logger.warning(
                f"Live extraction exited unexpectedly ({self._last_error}), "
                f"restarting in {self.settings.live_restart_delay}s"
            )
            if await cancellable_sleep(self.cancel_event, self.settings.live_restart_delay):
                return
            start_number = self._highest_index + 1
