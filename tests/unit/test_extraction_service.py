"""
Unit tests for the extraction service.

Tests:
- yt-dlp / ffmpeg command lines (live start point, segment numbering)
- stderr line splitting on carriage returns
- Full pipeline runs against stand-in shell scripts for yt-dlp and ffmpeg
- Metadata lookup error mapping
"""

import asyncio
import os
import stat
import pytest
from unittest.mock import patch

import yt_dlp

from app.config import Settings
from app.services.errors import ExtractionError, VideoNotFoundError
from app.services.extraction_service import (
    AudioExtractor,
    _iter_stderr_lines,
    fetch_video_metadata,
)
from app.services.fragment_store import Stage

from fakes import VIDEO_ID, seed_extracted


URL = f"https://www.youtube.com/watch?v={VIDEO_ID}"

FAKE_FFMPEG = """#!/bin/sh
for last; do :; done
dir=$(dirname "$last")
cat > /dev/null
printf 'RIFFfragment0' > "$dir/fragment-0.wav"
echo "[segment @ 0x55] Opening '$dir/fragment-0.wav' for writing" >&2
echo "size=     256kB time=00:00:08.00 bitrate= 256.0kbits/s speed=16x\r" >&2
printf 'RIFFfragment1' > "$dir/fragment-1.wav"
echo "[segment @ 0x55] Opening '$dir/fragment-1.wav' for writing" >&2
"""

FAKE_YTDLP_OK = """#!/bin/sh
printf 'audio-bytes'
"""

FAKE_YTDLP_FAIL = """#!/bin/sh
echo "ERROR: [youtube] Video unavailable" >&2
exit 1
"""


def write_script(directory, name, body):
    path = os.path.join(str(directory), name)
    with open(path, "w") as f:
        f.write(body)
    os.chmod(path, os.stat(path).st_mode | stat.S_IEXEC)
    return path


@pytest.fixture
def settings(mock_env_vars):
    return Settings(_env_file=None)


def make_extractor(store, settings, **kwargs):
    return AudioExtractor(store, VIDEO_ID, URL, settings, asyncio.Event(), **kwargs)


class TestCommands:

    def test_ytdlp_command_vod(self, store, settings):
        command = make_extractor(store, settings).ytdlp_command()
        assert command[0] == "yt-dlp"
        assert command[-1] == URL
        assert "--live-from-start" not in command
        assert command[command.index("-o") + 1] == "-"

    def test_ytdlp_command_live_from_beginning(self, store, settings):
        command = make_extractor(store, settings, is_live=True, live_choice="beginning").ytdlp_command()
        assert "--live-from-start" in command

    def test_ytdlp_command_live_from_now(self, store, settings):
        command = make_extractor(store, settings, is_live=True, live_choice="now").ytdlp_command()
        assert "--live-from-start" not in command

    def test_ffmpeg_command(self, store, settings):
        command = make_extractor(store, settings).ffmpeg_command(7)
        assert command[command.index("-segment_time") + 1] == "20"
        assert command[command.index("-segment_start_number") + 1] == "7"
        assert command[command.index("-ar") + 1] == "16000"
        assert command[-1].endswith(os.path.join("ExtractedAudio", "PreProcessing", "fragment-%d.wav"))


class TestStderrLines:

    @pytest.mark.asyncio
    async def test_splits_carriage_returns(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"first\rsecond\nthi")
        reader.feed_data(b"rd\r\nlast")
        reader.feed_eof()

        lines = [line async for line in _iter_stderr_lines(reader)]
        assert lines == ["first", "second", "third", "last"]


class TestRun:

    @pytest.mark.asyncio
    async def test_completed_run(self, store, tmp_path, mock_env_vars, monkeypatch):
        monkeypatch.setenv("YTDLP_BINARY", write_script(tmp_path, "yt-dlp", FAKE_YTDLP_OK))
        monkeypatch.setenv("FFMPEG_BINARY", write_script(tmp_path, "ffmpeg", FAKE_FFMPEG))
        extractor = make_extractor(store, Settings(_env_file=None), duration=40)

        await asyncio.wait_for(extractor.run(), timeout=10)

        assert store.list_indices(VIDEO_ID, Stage.EXTRACTED) == [0, 1]
        assert store.list_indices(VIDEO_ID, Stage.PREPROCESSING) == []
        status = store.read_extraction_status(VIDEO_ID)
        assert status["status"] == "completed"
        assert status["progress"] == 100
        assert status["totalFragments"] == 2
        assert "startTime" in status

    @pytest.mark.asyncio
    async def test_failed_run_records_error(self, store, tmp_path, mock_env_vars, monkeypatch):
        monkeypatch.setenv("YTDLP_BINARY", write_script(tmp_path, "yt-dlp", FAKE_YTDLP_FAIL))
        monkeypatch.setenv("FFMPEG_BINARY", write_script(tmp_path, "ffmpeg", "#!/bin/sh\ncat > /dev/null\n"))
        extractor = make_extractor(store, Settings(_env_file=None))

        with pytest.raises(ExtractionError):
            await asyncio.wait_for(extractor.run(), timeout=10)

        status = store.read_extraction_status(VIDEO_ID)
        assert status["status"] == "error"
        assert "Video unavailable" in status["error"]
        assert "errorTime" in status

    @pytest.mark.asyncio
    async def test_missing_binary(self, store, tmp_path, mock_env_vars, monkeypatch):
        monkeypatch.setenv("YTDLP_BINARY", str(tmp_path / "does-not-exist"))
        extractor = make_extractor(store, Settings(_env_file=None))

        with pytest.raises(ExtractionError):
            await asyncio.wait_for(extractor.run(), timeout=10)

        assert store.read_extraction_status(VIDEO_ID)["status"] == "error"

    @pytest.mark.asyncio
    async def test_completed_vod_not_rerun(self, store, settings):
        seed_extracted(store, VIDEO_ID, 3, completed=True)
        extractor = make_extractor(store, settings)

        with patch.object(extractor, "_run_once") as run_once:
            await extractor.run()

        run_once.assert_not_called()
        assert store.final_fragment_count(VIDEO_ID) == 3

    @pytest.mark.asyncio
    async def test_cancelled_run_terminates_processes(self, store, tmp_path, mock_env_vars, monkeypatch):
        monkeypatch.setenv("YTDLP_BINARY", write_script(tmp_path, "yt-dlp", "#!/bin/sh\nexec sleep 30\n"))
        monkeypatch.setenv("FFMPEG_BINARY", write_script(tmp_path, "ffmpeg", "#!/bin/sh\nexec sleep 30\n"))
        extractor = make_extractor(store, Settings(_env_file=None))

        task = asyncio.create_task(extractor.run())
        for _ in range(100):
            if len(extractor._processes) == 2:
                break
            await asyncio.sleep(0.05)
        processes = list(extractor._processes)
        assert len(processes) == 2
        assert store.read_extraction_status(VIDEO_ID)["status"] == "downloading"

        # Cancel the task directly, without calling stop() first
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        for process in processes:
            await asyncio.wait_for(process.wait(), timeout=5)
            assert process.returncode is not None
        assert extractor._processes == []


class TestMetadata:

    @pytest.mark.asyncio
    async def test_metadata_mapping(self):
        info = {
            "id": VIDEO_ID,
            "title": "Test Video",
            "description": "desc",
            "channel": "Channel",
            "channel_id": "UC1",
            "thumbnail": "https://i.ytimg.com/x.jpg",
            "duration": 120,
            "live_status": "is_live",
        }
        with patch("app.services.extraction_service._extract_info", return_value=info):
            metadata = await fetch_video_metadata(URL)

        assert metadata["id"] == VIDEO_ID
        assert metadata["channelTitle"] == "Channel"
        assert metadata["isLiveContent"] is True
        assert "savedAt" in metadata

    @pytest.mark.asyncio
    async def test_download_error_is_not_found(self):
        error = yt_dlp.utils.DownloadError("ERROR: Video unavailable")
        with patch("app.services.extraction_service._extract_info", side_effect=error):
            with pytest.raises(VideoNotFoundError):
                await fetch_video_metadata(URL)
