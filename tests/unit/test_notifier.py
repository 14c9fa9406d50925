"""
Unit tests for the WebSocket fan-out.

Tests:
- Events reach listeners filtered to the source
- Failing and stalled listeners are dropped without delaying the others
"""

import time
import asyncio
import pytest

from app.services.notifier import FragmentNotifier


class RecordingSocket:
    def __init__(self):
        self.sent = []

    async def send_json(self, data):
        self.sent.append(data)


class StalledSocket:
    async def send_json(self, data):
        await asyncio.sleep(3600)


class BrokenSocket:
    async def send_json(self, data):
        raise RuntimeError("connection closed")


EVENT = {"type": "newFragment", "videoId": "dQw4w9WgXcQ", "language": "Hindi", "fragment": "fragment-0.mp3"}


@pytest.mark.asyncio
async def test_broadcast_respects_source_filter(store):
    notifier = FragmentNotifier(store)
    everything, matching, other = RecordingSocket(), RecordingSocket(), RecordingSocket()
    await notifier.connect(everything)
    await notifier.connect(matching, "dQw4w9WgXcQ")
    await notifier.connect(other, "otherVideo1")

    delivered = await notifier.broadcast(EVENT, video_id="dQw4w9WgXcQ")

    assert delivered == 2
    assert everything.sent == [EVENT]
    assert matching.sent == [EVENT]
    assert other.sent == []


@pytest.mark.asyncio
async def test_stalled_listener_dropped_after_timeout(store):
    notifier = FragmentNotifier(store, send_timeout=0.05)
    healthy = RecordingSocket()
    await notifier.connect(StalledSocket())
    await notifier.connect(BrokenSocket())
    await notifier.connect(healthy)

    started = time.monotonic()
    delivered = await notifier.broadcast(EVENT)
    elapsed = time.monotonic() - started

    assert delivered == 1
    assert healthy.sent == [EVENT]
    assert elapsed < 1.0
    assert notifier.listener_count == 1

    # Later broadcasts only reach the surviving listener
    assert await notifier.broadcast(EVENT) == 1
    assert healthy.sent == [EVENT, EVENT]
