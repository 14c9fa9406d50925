"""
Unit tests for the stage processors.

Tests:
- Idempotency: existing outputs are never regenerated
- Retry until success against flaky providers
- Cancellation during retry waits
- FragmentNotReady for missing or malformed input
- Empty transcripts / translations (silence handling)
- Parallel language fan-out for translation
"""

import asyncio
import os
import pytest

from app.services.errors import FragmentNotReady, StageCancelled
from app.services.fragment_store import Stage, atomic_write_bytes
from app.services.providers import ProviderBundle
from app.services.stage_processor import (
    SynthesisStage,
    TranscriptionStage,
    TranslationStage,
    cancellable_sleep,
    silent_audio,
)

from fakes import (
    VIDEO_ID,
    FakeSynthesizer,
    FakeTranscriber,
    FakeTranslator,
    seed_extracted,
    seed_json,
    seed_translation,
)


def make_bundle(transcriber=None, translator=None, synthesizer=None):
    return ProviderBundle(
        transcriber=transcriber or FakeTranscriber(),
        translator=translator or FakeTranslator(),
        synthesizer=synthesizer or FakeSynthesizer(),
    )


def transcript(text="hello world"):
    return {"text": text, "segments": [], "duration": 20.0, "language": "en"}


class TestCancellableSleep:

    @pytest.mark.asyncio
    async def test_times_out(self):
        assert await cancellable_sleep(asyncio.Event(), 0.01) is False

    @pytest.mark.asyncio
    async def test_returns_immediately_when_set(self):
        event = asyncio.Event()
        event.set()
        assert await cancellable_sleep(event, 60) is True

    @pytest.mark.asyncio
    async def test_wakes_on_cancel(self):
        event = asyncio.Event()
        asyncio.get_running_loop().call_later(0.01, event.set)
        assert await asyncio.wait_for(cancellable_sleep(event, 60), timeout=5) is True


class TestSilentAudio:

    def test_wav_placeholder(self):
        data = silent_audio("wav")
        assert data.startswith(b"RIFF")
        assert len(data) > 100

    def test_mp3_placeholder(self):
        data = silent_audio("mp3")
        assert data.startswith(b"\xff\xfb")
        assert len(data) > 100


class TestTranscriptionStage:

    @pytest.mark.asyncio
    async def test_writes_transcript(self, store):
        seed_extracted(store, VIDEO_ID, 1)
        bundle = make_bundle()
        stage = TranscriptionStage(store, bundle, VIDEO_ID, asyncio.Event(), retry_delay=0.01)

        assert await stage.process(0) is True

        document = await store.read_json(VIDEO_ID, Stage.TRANSCRIBED, 0)
        assert document["text"] == "hello world from fragment-0.wav"
        assert document["audioFile"] == "fragment-0.wav"
        assert document["language"] == "en"
        assert "timestamp" in document

    @pytest.mark.asyncio
    async def test_existing_output_not_regenerated(self, store):
        seed_extracted(store, VIDEO_ID, 1)
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript("already done"))
        path = store.fragment_path(VIDEO_ID, Stage.TRANSCRIBED, 0)
        mtime = os.path.getmtime(path)
        bundle = make_bundle()
        stage = TranscriptionStage(store, bundle, VIDEO_ID, asyncio.Event())

        assert await stage.process(0) is False
        assert bundle.transcriber.calls == []
        assert os.path.getmtime(path) == mtime

    @pytest.mark.asyncio
    async def test_retries_until_success(self, store):
        seed_extracted(store, VIDEO_ID, 1)
        bundle = make_bundle(transcriber=FakeTranscriber(fail_times=3))
        stage = TranscriptionStage(store, bundle, VIDEO_ID, asyncio.Event(), retry_delay=0.01)

        assert await stage.process(0) is True
        assert len(bundle.transcriber.calls) == 4
        assert store.exists(VIDEO_ID, Stage.TRANSCRIBED, 0)

    @pytest.mark.asyncio
    async def test_missing_input_not_ready(self, store):
        stage = TranscriptionStage(store, make_bundle(), VIDEO_ID, asyncio.Event())

        with pytest.raises(FragmentNotReady):
            await stage.process(0)

    @pytest.mark.asyncio
    async def test_cancel_during_retry_wait(self, store):
        seed_extracted(store, VIDEO_ID, 1)
        cancel_event = asyncio.Event()
        bundle = make_bundle(transcriber=FakeTranscriber(fail_times=1000))
        stage = TranscriptionStage(store, bundle, VIDEO_ID, cancel_event, retry_delay=60)

        asyncio.get_running_loop().call_later(0.05, cancel_event.set)
        with pytest.raises(StageCancelled):
            await asyncio.wait_for(stage.process(0), timeout=5)

        assert not store.exists(VIDEO_ID, Stage.TRANSCRIBED, 0)

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, store):
        seed_extracted(store, VIDEO_ID, 1)
        cancel_event = asyncio.Event()
        cancel_event.set()
        bundle = make_bundle()
        stage = TranscriptionStage(store, bundle, VIDEO_ID, cancel_event)

        with pytest.raises(StageCancelled):
            await stage.process(0)
        assert bundle.transcriber.calls == []


class TestTranslationStage:

    @pytest.mark.asyncio
    async def test_translation_document_shape(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript())
        stage = TranslationStage(store, make_bundle(), VIDEO_ID, asyncio.Event())

        assert await stage.process(0, "Hindi") is True

        document = await store.read_json(VIDEO_ID, Stage.TRANSLATED, 0, "Hindi")
        assert document["original"] == {"text": "hello world", "languageCode": "en"}
        assert document["translation"] == {"text": "[hi] hello world", "languageCode": "hi"}
        assert document["metadata"]["sourceFile"] == "fragment-0.json"
        assert document["metadata"]["metrics"]["totalTokens"] == 12

    @pytest.mark.asyncio
    async def test_empty_transcript_skips_provider(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript("   "))
        bundle = make_bundle()
        stage = TranslationStage(store, bundle, VIDEO_ID, asyncio.Event())

        assert await stage.process(0, "Hindi") is True
        assert bundle.translator.calls == []

        document = await store.read_json(VIDEO_ID, Stage.TRANSLATED, 0, "Hindi")
        assert document["translation"]["text"] == ""

    @pytest.mark.asyncio
    async def test_malformed_transcript_not_ready(self, store):
        atomic_write_bytes(store.fragment_path(VIDEO_ID, Stage.TRANSCRIBED, 0), b"{broken")
        stage = TranslationStage(store, make_bundle(), VIDEO_ID, asyncio.Event())

        with pytest.raises(FragmentNotReady):
            await stage.process(0, "Hindi")

    @pytest.mark.asyncio
    async def test_transcript_without_text_not_ready(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, {"segments": []})
        stage = TranslationStage(store, make_bundle(), VIDEO_ID, asyncio.Event())

        with pytest.raises(FragmentNotReady):
            await stage.process(0, "Hindi")

    @pytest.mark.asyncio
    async def test_process_all_languages(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript())
        bundle = make_bundle()
        stage = TranslationStage(store, bundle, VIDEO_ID, asyncio.Event())

        produced = await stage.process_all(0, ["Hindi", "Sanskrit"])

        assert sorted(produced) == ["Hindi", "Sanskrit"]
        assert stage.all_done(0, ["Hindi", "Sanskrit"])
        assert sorted(name for name, _ in bundle.translator.calls) == ["Hindi", "Sanskrit"]

    @pytest.mark.asyncio
    async def test_process_all_only_missing_languages(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript())
        seed_translation(store, VIDEO_ID, 0, "Hindi")
        bundle = make_bundle()
        stage = TranslationStage(store, bundle, VIDEO_ID, asyncio.Event())

        produced = await stage.process_all(0, ["Hindi", "Sanskrit"])

        assert produced == ["Sanskrit"]
        assert [name for name, _ in bundle.translator.calls] == ["Sanskrit"]

    @pytest.mark.asyncio
    async def test_process_all_retries_flaky_provider(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSCRIBED, 0, transcript())
        stage = TranslationStage(
            store, make_bundle(translator=FakeTranslator(fail_times=2)), VIDEO_ID, asyncio.Event(), retry_delay=0.01
        )

        await stage.process_all(0, ["Hindi", "Sanskrit"])

        assert stage.all_done(0, ["Hindi", "Sanskrit"])


class TestSynthesisStage:

    @pytest.mark.asyncio
    async def test_synthesizes_translation(self, store):
        seed_translation(store, VIDEO_ID, 0, "Hindi", text="namaste")
        bundle = make_bundle()
        stage = SynthesisStage(store, bundle, VIDEO_ID, asyncio.Event())

        assert await stage.process(0, "Hindi") is True
        assert bundle.synthesizer.calls == [("hi", "namaste")]

        audio = await store.read(VIDEO_ID, Stage.SYNTHESIZED, 0, "Hindi")
        assert audio.startswith(b"ID3")

    @pytest.mark.asyncio
    async def test_empty_translation_writes_silence(self, store):
        seed_translation(store, VIDEO_ID, 0, "Hindi", text="")
        bundle = make_bundle()
        stage = SynthesisStage(store, bundle, VIDEO_ID, asyncio.Event())

        assert await stage.process(0, "Hindi") is True
        assert bundle.synthesizer.calls == []
        assert store.exists(VIDEO_ID, Stage.SYNTHESIZED, 0, "Hindi")

    @pytest.mark.asyncio
    async def test_missing_translation_text_not_ready(self, store):
        seed_json(store, VIDEO_ID, Stage.TRANSLATED, 0, {"original": {"text": "hi"}}, "Hindi")
        stage = SynthesisStage(store, make_bundle(), VIDEO_ID, asyncio.Event())

        with pytest.raises(FragmentNotReady):
            await stage.process(0, "Hindi")

    @pytest.mark.asyncio
    async def test_retry_converges(self, store):
        seed_translation(store, VIDEO_ID, 0, "Sanskrit")
        bundle = make_bundle(synthesizer=FakeSynthesizer(fail_times=2))
        stage = SynthesisStage(store, bundle, VIDEO_ID, asyncio.Event(), retry_delay=0.01)

        assert await stage.process(0, "Sanskrit") is True
        assert len(bundle.synthesizer.calls) == 3
