"""
End-to-end pipeline test against the FastAPI app with fake providers.

Seeds extracted fragments plus a completed status.json, starts the pipeline
through the API and waits for every stage to converge:

    FinalExtracted -> ExtractedText -> FinalTranslatedText/<Lang> -> FinalTranslatedAudio/<Lang>
"""

import pytest

from app.services.fragment_store import Stage

from fakes import VIDEO_ID, seed_extracted, seed_metadata


LANGUAGES = ["Hindi", "Sanskrit"]
FRAGMENTS = 3


@pytest.mark.asyncio
async def test_pipeline_converges(app, client, app_store, fake_providers):
    seed_metadata(app_store, VIDEO_ID)
    seed_extracted(app_store, VIDEO_ID, FRAGMENTS, completed=True)

    response = await client.post(f"/api/pipeline/{VIDEO_ID}/start")
    assert response.status_code == 200
    assert response.json()["started"] is True

    await app.state.registry.get(VIDEO_ID).wait(timeout=10)

    assert app_store.list_indices(VIDEO_ID, Stage.TRANSCRIBED) == [0, 1, 2]
    for language in LANGUAGES:
        assert app_store.list_indices(VIDEO_ID, Stage.TRANSLATED, language) == [0, 1, 2]
        assert app_store.list_filenames(VIDEO_ID, Stage.SYNTHESIZED, language) == [
            "fragment-0.mp3",
            "fragment-1.mp3",
            "fragment-2.mp3",
        ]

    audio = (await client.get(f"/api/audio-status/{VIDEO_ID}")).json()
    assert audio["overallProgress"] == 100
    assert audio["languageStatus"]["Hindi"]["filesCount"] == FRAGMENTS
    assert audio["isComplete"] is True

    transcription = (await client.get(f"/api/transcription-status/{VIDEO_ID}")).json()
    assert transcription["isComplete"] is True

    # Each fragment transcribed exactly once, each language translated exactly once
    assert len(fake_providers.transcriber.calls) == FRAGMENTS
    assert len(fake_providers.translator.calls) == FRAGMENTS * len(LANGUAGES)
    assert len(fake_providers.synthesizer.calls) == FRAGMENTS * len(LANGUAGES)


@pytest.mark.asyncio
async def test_restart_does_not_repeat_work(app, client, app_store, fake_providers):
    seed_metadata(app_store, VIDEO_ID)
    seed_extracted(app_store, VIDEO_ID, FRAGMENTS, completed=True)

    await client.post(f"/api/pipeline/{VIDEO_ID}/start")
    await app.state.registry.get(VIDEO_ID).wait(timeout=10)
    calls = len(fake_providers.transcriber.calls)

    response = await client.post(f"/api/pipeline/{VIDEO_ID}/start")
    assert response.json()["started"] is True
    await app.state.registry.get(VIDEO_ID).wait(timeout=10)

    assert len(fake_providers.transcriber.calls) == calls


@pytest.mark.asyncio
async def test_flaky_translation_converges(app, client, app_store, fake_providers):
    fake_providers.translator.fail_times = 3
    seed_metadata(app_store, VIDEO_ID)
    seed_extracted(app_store, VIDEO_ID, 2, completed=True)

    await client.post(f"/api/pipeline/{VIDEO_ID}/start")
    await app.state.registry.get(VIDEO_ID).wait(timeout=10)

    for language in LANGUAGES:
        assert app_store.list_indices(VIDEO_ID, Stage.SYNTHESIZED, language) == [0, 1]
