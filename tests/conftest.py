"""
Pytest configuration and shared fixtures for test suite.

This module provides:
- Mock environment variables (fast poll intervals, temp store directory)
- A fragment store rooted in tmp_path
- Fake transcription / translation / synthesis providers
- Async HTTP client for the FastAPI app with its lifespan entered
"""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from app.config import get_settings
from app.services.fragment_store import FragmentStore
from app.services.providers import ProviderBundle

from fakes import VIDEO_ID, FakeExtractor, FakeSynthesizer, FakeTranscriber, FakeTranslator


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def mock_env_vars(tmp_path, monkeypatch):
    """Mock environment variables for testing."""
    env = {
        "OPENAI_API_KEY": "test-openai-key",
        "ELEVENLABS_API_KEY": "test-elevenlabs-key",
        "ALLOWED_ORIGIN": "*",
        "TEMP_FILES_DIR": str(tmp_path / "temp_files"),
        "TARGET_LANGUAGES": "Hindi,Sanskrit",
        "SCAN_POLL_INTERVAL": "0.05",
        "SCAN_DEBOUNCE_SECONDS": "0",
        "STAGE_RETRY_DELAY": "0.01",
        "SYNC_WAIT_INTERVAL": "0.05",
        "STALL_CHECK_INTERVAL": "3600",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    get_settings.cache_clear()
    yield env
    get_settings.cache_clear()


@pytest.fixture
def store(tmp_path):
    return FragmentStore(str(tmp_path / "store"))


@pytest.fixture
def fake_providers():
    return ProviderBundle(
        transcriber=FakeTranscriber(),
        translator=FakeTranslator(),
        synthesizer=FakeSynthesizer(),
    )


@pytest_asyncio.fixture
async def app(mock_env_vars, fake_providers):
    """FastAPI app with fake providers and its lifespan entered."""
    from main import create_app

    FakeExtractor.instances = []
    application = create_app(providers=fake_providers, extractor_factory=FakeExtractor)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app):
    """
    Create async test client for FastAPI app.

    Uses httpx AsyncClient with ASGITransport to test the FastAPI app
    without needing to run a server.
    """
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def app_store(app) -> FragmentStore:
    return app.state.store


@pytest.fixture
def youtube_url():
    """Sample YouTube URL for testing."""
    return f"https://www.youtube.com/watch?v={VIDEO_ID}"


# Mark all tests as asyncio
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test"
    )
