"""
Configuration module for the fragment pipeline orchestrator.

This module centralizes all environment variables, constants, and runtime configuration
using pydantic-settings for type-safe configuration management.
"""

import os
from functools import lru_cache
from typing import Dict, List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

from app.services.errors import ConfigurationError


# Language name -> ISO 639-1 code used by the translation and speech providers
LANGUAGE_CODES: Dict[str, str] = {
    "English": "en",
    "Hindi": "hi",
    "Marathi": "mr",
    "Gujarati": "gu",
    "Tamil": "ta",
    "Telugu": "te",
    "Malayalam": "ml",
    "Kannada": "kn",
    "Punjabi": "pa",
    "French": "fr",
    "Russian": "ru",
    "Spanish": "es",
    "Sanskrit": "sa",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # CORS Configuration
    allowed_origin: str = Field(
        default="*",
        validation_alias="ALLOWED_ORIGIN",
        description="Allowed CORS origin for API requests"
    )

    # Directory Configuration
    temp_files_dir: str = Field(
        default="./temp_files",
        validation_alias="TEMP_FILES_DIR",
        description="Base directory holding one fragment store subtree per videoId"
    )

    # Languages
    target_languages: str = Field(
        default="Hindi,Sanskrit,Kannada",
        validation_alias="TARGET_LANGUAGES",
        description="Comma-separated target language names"
    )

    source_language: str = Field(
        default="en",
        validation_alias="SOURCE_LANGUAGE",
        description="Spoken language code passed to the speech-to-text provider"
    )

    # OpenAI Configuration (transcription + translation)
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias="OPENAI_API_KEY",
        description="OpenAI API key for transcription and translation"
    )

    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias="OPENAI_BASE_URL",
        description="OpenAI API base URL"
    )

    transcription_model: str = Field(
        default="whisper-1",
        validation_alias="TRANSCRIPTION_MODEL",
        description="Speech-to-text model"
    )

    translation_model: str = Field(
        default="gpt-3.5-turbo",
        validation_alias="TRANSLATION_MODEL",
        description="Chat model used for translation"
    )

    # ElevenLabs Configuration (speech synthesis)
    elevenlabs_api_key: Optional[str] = Field(
        default=None,
        validation_alias="ELEVENLABS_API_KEY",
        description="ElevenLabs API key for speech synthesis"
    )

    elevenlabs_base_url: str = Field(
        default="https://api.elevenlabs.io/v1",
        validation_alias="ELEVENLABS_BASE_URL",
        description="ElevenLabs API base URL"
    )

    elevenlabs_model: str = Field(
        default="eleven_multilingual_v2",
        validation_alias="ELEVENLABS_MODEL",
        description="ElevenLabs synthesis model"
    )

    elevenlabs_voice_id: Optional[str] = Field(
        default=None,
        validation_alias="ELEVENLABS_VOICE_ID",
        description="Fallback voice when no language-specific voice is found"
    )

    voice_quality: str = Field(
        default="high_quality",
        validation_alias="VOICE_QUALITY",
        description="Voice settings preset: default, high_quality, maximum_quality"
    )

    synthesis_format: str = Field(
        default="mp3",
        validation_alias="SYNTHESIS_FORMAT",
        description="File extension for synthesized fragments"
    )

    # Extraction Configuration
    segment_time: int = Field(
        default=20,
        validation_alias="SEGMENT_TIME",
        description="Fragment duration in seconds"
    )

    ytdlp_binary: str = Field(
        default="yt-dlp",
        validation_alias="YTDLP_BINARY",
        description="yt-dlp executable used for streaming audio"
    )

    ffmpeg_binary: str = Field(
        default="ffmpeg",
        validation_alias="FFMPEG_BINARY",
        description="ffmpeg executable used for segmentation"
    )

    live_restart_delay: float = Field(
        default=5.0,
        validation_alias="LIVE_RESTART_DELAY",
        description="Seconds to wait before restarting a failed live extraction"
    )

    # Pipeline timing
    scan_poll_interval: float = Field(
        default=3.0,
        validation_alias="SCAN_POLL_INTERVAL",
        description="Seconds between fragment directory scans"
    )

    scan_debounce_seconds: float = Field(
        default=1.0,
        validation_alias="SCAN_DEBOUNCE_SECONDS",
        description="Minimum file age before a fragment is picked up"
    )

    stage_retry_delay: float = Field(
        default=2.0,
        validation_alias="STAGE_RETRY_DELAY",
        description="Fixed delay between retries of a failed stage call"
    )

    sync_wait_interval: float = Field(
        default=5.0,
        validation_alias="SYNC_WAIT_INTERVAL",
        description="Seconds the sync coordinator waits for missing translations"
    )

    # Timeouts
    light_call_timeout: float = Field(
        default=5.0,
        validation_alias="LIGHT_CALL_TIMEOUT",
        description="Timeout for lightweight provider calls (voice listing)"
    )

    audio_call_timeout: float = Field(
        default=30.0,
        validation_alias="AUDIO_CALL_TIMEOUT",
        description="Timeout for audio-bearing and translation calls"
    )

    websocket_send_timeout: float = Field(
        default=2.0,
        validation_alias="WEBSOCKET_SEND_TIMEOUT",
        description="Drop a WebSocket listener whose send takes longer than this"
    )

    # Stall detection
    stall_timeout_seconds: int = Field(
        default=300,
        validation_alias="STALL_TIMEOUT_SECONDS",
        description="Stop a live source when no new fragment arrived for this long"
    )

    stall_check_interval: int = Field(
        default=60,
        validation_alias="STALL_CHECK_INTERVAL",
        description="Seconds between stall checks"
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root log level for the orchestrator logger"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def languages(self) -> List[str]:
        return parse_languages(self.target_languages)


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure settings are loaded only once.
    """
    return Settings()


def parse_languages(raw: str) -> List[str]:
    """
    Parse a comma-separated language list, preserving order and dropping duplicates.

    Raises:
        ConfigurationError: If the list is empty or names an unsupported language
    """
    languages: List[str] = []
    for item in raw.split(","):
        name = item.strip()
        if not name:
            continue
        # Accept any casing, store canonical names
        canonical = next((k for k in LANGUAGE_CODES if k.lower() == name.lower()), None)
        if canonical is None:
            raise ConfigurationError(
                f"Unsupported language '{name}'. Supported: {', '.join(LANGUAGE_CODES)}"
            )
        if canonical not in languages:
            languages.append(canonical)

    if not languages:
        raise ConfigurationError("TARGET_LANGUAGES must name at least one language")
    return languages


def language_code(language: str) -> str:
    """Return the ISO code for a configured language name."""
    return LANGUAGE_CODES[language]


def validate_required_credentials(settings: Settings) -> None:
    """
    Fail fast when a provider credential or the language set is misconfigured.
    Called once during application startup, before any source is accepted.
    """
    missing = []
    if not settings.openai_api_key:
        missing.append("OPENAI_API_KEY")
    if not settings.elevenlabs_api_key:
        missing.append("ELEVENLABS_API_KEY")
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

    # Raises ConfigurationError on unknown names
    settings.languages


def ensure_directories(settings: Settings) -> None:
    """Create the base temp directory on startup."""
    os.makedirs(settings.temp_files_dir, exist_ok=True)


def log_startup_configuration(settings: Settings) -> None:
    """Log effective pipeline configuration on startup."""
    print(f"INFO: Fragment store base directory: {os.path.abspath(settings.temp_files_dir)}")
    print(f"INFO: Target languages: {', '.join(settings.languages)}")
    print(f"INFO: Segment time: {settings.segment_time}s, synthesis format: {settings.synthesis_format}")
    print(f"INFO: Scan interval {settings.scan_poll_interval}s, retry delay {settings.stage_retry_delay}s, "
          f"sync wait {settings.sync_wait_interval}s")
    print(f"INFO: Provider timeouts: light={settings.light_call_timeout}s audio={settings.audio_call_timeout}s")
