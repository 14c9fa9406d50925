"""
External provider clients: speech-to-text, translation and speech synthesis.

All three share one httpx.AsyncClient owned by the application lifespan.
Every failure (transport error, timeout, non-200, malformed body) surfaces as
ProviderError so stage processors can treat it as retryable.
"""

import io
import re
import json
import time
import wave
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import httpx

from app.config import Settings, LANGUAGE_CODES
from app.services.errors import ProviderError


# Voice settings presets for ElevenLabs
VOICE_SETTINGS: Dict[str, Dict[str, Any]] = {
    "default": {
        "stability": 0.5,
        "similarity_boost": 0.75,
        "style": 0.0,
        "use_speaker_boost": True,
    },
    "high_quality": {
        "stability": 0.7,
        "similarity_boost": 0.8,
        "style": 0.0,
        "use_speaker_boost": True,
    },
    "maximum_quality": {
        "stability": 0.9,
        "similarity_boost": 0.9,
        "style": 0.0,
        "use_speaker_boost": True,
    },
}

MAX_CHUNK_LENGTH = 2500
MAX_TRANSLATION_TEXT_LENGTH = 4000
MIN_AUDIO_BYTES = 100

SENTENCE_BOUNDARY_RE = re.compile(r'(?<=[.!?।])\s+')


# =============================================================================
# Helper Functions
# =============================================================================

def _error_message(response: httpx.Response) -> str:
    """Pull the provider's error message out of a failed response."""
    try:
        error_json = response.json()
    except ValueError:
        return response.text
    error = error_json.get("error") or error_json.get("detail")
    if isinstance(error, dict):
        return error.get("message") or json.dumps(error)
    return str(error) if error else response.text


async def _request(client: httpx.AsyncClient, provider: str, method: str, url: str, **kwargs) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise ProviderError(f"{provider} request timed out: {e}") from e
    except httpx.HTTPError as e:
        raise ProviderError(f"{provider} request failed: {e}") from e

    if response.status_code != 200:
        raise ProviderError(
            f"{provider} API error (HTTP {response.status_code}): {_error_message(response)}",
            status_code=response.status_code,
        )
    return response


def split_text_chunks(text: str, max_length: int = MAX_CHUNK_LENGTH) -> List[str]:
    """
    Split text into chunks of at most ``max_length`` characters on sentence boundaries.

    Sentences longer than the limit are split hard.
    """
    text = text.strip()
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    current = ""
    for sentence in SENTENCE_BOUNDARY_RE.split(text):
        while len(sentence) > max_length:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(sentence[:max_length])
            sentence = sentence[max_length:]
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_length:
            current = candidate
        else:
            chunks.append(current)
            current = sentence
    if current:
        chunks.append(current)
    return chunks


def pcm_to_wav(pcm: bytes, sample_rate: int = 16000) -> bytes:
    """Wrap 16-bit mono PCM in a WAV container."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buffer.getvalue()


# =============================================================================
# Speech-to-text
# =============================================================================

class OpenAITranscriber:
    """OpenAI Whisper transcription over the audio/transcriptions endpoint."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.api_key = settings.openai_api_key
        self.base_url = settings.openai_base_url.rstrip("/")
        self.model = settings.transcription_model
        self.language = settings.source_language
        self.timeout = settings.audio_call_timeout

    async def transcribe(self, audio: bytes, filename: str) -> Dict[str, Any]:
        """
        Transcribe one audio fragment.

        Returns:
            Dict with text, segments (start/end/text), duration and language

        Raises:
            ProviderError: On any failure, including a response without segments
        """
        response = await _request(
            self.client,
            "OpenAI",
            "POST",
            f"{self.base_url}/audio/transcriptions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            files={"file": (filename, audio, "audio/wav")},
            data={
                "model": self.model,
                "response_format": "verbose_json",
                "temperature": "0",
                "language": self.language,
            },
            timeout=self.timeout,
        )

        try:
            result = response.json()
        except ValueError as e:
            raise ProviderError("OpenAI provider error: Invalid JSON response") from e

        if "text" not in result:
            raise ProviderError("OpenAI provider error: Response missing text")

        segments = [
            {"start": s.get("start"), "end": s.get("end"), "text": s.get("text", "").strip()}
            for s in result.get("segments") or []
        ]
        return {
            "text": (result.get("text") or "").strip(),
            "segments": segments,
            "duration": result.get("duration"),
            "language": result.get("language", self.language),
        }


# =============================================================================
# Translation
# =============================================================================

class OpenAITranslator:
    """Chat-completion translator returning ``{"<Language>": "text"}`` JSON."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.api_key = settings.openai_api_key
        self.base_url = settings.openai_base_url.rstrip("/")
        self.model = settings.translation_model
        self.timeout = settings.audio_call_timeout

    def _messages(self, text: str, language_name: str) -> List[Dict[str, str]]:
        return [
            {
                "role": "system",
                "content": (
                    f"You are a translator. Translate the text into {language_name}.\n"
                    "Rules:\n"
                    f'1. Output valid JSON only, with structure: {{"{language_name}": "text"}}\n'
                    "2. Be concise and accurate.\n"
                    "3. Preserve cultural context and idioms appropriately.\n"
                    "4. Maintain formatting and punctuation."
                ),
            },
            {"role": "user", "content": f"Translate this text to {language_name}:\n{text}"},
        ]

    async def _translate_chunk(self, text: str, language_name: str) -> Tuple[str, Dict[str, Any]]:
        response = await _request(
            self.client,
            "OpenAI",
            "POST",
            f"{self.base_url}/chat/completions",
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "model": self.model,
                "messages": self._messages(text, language_name),
                "temperature": 0.1,
                "max_tokens": 800,
            },
            timeout=self.timeout,
        )

        try:
            completion = response.json()
            content = completion["choices"][0]["message"]["content"].strip()
            parsed = json.loads(content)
            translated = parsed[language_name]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed translation output for {language_name}: {e}") from e

        if not isinstance(translated, str):
            raise ProviderError(f"Malformed translation output for {language_name}: not a string")
        return translated.strip(), completion.get("usage") or {}

    async def translate(self, text: str, language_name: str, language_code: str) -> Dict[str, Any]:
        """
        Translate ``text`` into one target language.

        Text longer than MAX_TRANSLATION_TEXT_LENGTH is split on sentence
        boundaries and translated chunk by chunk; usage is summed across chunks.

        Returns:
            Dict with text, languageCode and usage (token counts)

        Raises:
            ProviderError: On transport failure or output that isn't the expected JSON
        """
        chunks = split_text_chunks(text, MAX_TRANSLATION_TEXT_LENGTH) or [text]

        parts: List[str] = []
        usage: Dict[str, int] = {}
        for chunk in chunks:
            translated, chunk_usage = await self._translate_chunk(chunk, language_name)
            parts.append(translated)
            for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
                usage[key] = usage.get(key, 0) + int(chunk_usage.get(key) or 0)

        return {
            "text": " ".join(p for p in parts if p),
            "languageCode": language_code,
            "usage": usage,
        }


# =============================================================================
# Speech synthesis
# =============================================================================

class ElevenLabsSynthesizer:
    """ElevenLabs text-to-speech with per-language voice selection."""

    def __init__(self, client: httpx.AsyncClient, settings: Settings):
        self.client = client
        self.api_key = settings.elevenlabs_api_key
        self.base_url = settings.elevenlabs_base_url.rstrip("/")
        self.model = settings.elevenlabs_model
        self.fallback_voice_id = settings.elevenlabs_voice_id
        self.voice_settings = VOICE_SETTINGS.get(settings.voice_quality, VOICE_SETTINGS["default"])
        self.light_timeout = settings.light_call_timeout
        self.audio_timeout = settings.audio_call_timeout
        self.output_format = settings.synthesis_format
        self._voices: Optional[List[Dict[str, Any]]] = None
        self._voice_for_language: Dict[str, str] = {}
        self._voices_lock = asyncio.Lock()

    @property
    def _headers(self) -> Dict[str, str]:
        return {"xi-api-key": self.api_key or ""}

    async def list_voices(self) -> List[Dict[str, Any]]:
        """Fetch and cache the account's voices."""
        async with self._voices_lock:
            if self._voices is not None:
                return self._voices

            response = await _request(
                self.client,
                "ElevenLabs",
                "GET",
                f"{self.base_url}/voices",
                headers=self._headers,
                timeout=self.light_timeout,
            )
            try:
                raw_voices = response.json()["voices"]
            except (ValueError, KeyError) as e:
                raise ProviderError("ElevenLabs returned no voices") from e

            voices = []
            for v in raw_voices:
                labels = v.get("labels") or {}
                language = labels.get("language") or []
                if isinstance(language, str):
                    language = [language]
                voices.append({
                    "voice_id": v.get("voice_id"),
                    "name": v.get("name"),
                    "languages": [str(lang).lower() for lang in language],
                })
            if not voices and not self.fallback_voice_id:
                raise ProviderError("ElevenLabs returned no voices")
            self._voices = voices
            return voices

    async def voice_for(self, language_code: str) -> str:
        """Pick the best voice for a language: exact match, then multilingual, then fallback."""
        if language_code in self._voice_for_language:
            return self._voice_for_language[language_code]

        voices = await self.list_voices()
        names = {code: name for name, code in LANGUAGE_CODES.items()}
        wanted = {language_code.lower(), names.get(language_code, language_code).lower()}

        voice = next((v for v in voices if wanted & set(v["languages"])), None)
        if voice is None:
            voice = next((v for v in voices if "multilingual" in v["languages"]), None)

        if voice is not None:
            voice_id = voice["voice_id"]
        elif self.fallback_voice_id:
            voice_id = self.fallback_voice_id
        else:
            voice_id = voices[0]["voice_id"]

        self._voice_for_language[language_code] = voice_id
        return voice_id

    async def synthesize(self, text: str, language_code: str) -> bytes:
        """
        Synthesize audio for ``text`` in the configured format, chunked to the provider's input limit.

        Raises:
            ProviderError: On any failure or a suspiciously small result
        """
        voice_id = await self.voice_for(language_code)

        audio = bytearray()
        for chunk in split_text_chunks(text):
            response = await _request(
                self.client,
                "ElevenLabs",
                "POST",
                f"{self.base_url}/text-to-speech/{voice_id}",
                headers={**self._headers, "Accept": "audio/*"},
                params=self._output_params(),
                json={
                    "text": chunk,
                    "model_id": self.model,
                    "voice_settings": self.voice_settings,
                },
                timeout=self.audio_timeout,
            )
            audio.extend(response.content)

        if len(audio) < MIN_AUDIO_BYTES:
            raise ProviderError(f"Generated audio too small ({len(audio)} bytes)")
        if self.output_format == "wav":
            return pcm_to_wav(bytes(audio))
        return bytes(audio)

    def _output_params(self) -> Dict[str, str]:
        # Raw 16 kHz PCM is wrapped into a WAV container after download
        if self.output_format == "wav":
            return {"output_format": "pcm_16000"}
        return {"output_format": "mp3_44100_128"}


# =============================================================================
# Bundle
# =============================================================================

@dataclass
class ProviderBundle:
    """The three provider seams, grouped for injection into stage processors."""
    transcriber: Any
    translator: Any
    synthesizer: Any


def build_providers(settings: Settings, client: httpx.AsyncClient) -> ProviderBundle:
    return ProviderBundle(
        transcriber=OpenAITranscriber(client, settings),
        translator=OpenAITranslator(client, settings),
        synthesizer=ElevenLabsSynthesizer(client, settings),
    )


def usage_metrics(usage: Dict[str, Any], started_at: float) -> Dict[str, Any]:
    """Build the metrics block stored alongside a translation."""
    return {
        "promptTokens": usage.get("prompt_tokens", 0),
        "completionTokens": usage.get("completion_tokens", 0),
        "totalTokens": usage.get("total_tokens", 0),
        "durationMs": int((time.monotonic() - started_at) * 1000),
    }
