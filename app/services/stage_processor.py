"""
Stage processors: turn one upstream fragment into one downstream fragment.

Processing Flow (per index / language):
1. Skip when the output already exists (no provider call, file untouched)
2. Load and validate the upstream fragment (FragmentNotReady if unusable)
3. Call the provider and write the output atomically
4. Verify the output exists, otherwise treat the attempt as failed

On failure:
- Log a warning, wait STAGE_RETRY_DELAY and retry the same index forever
- Every attempt and every wait observes the source's cancellation event
"""

import io
import time
import wave
import asyncio
from typing import Any, Dict, Iterable, List, Optional

from app.config import language_code
from app.services.errors import FragmentNotReady, MalformedFragmentError, StageCancelled
from app.services.fragment_store import FragmentStore, Stage, encode_json, now_iso
from app.services.providers import ProviderBundle, usage_metrics
from app.utils.logging_utils import get_source_logger


# Header of an MPEG-1 Layer III frame (128 kbps, 44.1 kHz); an all-zero body decodes as silence
_MP3_FRAME_HEADER = b"\xff\xfb\x90\x64"
_MP3_FRAME_LENGTH = 417
_MP3_FRAME_SECONDS = 1152 / 44100


# =============================================================================
# Helper Functions
# =============================================================================

async def cancellable_sleep(cancel_event: asyncio.Event, delay: float) -> bool:
    """
    Sleep for ``delay`` seconds or until ``cancel_event`` is set.

    Returns:
        True if the event was set (the caller should stop), False on timeout
    """
    if cancel_event.is_set():
        return True
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


def silent_audio(fmt: str, seconds: float = 1.0) -> bytes:
    """Short silent placeholder used when a fragment has no speech."""
    if fmt == "wav":
        buffer = io.BytesIO()
        with wave.open(buffer, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(16000)
            wav.writeframes(b"\x00\x00" * int(16000 * seconds))
        return buffer.getvalue()

    frames = max(1, int(seconds / _MP3_FRAME_SECONDS))
    frame = _MP3_FRAME_HEADER + b"\x00" * (_MP3_FRAME_LENGTH - len(_MP3_FRAME_HEADER))
    return frame * frames


# =============================================================================
# Base processor
# =============================================================================

class StageProcessor:
    """
    Generic retry-forever processor bound to one source.

    Subclasses set ``name`` / ``output_stage`` and implement ``load_input`` and
    ``produce``. ``produce`` returns the exact bytes to store.
    """

    name = "stage"
    output_stage: Stage

    def __init__(
        self,
        store: FragmentStore,
        providers: ProviderBundle,
        video_id: str,
        cancel_event: asyncio.Event,
        retry_delay: float = 2.0
    ):
        self.store = store
        self.providers = providers
        self.video_id = video_id
        self.cancel_event = cancel_event
        self.retry_delay = retry_delay
        self.logger = get_source_logger(video_id, self.name)

    def is_done(self, index: int, language: Optional[str] = None) -> bool:
        return self.store.exists(self.video_id, self.output_stage, index, language)

    async def load_input(self, index: int, language: Optional[str] = None) -> Any:
        raise NotImplementedError

    async def produce(self, index: int, payload: Any, language: Optional[str] = None) -> bytes:
        raise NotImplementedError

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise StageCancelled(f"{self.name} cancelled for {self.video_id}")

    async def process(self, index: int, language: Optional[str] = None) -> bool:
        """
        Produce the output fragment for ``index`` (and ``language``).

        Returns:
            True if a new output was written, False if it already existed

        Raises:
            FragmentNotReady: Upstream input is missing or malformed
            StageCancelled: The source was cancelled
        """
        if self.is_done(index, language):
            return False

        self._check_cancelled()
        payload = await self.load_input(index, language)

        label = f"fragment-{index}" + (f" [{language}]" if language else "")
        attempt = 0
        while True:
            self._check_cancelled()
            attempt += 1
            try:
                data = await self.produce(index, payload, language)
                self._check_cancelled()
                await self.store.write(self.video_id, self.output_stage, index, data, language)
                if not self.is_done(index, language):
                    raise OSError(f"Output for {label} missing after write")
                self.logger.info(f"Completed {label} (attempt {attempt})")
                return True
            except (StageCancelled, FragmentNotReady):
                raise
            except Exception as e:
                self.logger.warning(
                    f"Attempt {attempt} for {label} failed: {e}. Retrying in {self.retry_delay}s"
                )
                if await cancellable_sleep(self.cancel_event, self.retry_delay):
                    raise StageCancelled(f"{self.name} cancelled for {self.video_id}")


# =============================================================================
# Stage instantiations
# =============================================================================

class TranscriptionStage(StageProcessor):
    """FinalExtracted wav -> ExtractedText json."""

    name = "transcription"
    output_stage = Stage.TRANSCRIBED

    async def load_input(self, index: int, language: Optional[str] = None) -> bytes:
        try:
            return await self.store.read(self.video_id, Stage.EXTRACTED, index)
        except FileNotFoundError as e:
            raise FragmentNotReady(f"Audio fragment {index} not extracted yet") from e

    async def produce(self, index: int, payload: bytes, language: Optional[str] = None) -> bytes:
        audio_file = f"fragment-{index}.wav"
        result = await self.providers.transcriber.transcribe(payload, audio_file)
        return encode_json({
            "text": result.get("text", ""),
            "segments": result.get("segments", []),
            "duration": result.get("duration"),
            "language": result.get("language"),
            "audioFile": audio_file,
            "timestamp": now_iso(),
        })


class TranslationStage(StageProcessor):
    """ExtractedText json -> FinalTranslatedText/<Language> json, languages fanned out in parallel."""

    name = "translation"
    output_stage = Stage.TRANSLATED

    def __init__(self, *args, source_language: str = "en", **kwargs):
        super().__init__(*args, **kwargs)
        self.source_language = source_language

    async def load_input(self, index: int, language: Optional[str] = None) -> Dict[str, Any]:
        try:
            transcript = await self.store.read_json(self.video_id, Stage.TRANSCRIBED, index)
        except FileNotFoundError as e:
            raise FragmentNotReady(f"Transcript {index} not available yet") from e
        except MalformedFragmentError as e:
            raise FragmentNotReady(str(e)) from e

        if not isinstance(transcript, dict) or not isinstance(transcript.get("text"), str):
            raise FragmentNotReady(f"Transcript {index} has no text field")
        return transcript

    async def produce(self, index: int, payload: Dict[str, Any], language: Optional[str] = None) -> bytes:
        code = language_code(language)
        source_text = payload["text"].strip()
        started = time.monotonic()

        if source_text:
            result = await self.providers.translator.translate(source_text, language, code)
            translated = result["text"]
            metrics = usage_metrics(result.get("usage") or {}, started)
        else:
            # Silence: nothing to translate
            translated = ""
            metrics = usage_metrics({}, started)

        return encode_json({
            "original": {
                "text": source_text,
                "languageCode": self.source_language,
            },
            "translation": {
                "text": translated,
                "languageCode": code,
            },
            "metadata": {
                "timestamp": now_iso(),
                "sourceFile": f"fragment-{index}.json",
                "metrics": metrics,
            },
        })

    async def process_all(self, index: int, languages: Iterable[str]) -> List[str]:
        """
        Translate one index into every language concurrently.

        Returns:
            Languages for which a new translation was written

        Raises:
            The first FragmentNotReady / StageCancelled raised by any language
        """
        languages = list(languages)
        results = await asyncio.gather(
            *(self.process(index, language) for language in languages),
            return_exceptions=True,
        )
        produced = []
        for language, result in zip(languages, results):
            if isinstance(result, BaseException):
                raise result
            if result:
                produced.append(language)
        return produced

    def all_done(self, index: int, languages: Iterable[str]) -> bool:
        return all(self.is_done(index, language) for language in languages)


class SynthesisStage(StageProcessor):
    """FinalTranslatedText/<Language> json -> FinalTranslatedAudio/<Language> audio."""

    name = "synthesis"
    output_stage = Stage.SYNTHESIZED

    async def load_input(self, index: int, language: Optional[str] = None) -> str:
        try:
            document = await self.store.read_json(self.video_id, Stage.TRANSLATED, index, language)
        except FileNotFoundError as e:
            raise FragmentNotReady(f"Translation {index} [{language}] not available yet") from e
        except MalformedFragmentError as e:
            raise FragmentNotReady(str(e)) from e

        try:
            text = document["translation"]["text"]
        except (KeyError, TypeError) as e:
            raise FragmentNotReady(f"Translation {index} [{language}] missing translation.text") from e
        if not isinstance(text, str):
            raise FragmentNotReady(f"Translation {index} [{language}] text is not a string")
        return text

    async def produce(self, index: int, payload: str, language: Optional[str] = None) -> bytes:
        if not payload.strip():
            return silent_audio(self.store.extension_for(Stage.SYNTHESIZED))
        return await self.providers.synthesizer.synthesize(payload, language_code(language))
