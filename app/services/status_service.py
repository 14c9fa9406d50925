"""
Status reporter: point-in-time progress snapshots computed from the fragment store.

Nothing here is persisted. Every call re-lists the store, counts completed
fragments and computes ``progress = done / reference * 100`` against the
immediately upstream stage. For live sources the reference keeps growing, so
percentages move around and may briefly exceed 100; that is not an error.
"""

import os
from typing import List, Optional

from app.models.schemas import (
    AudioStatus,
    ErrorExtraction,
    ExtractionStatus,
    LanguageProgress,
    LiveExtraction,
    NormalExtraction,
    NotStartedExtraction,
    TranscriptionStatus,
    TranslationStatus,
)
from app.services.errors import MalformedFragmentError
from app.services.fragment_store import FragmentStore, Stage


def compute_progress(done: int, reference: int) -> float:
    """Percentage of ``done`` against ``reference``, 0 when there is no reference yet."""
    if reference <= 0:
        return 0.0
    return round(done / reference * 100, 2)


def _overall(progresses: List[float]) -> float:
    if not progresses:
        return 0.0
    return round(sum(progresses) / len(progresses), 2)


def extraction_status(store: FragmentStore, video_id: str) -> ExtractionStatus:
    """
    Extraction snapshot for one source.

    Live sources report the growing fragment list; normal sources report the
    status.json written by the extractor.
    """
    if not os.path.isdir(store.source_dir(video_id)):
        return NotStartedExtraction()

    fragments = store.list_filenames(video_id, Stage.EXTRACTED)

    if store.is_live(video_id):
        return LiveExtraction(
            chunkCount=len(fragments),
            latestChunk=fragments[-1] if fragments else None,
            fragments=fragments,
        )

    try:
        status = store.read_extraction_status(video_id)
    except MalformedFragmentError as e:
        return ErrorExtraction(message=f"Unreadable extraction status: {e}")

    if status is None:
        if fragments:
            return NormalExtraction(status="processing", files=fragments, currentFragment=len(fragments))
        return NotStartedExtraction()

    if status.get("status") == "error":
        return ErrorExtraction(
            message=str(status.get("error") or "Extraction failed"),
            errorTime=status.get("errorTime"),
        )

    return NormalExtraction(
        status=status.get("status", "processing"),
        progress=status.get("progress", 0),
        startTime=status.get("startTime"),
        lastUpdate=status.get("lastUpdate"),
        completionTime=status.get("completionTime"),
        currentFragment=status.get("currentFragment"),
        totalFragments=status.get("totalFragments"),
        files=fragments,
    )


def transcription_status(store: FragmentStore, video_id: str) -> TranscriptionStatus:
    extracted = len(store.list_indices(video_id, Stage.EXTRACTED))
    transcribed = len(store.list_indices(video_id, Stage.TRANSCRIBED))
    final_count = store.final_fragment_count(video_id)
    return TranscriptionStatus(
        filesCount=transcribed,
        totalFragments=extracted,
        progress=compute_progress(transcribed, extracted),
        isComplete=final_count is not None and transcribed >= final_count,
    )


def translation_status(store: FragmentStore, video_id: str, languages: List[str]) -> TranslationStatus:
    transcribed = len(store.list_indices(video_id, Stage.TRANSCRIBED))
    per_language = {}
    for language in languages:
        count = len(store.list_indices(video_id, Stage.TRANSLATED, language))
        per_language[language] = LanguageProgress(
            filesCount=count,
            progress=compute_progress(count, transcribed),
        )

    overall = _overall([p.progress for p in per_language.values()])
    final_count = store.final_fragment_count(video_id)
    return TranslationStatus(
        languageStatus=per_language,
        totalTranscriptions=transcribed,
        overallProgress=overall,
        isComplete=final_count is not None and all(
            p.filesCount >= final_count for p in per_language.values()
        ),
    )


def audio_status(store: FragmentStore, video_id: str, languages: List[str]) -> AudioStatus:
    """
    Synthesis snapshot. Per-language progress is synthesized / translated for that
    language; ``overallProgress`` is the mean across languages.
    """
    per_language = {}
    translated_sets = []
    synthesized_sets = []
    for language in languages:
        translated = set(store.list_indices(video_id, Stage.TRANSLATED, language))
        synthesized = set(store.list_indices(video_id, Stage.SYNTHESIZED, language))
        translated_sets.append(translated)
        synthesized_sets.append(synthesized)
        per_language[language] = LanguageProgress(
            filesCount=len(synthesized),
            progress=compute_progress(len(synthesized), len(translated)),
        )

    # Indices complete for every language
    total_translations = len(set.intersection(*translated_sets)) if translated_sets else 0
    processed = len(set.intersection(*synthesized_sets)) if synthesized_sets else 0

    final_count: Optional[int] = store.final_fragment_count(video_id)
    return AudioStatus(
        languageStatus=per_language,
        totalTranslations=total_translations,
        processedAudioFiles=processed,
        overallProgress=_overall([p.progress for p in per_language.values()]),
        isComplete=final_count is not None and processed >= final_count,
    )
