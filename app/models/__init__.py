"""
Models package for API request/response validation.

This package contains Pydantic models used throughout the application
for validating API requests and shaping status responses.
"""

from .schemas import (
    ValidateYoutubeRequest,
    ValidateYoutubeResponse,
    VideoMetadata,
    NotStartedExtraction,
    NormalExtraction,
    LiveExtraction,
    ErrorExtraction,
    ExtractionStatus,
    LanguageProgress,
    TranscriptionStatus,
    TranslationStatus,
    AudioStatus,
    FragmentListResponse,
    FragmentEvent,
    PipelineSnapshot,
)

__all__ = [
    "ValidateYoutubeRequest",
    "ValidateYoutubeResponse",
    "VideoMetadata",
    "NotStartedExtraction",
    "NormalExtraction",
    "LiveExtraction",
    "ErrorExtraction",
    "ExtractionStatus",
    "LanguageProgress",
    "TranscriptionStatus",
    "TranslationStatus",
    "AudioStatus",
    "FragmentListResponse",
    "FragmentEvent",
    "PipelineSnapshot",
]
