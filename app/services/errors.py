"""
Exception types shared by the pipeline services.

Routers translate these into HTTPException responses; stage loops decide
between retrying, waiting and giving up based on the type.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for orchestrator errors."""


class ConfigurationError(PipelineError):
    """Fatal misconfiguration detected at startup (missing credentials, bad language list)."""


class ProviderError(PipelineError):
    """An external provider call failed. Always retryable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedFragmentError(PipelineError):
    """A fragment file exists but its content cannot be parsed."""


class FragmentNotReady(PipelineError):
    """Upstream input for a fragment is missing or not yet usable."""


class StageCancelled(PipelineError):
    """The owning source was cancelled while a stage was working or waiting."""


class VideoNotFoundError(PipelineError):
    """Metadata lookup returned no video for the given URL."""


class ExtractionError(PipelineError):
    """The yt-dlp / ffmpeg extraction pipeline failed."""
