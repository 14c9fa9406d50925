"""
Pydantic models for request/response validation.

Status snapshots are explicit tagged variants (``kind`` discriminator) and are
converted to the wire JSON shape with ``to_wire()`` at the HTTP boundary.
"""

from pydantic import BaseModel, Field
from typing import Annotated, Any, Dict, List, Literal, Optional, Union


# =============================================================================
# Requests
# =============================================================================

class ValidateYoutubeRequest(BaseModel):
    """Request model for /api/validate-youtube: URL plus optional live-stream choice."""
    url: Optional[str] = Field(None, description="YouTube watch, short or live URL")
    checkOnly: bool = Field(False, description="Only fetch metadata, don't start extraction")
    liveStreamChoice: Optional[Literal["beginning", "now"]] = Field(
        None, description="Where to start a live stream: from the beginning or from now"
    )


# =============================================================================
# Video metadata
# =============================================================================

class VideoMetadata(BaseModel):
    """Stored per-source metadata (metadata.json)."""
    id: str
    title: str = "Unknown"
    description: str = ""
    channelTitle: str = ""
    channelId: str = ""
    thumbnail: Optional[str] = None
    duration: Optional[float] = None
    isLiveContent: bool = False
    savedAt: Optional[str] = None


class ValidateYoutubeResponse(BaseModel):
    success: bool = True
    videoId: str
    metadata: VideoMetadata
    extractionStarted: bool = False
    message: str


# =============================================================================
# Extraction status variants
# =============================================================================

class NotStartedExtraction(BaseModel):
    kind: Literal["not_started"] = "not_started"

    def to_wire(self) -> Dict[str, Any]:
        return {
            "status": "not_started",
            "progress": 0,
            "message": "Audio extraction has not been started",
        }


class NormalExtraction(BaseModel):
    kind: Literal["normal"] = "normal"
    status: str
    progress: float = 0
    startTime: Optional[str] = None
    lastUpdate: Optional[str] = None
    completionTime: Optional[str] = None
    currentFragment: Optional[int] = None
    totalFragments: Optional[int] = None
    files: List[str] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        wire = self.model_dump(exclude={"kind"}, exclude_none=True)
        wire["type"] = "normal"
        return wire


class LiveExtraction(BaseModel):
    kind: Literal["live"] = "live"
    chunkCount: int = 0
    latestChunk: Optional[str] = None
    fragments: List[str] = Field(default_factory=list)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "status": "in_progress",
            "type": "live",
            "chunkCount": self.chunkCount,
            "latestChunk": self.latestChunk,
            "fragments": self.fragments,
        }


class ErrorExtraction(BaseModel):
    kind: Literal["error"] = "error"
    message: str
    errorTime: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        wire = {"status": "error", "type": "normal", "error": self.message}
        if self.errorTime:
            wire["errorTime"] = self.errorTime
        return wire


ExtractionStatus = Annotated[
    Union[NotStartedExtraction, NormalExtraction, LiveExtraction, ErrorExtraction],
    Field(discriminator="kind"),
]


# =============================================================================
# Stage progress
# =============================================================================

class LanguageProgress(BaseModel):
    filesCount: int = 0
    progress: float = 0


class TranscriptionStatus(BaseModel):
    """Transcribed fragments against extracted fragments."""
    kind: Literal["transcription"] = "transcription"
    filesCount: int = 0
    totalFragments: int = 0
    progress: float = 0
    isComplete: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"kind"})


class TranslationStatus(BaseModel):
    """Per-language translations against transcribed fragments."""
    kind: Literal["translation"] = "translation"
    languageStatus: Dict[str, LanguageProgress] = Field(default_factory=dict)
    totalTranscriptions: int = 0
    overallProgress: float = 0
    isComplete: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"kind"})


class AudioStatus(BaseModel):
    """Per-language synthesized fragments against that language's translations."""
    kind: Literal["audio"] = "audio"
    languageStatus: Dict[str, LanguageProgress] = Field(default_factory=dict)
    totalTranslations: int = 0
    processedAudioFiles: int = 0
    overallProgress: float = 0
    isComplete: bool = False

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"kind"})


# =============================================================================
# Delivery
# =============================================================================

class FragmentListResponse(BaseModel):
    """Sorted fragment filenames for one language."""
    files: List[str]
    directory: str
    totalFiles: int
    audioFiles: int


class FragmentEvent(BaseModel):
    """WebSocket push payload announcing a newly synthesized fragment."""
    type: Literal["newFragment"] = "newFragment"
    videoId: str
    language: str
    fragment: str


class PipelineSnapshot(BaseModel):
    """One running source controller."""
    videoId: str
    isLive: bool
    startedAt: str
    tasks: Dict[str, str]
