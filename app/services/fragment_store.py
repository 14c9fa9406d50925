"""
Fragment store: the on-disk layout shared by every pipeline stage.

Each source (videoId) owns one subtree under TEMP_FILES_DIR:

    <videoId>/
      metadata.json
      ExtractedAudio/PreProcessing/fragment-<N>.wav
      ExtractedAudio/FinalExtracted/fragment-<N>.wav
      ExtractedAudio/status.json
      ExtractedText/fragment-<N>.json
      FinalTranslatedText/<Language>/fragment-<N>.json
      FinalTranslatedAudio/<Language>/fragment-<N>.mp3

A fragment is complete when its file exists at the final name with a non-zero
size. There is no manifest. Writes go to a temporary sibling and are renamed
into place only after the written size was verified, so a reader never sees a
partial file under a final name.
"""

import os
import re
import json
import uuid
import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from app.services.errors import MalformedFragmentError


FRAGMENT_RE = re.compile(r'^fragment-(\d+)\.([A-Za-z0-9]+)$')

METADATA_FILE = "metadata.json"
EXTRACTION_STATUS_FILE = os.path.join("ExtractedAudio", "status.json")


def now_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(timezone.utc).isoformat()


class Stage(Enum):
    """Fragment store locations, one per pipeline stage output."""

    PREPROCESSING = ("ExtractedAudio/PreProcessing", ("wav",), False)
    EXTRACTED = ("ExtractedAudio/FinalExtracted", ("wav",), False)
    TRANSCRIBED = ("ExtractedText", ("json",), False)
    TRANSLATED = ("FinalTranslatedText", ("json",), True)
    SYNTHESIZED = ("FinalTranslatedAudio", ("mp3", "wav"), True)

    def __init__(self, subdir: str, extensions: Tuple[str, ...], per_language: bool):
        self.subdir = subdir
        self.extensions = extensions
        self.per_language = per_language


class FragmentEntry(NamedTuple):
    index: int
    filename: str
    size: int
    mtime: float


def parse_fragment_index(filename: str, extensions: Optional[Iterable[str]] = None) -> Optional[int]:
    """
    Return the index embedded in a fragment filename, or None if it doesn't match.

    Example:
        >>> parse_fragment_index("fragment-12.mp3")
        12
        >>> parse_fragment_index("fragment-10.tmp", ("wav",))
        None
    """
    match = FRAGMENT_RE.match(filename)
    if not match:
        return None
    if extensions is not None and match.group(2).lower() not in extensions:
        return None
    return int(match.group(1))


def sort_fragment_filenames(names: Iterable[str]) -> List[str]:
    """
    Sort fragment filenames by embedded index (fragment-2 before fragment-10).

    Names that don't carry an index are dropped.
    """
    indexed = []
    for name in names:
        index = parse_fragment_index(name)
        if index is not None:
            indexed.append((index, name))
    indexed.sort()
    return [name for _, name in indexed]


def atomic_write_bytes(path: str, data: bytes) -> None:
    """
    Write ``data`` to ``path`` via temp file, size check and rename.

    Raises:
        ValueError: For an empty payload
        OSError: If the temp file size doesn't match the payload
    """
    if not data:
        raise ValueError(f"Refusing to write empty payload to {path}")

    os.makedirs(os.path.dirname(path), exist_ok=True)
    tmp_path = f"{path}.{uuid.uuid4().hex}.tmp"
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        written = os.path.getsize(tmp_path)
        if written != len(data):
            raise OSError(f"Short write for {path}: {written} of {len(data)} bytes")
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)


def encode_json(payload: Any) -> bytes:
    return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


def _decode_json(raw: bytes, path: str) -> Any:
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedFragmentError(f"Unparseable JSON in {path}: {e}") from e


class FragmentStore:
    """Filesystem-backed fragment store rooted at ``base_dir``."""

    def __init__(self, base_dir: str, synthesis_format: str = "mp3"):
        self.base_dir = base_dir
        self.synthesis_format = synthesis_format

    # =========================================================================
    # Paths
    # =========================================================================

    def source_dir(self, video_id: str) -> str:
        return os.path.join(self.base_dir, video_id)

    def stage_dir(self, video_id: str, stage: Stage, language: Optional[str] = None) -> str:
        if stage.per_language:
            if not language:
                raise ValueError(f"{stage.name} fragments are stored per language")
            return os.path.join(self.source_dir(video_id), stage.subdir, language)
        return os.path.join(self.source_dir(video_id), stage.subdir)

    def extension_for(self, stage: Stage) -> str:
        if stage is Stage.SYNTHESIZED and self.synthesis_format in stage.extensions:
            return self.synthesis_format
        return stage.extensions[0]

    def fragment_path(
        self,
        video_id: str,
        stage: Stage,
        index: int,
        language: Optional[str] = None,
        extension: Optional[str] = None
    ) -> str:
        ext = extension or self.extension_for(stage)
        return os.path.join(self.stage_dir(video_id, stage, language), f"fragment-{index}.{ext}")

    def ensure_source_dirs(self, video_id: str, languages: Iterable[str] = ()) -> None:
        """Create the per-source directory tree so listings never race with mkdir."""
        for stage in Stage:
            if stage.per_language:
                for language in languages:
                    os.makedirs(self.stage_dir(video_id, stage, language), exist_ok=True)
            else:
                os.makedirs(self.stage_dir(video_id, stage), exist_ok=True)

    # =========================================================================
    # Existence and listing
    # =========================================================================

    def existing_path(
        self,
        video_id: str,
        stage: Stage,
        index: int,
        language: Optional[str] = None
    ) -> Optional[str]:
        """Return the path of a complete fragment, trying the stage's extensions in order."""
        extensions = [self.extension_for(stage)] + [
            ext for ext in stage.extensions if ext != self.extension_for(stage)
        ]
        for ext in extensions:
            path = self.fragment_path(video_id, stage, index, language, ext)
            try:
                if os.path.isfile(path) and os.path.getsize(path) > 0:
                    return path
            except OSError:
                continue
        return None

    def exists(self, video_id: str, stage: Stage, index: int, language: Optional[str] = None) -> bool:
        return self.existing_path(video_id, stage, index, language) is not None

    def list_entries(
        self,
        video_id: str,
        stage: Stage,
        language: Optional[str] = None
    ) -> Dict[int, FragmentEntry]:
        """
        Map index -> entry for every complete fragment in a stage directory.

        Files that don't match ``fragment-<N>.<ext>`` for the stage's extensions
        (temp writes, status.json, ``fragment-10.tmp``) and empty files are
        skipped. A missing directory yields an empty mapping.
        """
        directory = self.stage_dir(video_id, stage, language)
        entries: Dict[int, FragmentEntry] = {}
        try:
            names = os.listdir(directory)
        except FileNotFoundError:
            return entries

        for name in names:
            index = parse_fragment_index(name, stage.extensions)
            if index is None or index in entries:
                continue
            try:
                st = os.stat(os.path.join(directory, name))
            except OSError:
                continue
            if st.st_size <= 0:
                continue
            entries[index] = FragmentEntry(index, name, st.st_size, st.st_mtime)
        return entries

    def list_indices(self, video_id: str, stage: Stage, language: Optional[str] = None) -> List[int]:
        return sorted(self.list_entries(video_id, stage, language))

    def list_filenames(self, video_id: str, stage: Stage, language: Optional[str] = None) -> List[str]:
        """Complete fragment filenames sorted numerically by index."""
        entries = self.list_entries(video_id, stage, language)
        return [entries[index].filename for index in sorted(entries)]

    # =========================================================================
    # Payload I/O
    # =========================================================================

    async def read(self, video_id: str, stage: Stage, index: int, language: Optional[str] = None) -> bytes:
        path = self.existing_path(video_id, stage, index, language)
        if path is None:
            raise FileNotFoundError(self.fragment_path(video_id, stage, index, language))
        return await asyncio.to_thread(_read_file, path)

    async def write(
        self,
        video_id: str,
        stage: Stage,
        index: int,
        data: bytes,
        language: Optional[str] = None
    ) -> str:
        path = self.fragment_path(video_id, stage, index, language)
        await asyncio.to_thread(atomic_write_bytes, path, data)
        return path

    async def read_json(self, video_id: str, stage: Stage, index: int, language: Optional[str] = None) -> Any:
        """
        Raises:
            FileNotFoundError: If the fragment doesn't exist yet
            MalformedFragmentError: If its content isn't valid JSON
        """
        raw = await self.read(video_id, stage, index, language)
        return _decode_json(raw, self.fragment_path(video_id, stage, index, language))

    async def write_json(
        self,
        video_id: str,
        stage: Stage,
        index: int,
        payload: Any,
        language: Optional[str] = None
    ) -> str:
        return await self.write(video_id, stage, index, encode_json(payload), language)

    async def promote(self, video_id: str, index: int) -> bool:
        """
        Move a finished PreProcessing fragment into FinalExtracted.

        Empty or missing files are left alone and reported as not promoted.
        """
        src = self.fragment_path(video_id, Stage.PREPROCESSING, index)
        try:
            if os.path.getsize(src) <= 0:
                return False
        except OSError:
            return False

        data = await asyncio.to_thread(_read_file, src)
        if not data:
            return False
        await self.write(video_id, Stage.EXTRACTED, index, data)
        try:
            os.remove(src)
        except OSError:
            pass
        return True

    # =========================================================================
    # Source-level documents
    # =========================================================================

    def _read_doc(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            raw = _read_file(path)
        except FileNotFoundError:
            return None
        return _decode_json(raw, path)

    def _write_doc(self, path: str, payload: Dict[str, Any]) -> None:
        atomic_write_bytes(path, encode_json(payload))

    def read_metadata(self, video_id: str) -> Optional[Dict[str, Any]]:
        return self._read_doc(os.path.join(self.source_dir(video_id), METADATA_FILE))

    def write_metadata(self, video_id: str, metadata: Dict[str, Any]) -> None:
        self._write_doc(os.path.join(self.source_dir(video_id), METADATA_FILE), metadata)

    def read_extraction_status(self, video_id: str) -> Optional[Dict[str, Any]]:
        return self._read_doc(os.path.join(self.source_dir(video_id), EXTRACTION_STATUS_FILE))

    def write_extraction_status(self, video_id: str, status: Dict[str, Any]) -> None:
        self._write_doc(os.path.join(self.source_dir(video_id), EXTRACTION_STATUS_FILE), status)

    def is_live(self, video_id: str) -> bool:
        try:
            metadata = self.read_metadata(video_id)
        except MalformedFragmentError:
            return False
        return bool(metadata and metadata.get("isLiveContent"))

    def final_fragment_count(self, video_id: str) -> Optional[int]:
        """
        Total extracted fragments once extraction of a non-live source completed.

        Returns None while the count is still open-ended.
        """
        try:
            status = self.read_extraction_status(video_id)
        except MalformedFragmentError:
            return None
        if not status or status.get("status") != "completed":
            return None
        total = status.get("totalFragments")
        return int(total) if isinstance(total, int) else None

    def list_sources(self) -> List[Dict[str, Any]]:
        """Return stored metadata for every saved source, newest first."""
        sources = []
        try:
            names = os.listdir(self.base_dir)
        except FileNotFoundError:
            return sources

        for name in names:
            if not os.path.isdir(self.source_dir(name)):
                continue
            try:
                metadata = self.read_metadata(name)
            except MalformedFragmentError:
                continue
            if metadata:
                sources.append(metadata)

        sources.sort(key=lambda m: m.get("savedAt") or "", reverse=True)
        return sources


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
