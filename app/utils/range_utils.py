"""
HTTP byte-range helpers for streaming synthesized fragments.

Only single ranges are supported; multi-range requests are rejected as
unsatisfiable, which browsers' audio elements never send anyway.
"""

import os
from typing import Iterator, Optional, Tuple

from fastapi import HTTPException, status
from fastapi.responses import StreamingResponse


CHUNK_SIZE = 1 << 16

MEDIA_TYPES = {
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".json": "application/json",
}


class RangeParseError(ValueError):
    """Raised when a Range header is malformed or cannot be satisfied."""


def parse_byte_range(range_value: str, file_size: int) -> Tuple[int, int]:
    """
    Return the inclusive byte range requested by a ``bytes=start-end`` header.

    Supports open-ended (``bytes=500-``) and suffix (``bytes=-500``) forms.
    The end index is clamped to the last byte of the file.

    Args:
        range_value: Raw Range header value
        file_size: Size of the file being served

    Returns:
        Tuple of (start, end), both inclusive

    Raises:
        RangeParseError: If the header is malformed or does not overlap the file

    Example:
        >>> parse_byte_range("bytes=100-199", 1000)
        (100, 199)
    """
    if file_size <= 0:
        raise RangeParseError("empty file")

    if not range_value.startswith("bytes="):
        raise RangeParseError("unsupported range unit")

    byte_ranges = range_value[len("bytes="):].strip()
    if "," in byte_ranges or "-" not in byte_ranges:
        raise RangeParseError("unsupported range syntax")

    start_token, end_token = byte_ranges.split("-", 1)
    start_token = start_token.strip()
    end_token = end_token.strip()

    if not start_token:
        # bytes=-N means the final N bytes
        if not end_token.isdigit():
            raise RangeParseError("invalid suffix length")
        length = int(end_token)
        if length <= 0:
            raise RangeParseError("invalid suffix length")
        return max(file_size - length, 0), file_size - 1

    if not start_token.isdigit():
        raise RangeParseError("invalid range start")
    start = int(start_token)
    if start >= file_size:
        raise RangeParseError("range start beyond end of file")

    if end_token:
        if not end_token.isdigit():
            raise RangeParseError("invalid range end")
        end = min(int(end_token), file_size - 1)
        if end < start:
            raise RangeParseError("range end before start")
    else:
        end = file_size - 1

    return start, end


def iter_file_chunks(path: str, start: int, end: int) -> Iterator[bytes]:
    """Yield chunks from ``path`` between ``start`` and ``end`` (inclusive)."""
    remaining = max(end - start + 1, 0)
    if remaining <= 0:
        return

    with open(path, "rb") as stream:
        stream.seek(start)
        while remaining > 0:
            chunk = stream.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


def stream_file(path: str, range_header: Optional[str] = None) -> StreamingResponse:
    """
    Build a 200 or 206 streaming response for a file on disk.

    Raises:
        HTTPException: 404 if the file vanished, 416 for an unsatisfiable range
    """
    try:
        file_size = os.path.getsize(path)
    except OSError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found") from exc

    if range_header:
        try:
            start, end = parse_byte_range(range_header, file_size)
        except RangeParseError as exc:
            raise HTTPException(
                status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
                detail="Requested range not satisfiable",
                headers={"Content-Range": f"bytes */{file_size}"},
            ) from exc
        status_code = status.HTTP_206_PARTIAL_CONTENT
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
        }
    else:
        start, end = 0, file_size - 1
        status_code = status.HTTP_200_OK
        headers = {"Accept-Ranges": "bytes"}

    headers["Content-Length"] = str(max(end - start + 1, 0))

    media_type = MEDIA_TYPES.get(os.path.splitext(path)[1].lower(), "application/octet-stream")
    return StreamingResponse(
        iter_file_chunks(path, start, end),
        status_code=status_code,
        media_type=media_type,
        headers=headers,
    )
