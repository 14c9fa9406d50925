"""
Platform utility functions for detecting and parsing YouTube URLs.

This module provides utilities for:
- Checking if URLs are YouTube URLs
- Extracting the 11-character video ID used as the source identifier
"""

import re
from typing import Optional


VIDEO_ID_PATTERNS = [
    re.compile(r'(?:youtube\.com/(?:[^/]+/.+/|(?:v|e(?:mbed)?|live|shorts)/|.*[?&]v=)|youtu\.be/)([^"&?/\s]{11})', re.IGNORECASE),
    re.compile(r'^([a-zA-Z0-9_-]{11})$'),
]

VIDEO_ID_RE = re.compile(r'^[a-zA-Z0-9_-]{11}$')


def is_youtube_url(url: str) -> bool:
    """Check if URL is a YouTube URL."""
    youtube_patterns = [
        r'youtube\.com',
        r'youtu\.be',
        r'youtube-nocookie\.com',
    ]
    return any(re.search(pattern, url, re.IGNORECASE) for pattern in youtube_patterns)


def extract_video_id(url: str) -> Optional[str]:
    """
    Extract the YouTube video ID from a URL or a bare ID.

    Examples:
        "https://www.youtube.com/watch?v=dQw4w9WgXcQ" -> "dQw4w9WgXcQ"
        "https://youtu.be/dQw4w9WgXcQ?si=abc" -> "dQw4w9WgXcQ"
        "dQw4w9WgXcQ" -> "dQw4w9WgXcQ"
    """
    if not url:
        return None
    url = url.strip()
    for pattern in VIDEO_ID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def is_valid_video_id(video_id: str) -> bool:
    """Source IDs double as directory names; only accept the YouTube ID alphabet."""
    return bool(video_id) and VIDEO_ID_RE.match(video_id) is not None
