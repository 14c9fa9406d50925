"""
Fragment pipeline orchestrator.

Turns a YouTube URL into synchronized, per-language translated speech fragments:
extraction -> transcription -> translation -> speech synthesis -> delivery.
"""

__version__ = "0.1.0"
