"""Shared types and dataclasses for cross-module use."""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class Segment:
    """One silence-bounded audio recording produced by the segmenter."""

    path: Path
    created_at: datetime
    size: int


@dataclass(frozen=True)
class TranscriptionResult:
    """Result from transcription.

    ``text`` is either the plain transcript or, when timestamp granularities
    were requested, the serialized response payload.
    """

    text: str
    payload: dict[str, Any] | None = None
    ok: bool = True

    @classmethod
    def empty(cls) -> "TranscriptionResult":
        """Sentinel returned once every attempt has failed."""
        return cls(text="", payload=None, ok=False)


@dataclass(frozen=True)
class FinalTranscript:
    """Accumulated session text after finalization."""

    text: str
    output_path: Path | None = None
    copied_to_clipboard: bool = False
