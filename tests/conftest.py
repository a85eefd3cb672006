"""Shared fixtures for orchestrator tests."""

import asyncio
from datetime import datetime
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from whisper_stream._types import Segment
from whisper_stream.clipboard import Clipboard

_BLOCK = object()


class FakeHandle:
    """Stands in for a running rec | sox pipeline."""

    def __init__(self, path: Path, outcome, segmenter: "FakeSegmenter"):
        self.path = path
        self.outcome = outcome
        self.segmenter = segmenter

    async def wait_captured(self) -> int:
        if self.outcome is _BLOCK:
            await self.segmenter.stopped.wait()
            return -15
        await asyncio.sleep(0)
        return 0

    async def wait(self) -> Segment | None:
        if self.outcome is _BLOCK or self.outcome is None:
            return None
        if isinstance(self.outcome, Exception):
            raise self.outcome
        self.path.write_bytes(self.outcome)
        return Segment(path=self.path, created_at=datetime.now(), size=len(self.outcome))


class FakeSegmenter:
    """Produces scripted segments, then blocks until stopped.

    Each outcome is audio bytes, None for an empty segment or an exception
    raised from ``wait()``.
    """

    def __init__(self, work_dir: Path, outcomes):
        self.work_dir = work_dir
        self.outcomes = list(outcomes)
        self.started = 0
        self.stop_calls = 0
        self.stopped = asyncio.Event()

    async def start_segment(self) -> FakeHandle:
        self.started += 1
        path = self.work_dir / f"output_{self.started}.mp3"
        outcome = self.outcomes.pop(0) if self.outcomes else _BLOCK
        if outcome is _BLOCK:
            # rec has started writing the segment
            path.write_bytes(b"partial")
        return FakeHandle(path, outcome, self)

    async def stop(self) -> None:
        self.stop_calls += 1
        self.stopped.set()


@pytest.fixture
def work_dir(tmp_path):
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fake_segmenter(work_dir):
    """Factory for FakeSegmenter writing into ``work_dir``."""

    def _make(outcomes=()):
        return FakeSegmenter(work_dir, outcomes)

    return _make


@pytest.fixture
def mock_clipboard():
    return MagicMock(spec=Clipboard)


@pytest.fixture
def mock_client():
    """Create mock TranscriptionClient."""
    mock = AsyncMock()
    mock.transcribe = AsyncMock()
    mock.aclose = AsyncMock()
    return mock
