"""Silence-bounded audio capture via SoX."""

import asyncio
import logging
import os
import shutil
import subprocess
import time
from datetime import datetime
from enum import Enum
from pathlib import Path

from whisper_stream._types import Segment

logger = logging.getLogger(__name__)


class SegmentError(RuntimeError):
    """Capture or encoder process failed."""

    pass


class CaptureToolMissingError(RuntimeError):
    """rec/sox binaries are not installed."""

    pass


class _SegmenterState(Enum):
    """Internal segmenter state."""

    IDLE = "idle"
    RECORDING = "recording"


class SegmentHandle:
    """A live capture -> encoder pipeline producing one segment file.

    ``wait_captured()`` resolves when the capture process exits (silence or
    duration limit reached); ``wait()`` resolves once the encoder has closed
    the output file.
    """

    def __init__(
        self,
        path: Path,
        capture: asyncio.subprocess.Process,
        encoder: asyncio.subprocess.Process,
        segmenter: "AudioSegmenter",
    ):
        self.path = path
        self.capture = capture
        self.encoder = encoder
        self._segmenter = segmenter
        self._captured_rc: int | None = None

    async def wait_captured(self) -> int:
        """Wait for the capture process to exit and return its exit code."""
        if self._captured_rc is None:
            self._captured_rc = await self.capture.wait()
            logger.debug(
                "Capture finished for %s (exit code %d)", self.path, self._captured_rc
            )
        return self._captured_rc

    async def wait(self) -> Segment | None:
        """Wait for the encoder to close and return the produced segment.

        Returns:
            Segment, or None when no audio was recorded (missing or empty file)

        Raises:
            SegmentError: If either process exited with a non-zero code
        """
        try:
            capture_rc = await self.wait_captured()
            encoder_rc = await self.encoder.wait()
        finally:
            self._segmenter._finish(self)

        if self._segmenter.stopping:
            logger.debug("Segment %s abandoned during stop", self.path)
            return None

        if capture_rc != 0:
            logger.error("Recording error: rec exited with code %d", capture_rc)
            raise SegmentError(f"rec exited with code {capture_rc}")
        if encoder_rc != 0:
            logger.error("Sox error: sox exited with code %d", encoder_rc)
            raise SegmentError(f"sox exited with code {encoder_rc}")

        if not self.path.exists():
            logger.info("No audio recorded: %s was not created", self.path)
            return None

        size = self.path.stat().st_size
        if size == 0:
            logger.info("No audio recorded: %s is empty", self.path)
            return None

        logger.info("Segment recorded: %s (%d bytes)", self.path, size)
        return Segment(path=self.path, created_at=datetime.now(), size=size)


class AudioSegmenter:
    """Drives ``rec`` piped into ``sox`` to record one file per speech segment.

    ``rec`` captures mono 16-bit signed PCM at 44.1 kHz and stops once the
    volume has stayed below the threshold for the configured silence length;
    ``sox`` encodes the raw stream into a compressed file.
    """

    capture_binary = "rec"
    encoder_binary = "sox"

    def __init__(
        self,
        volume: str = "1%",
        silence_length: float = 1.5,
        duration: int = 0,
        work_dir: Path = Path("."),
        sample_rate: int = 44100,
        channels: int = 1,
        bits: int = 16,
        extension: str = "mp3",
    ):
        """Initialize audio segmenter.

        Args:
            volume: Silence threshold as a percentage string (e.g. "1%")
            silence_length: Seconds below threshold that end a segment
            duration: Hard limit per segment in seconds (0 for none)
            work_dir: Directory segment files are written to
            sample_rate: Sample rate in Hz
            channels: Number of channels
            bits: Sample width in bits
            extension: Output file extension, selects the sox encoder
        """
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if silence_length <= 0:
            raise ValueError("silence_length must be positive")
        if duration < 0:
            raise ValueError("duration must be non-negative")

        self.volume = volume
        self.silence_length = silence_length
        self.duration = duration
        self.work_dir = Path(work_dir)
        self.sample_rate = sample_rate
        self.channels = channels
        self.bits = bits
        self.extension = extension

        self._state = _SegmenterState.IDLE
        self._active: SegmentHandle | None = None
        self._stopping = False

        logger.info(
            "AudioSegmenter initialized: volume=%s, silence=%.2fs, duration=%ds",
            volume,
            silence_length,
            duration,
        )

    @property
    def is_recording(self) -> bool:
        return self._state == _SegmenterState.RECORDING

    @property
    def stopping(self) -> bool:
        return self._stopping

    def ensure_available(self) -> None:
        """Verify that the SoX binaries are on PATH.

        Raises:
            CaptureToolMissingError: If rec or sox is missing
        """
        for binary in (self.capture_binary, self.encoder_binary):
            if not shutil.which(binary):
                raise CaptureToolMissingError(
                    f"'{binary}' not found in PATH. Sox is not installed. "
                    "Please install it to use this script."
                )
            logger.debug("Validated binary: %s", binary)

    def new_segment_path(self) -> Path:
        """Time-based file name for the next segment."""
        return self.work_dir / f"output_{int(time.time() * 1000)}.{self.extension}"

    def build_capture_command(self) -> list[str]:
        """Build the rec command with silence detection and optional time limit."""
        cmd = [
            self.capture_binary,
            "-q",
            "-V0",
            "-e", "signed",
            "-L",
            "-c", str(self.channels),
            "-b", str(self.bits),
            "-r", str(self.sample_rate),
            "-t", "raw",
            "-",
        ]
        if self.duration > 0:
            cmd.extend(["trim", "0", str(self.duration)])
        # Start after 0.1s above threshold, stop after silence_length below it
        cmd.extend(
            [
                "silence",
                "1", "0.1", self.volume,
                "1", str(self.silence_length), self.volume,
            ]
        )
        return cmd

    def build_encoder_command(self, path: Path) -> list[str]:
        """Build the sox command converting raw PCM on stdin into ``path``."""
        return [
            self.encoder_binary,
            "-t", "raw",
            "-r", str(self.sample_rate),
            "-b", str(self.bits),
            "-e", "signed",
            "-c", str(self.channels),
            "-",
            str(path),
        ]

    async def start_segment(self) -> SegmentHandle:
        """Spawn capture and encoder processes for a new segment.

        Returns:
            SegmentHandle for the running pipeline

        Raises:
            RuntimeError: If a segment is already being recorded
            SegmentError: If either process cannot be spawned
        """
        if self._state != _SegmenterState.IDLE:
            raise RuntimeError(
                f"Cannot start segment: segmenter in {self._state.value} state"
            )

        self._stopping = False
        path = self.new_segment_path()
        capture_cmd = self.build_capture_command()
        encoder_cmd = self.build_encoder_command(path)

        read_fd, write_fd = os.pipe()
        capture = None
        try:
            capture = await asyncio.create_subprocess_exec(
                *capture_cmd,
                stdin=subprocess.DEVNULL,
                stdout=write_fd,
                stderr=subprocess.DEVNULL,
            )
            encoder = await asyncio.create_subprocess_exec(
                *encoder_cmd,
                stdin=read_fd,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            self._state = _SegmenterState.IDLE
            if capture is not None:
                _terminate(capture)
                await _reap(capture)
            logger.error("Failed to start recording pipeline: %s", e)
            raise SegmentError(f"Failed to start recording pipeline: {e}") from e
        finally:
            # Children hold their own copies; the encoder sees EOF once rec exits
            os.close(read_fd)
            os.close(write_fd)

        self._state = _SegmenterState.RECORDING
        self._active = SegmentHandle(path, capture, encoder, self)
        logger.debug("Recording segment to %s: %s", path, " ".join(capture_cmd))
        return self._active

    async def stop(self) -> None:
        """Terminate any live capture/encoder processes."""
        self._stopping = True
        handle = self._active
        if handle is None:
            return

        for proc in (handle.capture, handle.encoder):
            _terminate(proc)

        for proc in (handle.capture, handle.encoder):
            await _reap(proc)

        self._finish(handle)
        logger.debug("Segmenter stopped")

    def _finish(self, handle: SegmentHandle) -> None:
        if self._active is handle:
            self._active = None
            self._state = _SegmenterState.IDLE


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass


async def _reap(proc: asyncio.subprocess.Process, timeout: float = 2.0) -> None:
    """Wait for a terminated process to exit, killing it after ``timeout``."""
    try:
        await asyncio.wait_for(proc.wait(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Process %s did not exit, killing", proc.pid)
        try:
            proc.kill()
        except ProcessLookupError:
            pass
