"""Central async state machine orchestrating recording and transcription."""

import asyncio
import contextlib
import logging
import signal
import sys
from enum import Enum
from pathlib import Path

import typer

from whisper_stream.accumulator import SessionAccumulator
from whisper_stream.config import Config
from whisper_stream.pipe import PipeCommandError, run_pipe_command
from whisper_stream.segmenter import AudioSegmenter, SegmentError
from whisper_stream.transcriber import TranscriptionClient

logger = logging.getLogger(__name__)

_SPINNER_CHARS = "|/-\\"


class State(Enum):
    """Orchestrator state."""

    IDLE = "idle"
    RECORDING = "recording"
    ENCODING = "encoding"
    TRANSCRIBING = "transcribing"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class Orchestrator:
    """Coordinates segmenter, transcription client and accumulator.

    Live mode runs a recording loop and a single transcription worker fed
    through a queue: segment N is transcribed while segment N+1 records,
    and results reach the scratch file in recording order. File mode
    transcribes the supplied file once. Either way the session ends in
    ``shutdown()``, which finalizes the accumulated transcript.
    """

    def __init__(
        self,
        config: Config,
        segmenter: AudioSegmenter,
        client: TranscriptionClient,
        accumulator: SessionAccumulator,
    ):
        """Initialize orchestrator with components.

        Args:
            config: Resolved run configuration
            segmenter: AudioSegmenter instance
            client: TranscriptionClient instance
            accumulator: SessionAccumulator instance
        """
        self.config = config
        self.segmenter = segmenter
        self.client = client
        self.accumulator = accumulator

        self.state = State.IDLE
        self._shutdown_event = asyncio.Event()
        self._queue: asyncio.Queue[Path] = asyncio.Queue()
        self._main_task: asyncio.Task | None = None
        self._worker_task: asyncio.Task | None = None
        self._segment_files: set[Path] = set()
        self._in_flight = 0
        self._last_error: BaseException | None = None
        self._signals_installed: list[int] = []

        logger.info("Orchestrator initialized in IDLE state")

    @property
    def transcribing(self) -> bool:
        """True while a transcription request is in flight."""
        return self._in_flight > 0

    @property
    def live(self) -> bool:
        return self.config.audio_file is None

    def request_shutdown(self) -> None:
        """Ask the session to end; safe to call from a signal handler."""
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested")
            self._shutdown_event.set()

    async def run(self) -> int:
        """Run the session until shutdown.

        Returns:
            0 on clean shutdown, 1 if an unexpected error ended the session
        """
        self._install_signal_handlers()
        try:
            if self.live:
                self._worker_task = asyncio.create_task(self._transcription_worker())
                self._main_task = asyncio.create_task(self._record_loop())
            else:
                self._main_task = asyncio.create_task(self._transcribe_file())

            shutdown_wait = asyncio.create_task(self._shutdown_event.wait())
            try:
                await asyncio.wait(
                    {self._main_task, shutdown_wait},
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if self._main_task.done() and not self._main_task.cancelled():
                    error = self._main_task.exception()
                    if error is not None:
                        logger.error("Session failed: %s", error, exc_info=error)
                        self._last_error = error
                    elif self.live and not self._shutdown_event.is_set():
                        # Recording halted after a segmenter failure
                        typer.secho(
                            "Recording stopped. Press Ctrl+C to exit.",
                            fg=typer.colors.RED,
                            err=True,
                        )
                        await shutdown_wait
            finally:
                shutdown_wait.cancel()
        finally:
            await self.shutdown()
            self._remove_signal_handlers()

        return 1 if self._last_error is not None else 0

    async def shutdown(self) -> None:
        """Stop recording, discard in-flight work and finalize the transcript."""
        if self.state in (State.SHUTTING_DOWN, State.TERMINATED):
            return

        logger.info("State transition: %s -> SHUTTING_DOWN", self.state.name)
        self.state = State.SHUTTING_DOWN
        self._shutdown_event.set()

        try:
            await self.segmenter.stop()
        except Exception as e:
            logger.warning("Error stopping segmenter: %s", e)

        for task_ref, task_name in [
            (self._main_task, "main"),
            (self._worker_task, "transcription"),
        ]:
            if task_ref and not task_ref.done():
                logger.debug("Cancelling %s task", task_name)
                task_ref.cancel()
                try:
                    await asyncio.wait_for(task_ref, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    pass

        for segment_file in self._segment_files:
            try:
                if segment_file.exists():
                    segment_file.unlink()
                    logger.debug("Deleted segment file: %s", segment_file)
            except OSError as e:
                logger.warning("Error deleting segment file %s: %s", segment_file, e)
        self._segment_files.clear()

        _clear_line()
        final = await self.accumulator.finalize(
            self.config.output_dir,
            timestamps=self.config.timestamps_enabled,
        )
        if final is not None:
            typer.echo("")
            if final.copied_to_clipboard:
                typer.secho("Transcription copied to clipboard.", fg=typer.colors.CYAN)

        try:
            await self.client.aclose()
        except Exception as e:
            logger.warning("Error closing transcription client: %s", e)

        self.state = State.TERMINATED
        logger.info("Orchestrator shutdown complete")

    async def _transcribe_file(self) -> None:
        """Single transcription of the operator-supplied file, then shutdown."""
        logger.info("State transition: IDLE -> TRANSCRIBING")
        self.state = State.TRANSCRIBING
        await self._transcribe_segment(self.config.audio_file, keep_source=True)
        self.request_shutdown()

    async def _record_loop(self) -> None:
        """Record segments back to back until shutdown or one-shot completion."""
        while not self._shutdown_event.is_set():
            logger.info("State transition: %s -> RECORDING", self.state.name)
            self.state = State.RECORDING
            try:
                handle = await self.segmenter.start_segment()
                self._segment_files.add(handle.path)

                await handle.wait_captured()
                logger.info("State transition: RECORDING -> ENCODING")
                self.state = State.ENCODING

                segment = await handle.wait()
            except SegmentError as e:
                typer.secho(f"Recording error: {e}", fg=typer.colors.RED, err=True)
                self.state = State.IDLE
                if self.config.oneshot:
                    self.request_shutdown()
                return

            if segment is None:
                self._delete_segment(handle.path)
                if self._shutdown_event.is_set():
                    break
                typer.echo("No audio recorded.")
                if self.config.oneshot:
                    break
                continue

            if self.config.oneshot:
                logger.info("State transition: ENCODING -> TRANSCRIBING")
                self.state = State.TRANSCRIBING
                await self._transcribe_segment(segment.path)
                break

            logger.debug("Queueing %s for transcription", segment.path)
            await self._queue.put(segment.path)

        self.request_shutdown()

    async def _transcription_worker(self) -> None:
        """Transcribe queued segments one at a time, in recording order."""
        while True:
            path = await self._queue.get()
            try:
                await self._transcribe_segment(path)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Error transcribing %s: %s", path, e, exc_info=True)
            finally:
                self._queue.task_done()

    async def _transcribe_segment(self, path: Path, keep_source: bool = False) -> None:
        """Transcribe one file and deliver the result.

        A successful result is appended to the scratch file before it is echoed
        or piped, so an interrupt during the pipe command cannot lose it.
        Generated segment files are deleted whatever the outcome.
        """
        self._in_flight += 1
        spinner = self._start_spinner()
        try:
            result = await self.client.transcribe(path, self.config)
            if result.ok:
                self.accumulator.append(result.text)
        finally:
            self._in_flight -= 1
            if spinner is not None:
                spinner.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await spinner
            _clear_line()

        if result.ok:
            typer.echo(result.text)
            if self.config.pipe_to:
                try:
                    output = await run_pipe_command(self.config.pipe_to, result.text)
                    typer.echo(output, nl=False)
                except PipeCommandError as e:
                    logger.error("Pipe command failed: %s", e)
                    typer.secho(
                        f"Error executing pipe command: {e}", fg=typer.colors.RED, err=True
                    )
        else:
            typer.secho(
                "Failed to convert audio to text after multiple attempts.",
                fg=typer.colors.RED,
                err=True,
            )

        if not keep_source:
            self._delete_segment(path)

    def _delete_segment(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Error deleting segment file %s: %s", path, e)
        self._segment_files.discard(path)

    def _start_spinner(self) -> asyncio.Task | None:
        if self.config.quiet or not sys.stdout.isatty():
            return None
        return asyncio.create_task(_spin())

    def _install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows or not the main thread; KeyboardInterrupt still ends the run
                logger.debug("Cannot install handler for %s", sig)

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()


async def _spin() -> None:
    i = 0
    while True:
        sys.stdout.write(f"\r\x1b[1;31m{_SPINNER_CHARS[i]}\x1b[0m ")
        sys.stdout.flush()
        i = (i + 1) % len(_SPINNER_CHARS)
        await asyncio.sleep(0.1)


def _clear_line() -> None:
    if sys.stdout.isatty():
        sys.stdout.write("\r\x1b[K")
        sys.stdout.flush()
