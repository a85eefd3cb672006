"""Running transcript with a durable scratch file."""

import logging
from datetime import datetime, timezone
from pathlib import Path

from whisper_stream._types import FinalTranscript
from whisper_stream.clipboard import Clipboard, ClipboardError

logger = logging.getLogger(__name__)


class SessionAccumulator:
    """Collects transcription results for the session.

    Every result is appended to the scratch file as soon as it arrives, so
    an interrupted session can still be recovered. The scratch file is the
    source of truth; the in-memory buffer only mirrors it.
    """

    def __init__(
        self,
        scratch_path: Path = Path("temp_transcriptions.txt"),
        clipboard: Clipboard | None = None,
    ):
        self.scratch_path = Path(scratch_path)
        self.clipboard = clipboard
        self._buffer: list[str] = []

    @property
    def text(self) -> str:
        return "".join(f"{line}\n" for line in self._buffer)

    def append(self, text: str) -> None:
        """Append one result to the buffer and the scratch file."""
        self._buffer.append(text)
        with open(self.scratch_path, "a", encoding="utf-8") as f:
            f.write(text + "\n")
            f.flush()
        logger.debug("Appended %d characters to %s", len(text), self.scratch_path)

    def recover(self) -> str | None:
        """Return the scratch file contents, or None if there is none."""
        if not self.scratch_path.exists():
            return None
        return self.scratch_path.read_text(encoding="utf-8")

    async def finalize(
        self,
        output_dir: Path | None = None,
        timestamps: bool = False,
    ) -> FinalTranscript | None:
        """Fold the scratch file into the final transcript.

        Writes a timestamped file into ``output_dir`` when given, copies
        non-blank text to the clipboard and then deletes the scratch file.
        If the output file cannot be written the scratch file is kept so the
        session can be recovered.

        Args:
            output_dir: Directory for ``transcription_<timestamp>.txt|.json``
            timestamps: Whether results are JSON payloads (selects ``.json``)

        Returns:
            FinalTranscript, or None if nothing was ever transcribed
        """
        text = self.recover()
        if text is None:
            logger.debug("No scratch file at %s, nothing to finalize", self.scratch_path)
            return None

        self._buffer = text.splitlines()

        output_path = None
        keep_scratch = False
        if output_dir is not None:
            stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
            ext = "json" if timestamps else "txt"
            output_path = Path(output_dir) / f"transcription_{stamp}.{ext}"
            try:
                output_path.write_text(text, encoding="utf-8")
                logger.info("Transcript written to %s", output_path)
            except OSError as e:
                logger.error("Error writing transcript to %s: %s", output_path, e)
                output_path = None
                keep_scratch = True

        copied = False
        if text.strip() and self.clipboard is not None:
            try:
                await self.clipboard.copy(text)
                copied = True
            except ClipboardError as e:
                logger.error("Error copying to clipboard: %s", e)

        if keep_scratch:
            logger.warning("Keeping %s for recovery", self.scratch_path)
        else:
            self.scratch_path.unlink(missing_ok=True)

        return FinalTranscript(text=text, output_path=output_path, copied_to_clipboard=copied)
