"""Audio transcription via the OpenAI audio API."""

import asyncio
import json
import logging
import mimetypes
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from whisper_stream._types import TranscriptionResult
from whisper_stream.config import Config

logger = logging.getLogger(__name__)


class TranscriptionClient:
    """Uploads audio files to the transcription or translation endpoint.

    Every request is retried up to ``max_retries`` times with a fixed delay.
    Once all attempts fail the client returns ``TranscriptionResult.empty()``
    instead of raising, so one bad segment never ends the session.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "whisper-1",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        client: httpx.AsyncClient | None = None,
        on_retry: Callable[[int], None] | None = None,
    ):
        """Initialize transcription client.

        Args:
            api_key: Bearer token for the API
            model: Transcription model identifier
            base_url: API root, endpoints are appended to it
            timeout: Per-request timeout in seconds
            max_retries: Total number of attempts per file
            retry_delay: Seconds to wait between attempts
            client: Optional preconfigured httpx.AsyncClient
            on_retry: Called with the failed attempt number after each failure
        """
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.on_retry = on_retry
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._client_owned = client is None
        self._headers = {"Authorization": f"Bearer {api_key}"}
        logger.info(
            "TranscriptionClient initialized: model=%s, base_url=%s, max_retries=%d",
            model,
            self.base_url,
            max_retries,
        )

    @classmethod
    def from_config(
        cls,
        cfg: Config,
        *,
        client: httpx.AsyncClient | None = None,
        on_retry: Callable[[int], None] | None = None,
    ) -> "TranscriptionClient":
        return cls(
            api_key=cfg.api_key,
            model=cfg.model,
            base_url=cfg.api_base_url,
            timeout=cfg.request_timeout,
            max_retries=cfg.max_retries,
            retry_delay=cfg.retry_delay,
            client=client,
            on_retry=on_retry,
        )

    def endpoint(self, translate: bool) -> str:
        """Return the translation or transcription URL."""
        if translate:
            return f"{self.base_url}/audio/translations"
        return f"{self.base_url}/audio/transcriptions"

    def build_form(self, cfg: Config) -> dict[str, Any]:
        """Build the non-file multipart fields.

        Optional fields are only sent when set.
        """
        form: dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
        }
        if cfg.timestamps_enabled:
            form["timestamp_granularities[]"] = cfg.granularities
        if cfg.prompt:
            form["prompt"] = cfg.prompt
        if cfg.language:
            form["language"] = cfg.language
        return form

    @staticmethod
    def decode(payload: dict[str, Any], granularities: str) -> str:
        """Extract the result text from a verbose_json response.

        Plain text without timestamps, otherwise the whole payload as compact JSON.
        """
        if granularities == "none":
            return str(payload.get("text", ""))
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)

    async def transcribe(self, audio_path: Path, cfg: Config) -> TranscriptionResult:
        """Transcribe one audio file.

        Args:
            audio_path: Path to the audio file
            cfg: Run configuration (translate, prompt, language, granularities)

        Returns:
            TranscriptionResult, or TranscriptionResult.empty() after
            exhausting all attempts
        """
        audio_path = Path(audio_path)
        url = self.endpoint(cfg.translate)
        form = self.build_form(cfg)
        content_type = mimetypes.guess_type(audio_path.name)[0] or "audio/mpeg"

        logger.info("Starting transcription of %s (%s)", audio_path, url)

        attempt = 0
        while attempt < self.max_retries:
            attempt += 1
            try:
                payload = await self._post(url, audio_path, content_type, form)
            except (httpx.HTTPError, OSError, ValueError) as e:
                logger.warning(
                    "Transcription attempt %d/%d failed (%s: %s)",
                    attempt,
                    self.max_retries,
                    type(e).__name__,
                    e,
                )
                if self.on_retry is not None:
                    self.on_retry(attempt)
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)
                continue

            text = self.decode(payload, cfg.granularities)
            logger.info("Transcription completed: %d characters", len(text))
            return TranscriptionResult(text=text, payload=payload)

        logger.error(
            "Failed to convert audio to text after %d attempts: %s",
            self.max_retries,
            audio_path,
        )
        return TranscriptionResult.empty()

    async def _post(
        self,
        url: str,
        audio_path: Path,
        content_type: str,
        form: dict[str, Any],
    ) -> dict[str, Any]:
        """Send one multipart request and return the decoded JSON body.

        Raises:
            httpx.HTTPError: On transport errors or non-success status
            OSError: If the audio file cannot be read
            ValueError: If the body is not a JSON object
        """
        with open(audio_path, "rb") as audio_file:
            response = await self._client.post(
                url,
                headers=self._headers,
                data=form,
                files={"file": (audio_path.name, audio_file, content_type)},
            )
        response.raise_for_status()

        payload = response.json()
        if not isinstance(payload, dict):
            raise ValueError(f"Unexpected response body: {type(payload).__name__}")
        return payload

    async def aclose(self) -> None:
        """Close the HTTP client if owned by this instance."""
        if self._client_owned:
            await self._client.aclose()
            logger.debug("HTTP client closed")
