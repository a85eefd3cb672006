"""Configuration loader and validation."""

import logging
import os
import re
import subprocess
import sys
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

logger = logging.getLogger(__name__)

__all__ = [
    "Config",
    "ConfigError",
    "API_KEY_ENV",
    "CONFIG_ENV",
    "MAX_AUDIO_FILE_SIZE",
    "ACCEPTED_AUDIO_FORMATS",
    "VALID_GRANULARITIES",
    "load_config",
    "normalize_volume",
    "validate_audio_file",
    "validate_output_dir",
    "resolve_api_key",
    "discover_input_device",
    "query_input_volume",
]

API_KEY_ENV = "OPENAI_API_KEY"
CONFIG_ENV = "WHISPER_STREAM_CONFIG"

MAX_AUDIO_FILE_SIZE = 26214400  # 25 MB upload limit of the transcription API
ACCEPTED_AUDIO_FORMATS = ("m4a", "mp3", "webm", "mp4", "mpga", "wav", "mpeg")
VALID_GRANULARITIES = ("none", "segment", "word")

# TOML section -> {key in file: Config field}
_SECTION_KEYS: dict[str, dict[str, str]] = {
    "recording": {
        "volume": "volume",
        "silence": "silence_length",
        "duration": "duration",
        "oneshot": "oneshot",
        "work_dir": "work_dir",
    },
    "api": {
        "token": "api_key",
        "model": "model",
        "base_url": "api_base_url",
        "timeout": "request_timeout",
        "max_retries": "max_retries",
        "retry_delay": "retry_delay",
    },
    "output": {
        "path": "output_dir",
        "granularities": "granularities",
        "language": "language",
        "prompt": "prompt",
        "translate": "translate",
        "pipe_to": "pipe_to",
        "quiet": "quiet",
        "scratch_file": "scratch_file",
    },
}


class ConfigError(Exception):
    """Configuration loading or validation error."""

    pass


@dataclass(frozen=True)
class Config:
    """Resolved run parameters, read-only after startup."""

    api_key: str
    volume: str = "1%"
    silence_length: float = 1.5
    oneshot: bool = False
    duration: int = 0
    model: str = "whisper-1"
    output_dir: Path | None = None
    prompt: str = ""
    language: str = ""
    translate: bool = False
    audio_file: Path | None = None
    pipe_to: str = ""
    quiet: bool = False
    granularities: str = "none"
    api_base_url: str = "https://api.openai.com/v1"
    request_timeout: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0
    scratch_file: Path = Path("temp_transcriptions.txt")
    work_dir: Path = Path(".")

    @property
    def timestamps_enabled(self) -> bool:
        """True when the API is asked for segment or word timestamps."""
        return self.granularities != "none"

    @classmethod
    def from_toml(
        cls,
        path: Path | None = None,
        *,
        env: Mapping[str, str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> "Config":
        """Build configuration from an optional TOML file, CLI overrides and env.

        Args:
            path: Explicit config file path. If None, searches in order:
                  1. WHISPER_STREAM_CONFIG env var
                  2. ./whisper-stream.toml
                  3. ~/.config/whisper-stream.toml
                  A missing file is fine; defaults apply.
            env: Environment variables (defaults to os.environ)
            overrides: Values from the command line keyed by Config field
                name; None entries are ignored

        Returns:
            Normalized Config instance

        Raises:
            ConfigError: If the file cannot be parsed or a value is invalid
        """
        if env is None:
            env = os.environ

        values: dict[str, Any] = {}
        resolved_path = _resolve_config_path(path, env)
        if resolved_path is not None:
            values.update(_coerce_config_values(_load_toml_file(resolved_path)))

        for key, value in (overrides or {}).items():
            if value is not None:
                values[key] = value

        values["api_key"] = resolve_api_key(values.get("api_key"), env)

        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")

        try:
            return cls(**_normalize(values))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e

    def validate(self) -> None:
        """Validate configuration against the filesystem.

        Raises:
            ConfigError: If the output directory or input file is unusable
        """
        if self.output_dir is not None:
            validate_output_dir(self.output_dir)
        if self.audio_file is not None:
            validate_audio_file(self.audio_file)
        if not self.work_dir.is_dir():
            raise ConfigError(f"Working directory does not exist: {self.work_dir}")


def _resolve_config_path(
    cli_path: Path | None,
    env: Mapping[str, str],
) -> Path | None:
    """Resolve configuration file path following search order.

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if cli_path:
        cli_path = Path(cli_path).expanduser()
        if cli_path.exists():
            logger.info("Using config file: %s", cli_path.resolve())
            return cli_path.resolve()
        raise ConfigError(f"Config file not found: {cli_path}")

    if env_path := env.get(CONFIG_ENV):
        candidate = Path(env_path).expanduser()
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()
        raise ConfigError(f"Config file not found: {candidate} (from {CONFIG_ENV})")

    for candidate in (
        Path("whisper-stream.toml"),
        Path.home() / ".config" / "whisper-stream.toml",
    ):
        if candidate.exists():
            logger.info("Using config file: %s", candidate.resolve())
            return candidate.resolve()

    logger.debug("No config file found, using defaults")
    return None


def _load_toml_file(path: Path) -> dict:
    """Load and parse TOML configuration file.

    Raises:
        ConfigError: If file cannot be read or parsed
    """
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {path}") from e
    except Exception as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}") from e


def _coerce_config_values(raw_data: dict) -> dict[str, Any]:
    """Flatten TOML sections into Config field names.

    Raises:
        ConfigError: On unknown sections or keys, or non-table sections
    """
    coerced: dict[str, Any] = {}

    for section, value in raw_data.items():
        if section not in _SECTION_KEYS:
            raise ConfigError(
                f"Unknown section [{section}]. "
                f"Must be one of: {', '.join(_SECTION_KEYS)}"
            )
        if not isinstance(value, dict):
            raise ConfigError(f"Section [{section}] must be a table")

        mapping = _SECTION_KEYS[section]
        for key, item in value.items():
            if key not in mapping:
                raise ConfigError(f"Unknown key '{key}' in section [{section}]")
            coerced[mapping[key]] = item

    return coerced


def _normalize(values: dict[str, Any]) -> dict[str, Any]:
    """Type-coerce and range-check merged configuration values."""
    normalized = dict(values)

    if "volume" in normalized:
        normalized["volume"] = normalize_volume(normalized["volume"])

    if "silence_length" in normalized:
        silence = float(normalized["silence_length"])
        if silence <= 0:
            raise ConfigError(f"silence length must be positive, got {silence}")
        normalized["silence_length"] = silence

    if "duration" in normalized:
        duration = int(normalized["duration"])
        if duration < 0:
            raise ConfigError(f"duration must be non-negative, got {duration}")
        normalized["duration"] = duration

    granularities = normalized.get("granularities", "none")
    if granularities not in VALID_GRANULARITIES:
        raise ConfigError(
            f"Invalid granularities '{granularities}'. "
            f"Must be one of: {', '.join(VALID_GRANULARITIES)}"
        )

    if "max_retries" in normalized:
        retries = int(normalized["max_retries"])
        if retries < 1:
            raise ConfigError(f"max_retries must be at least 1, got {retries}")
        normalized["max_retries"] = retries

    if "retry_delay" in normalized:
        delay = float(normalized["retry_delay"])
        if delay < 0:
            raise ConfigError(f"retry_delay must be non-negative, got {delay}")
        normalized["retry_delay"] = delay

    if "request_timeout" in normalized:
        timeout = float(normalized["request_timeout"])
        if timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {timeout}")
        normalized["request_timeout"] = timeout

    for key in ("output_dir", "audio_file", "scratch_file", "work_dir"):
        value = normalized.get(key)
        if value in (None, ""):
            normalized.pop(key, None)
        else:
            normalized[key] = Path(value).expanduser()

    for key in ("prompt", "language", "pipe_to", "model", "api_base_url"):
        if key in normalized:
            normalized[key] = str(normalized[key])

    return normalized


def normalize_volume(value: str | int | float) -> str:
    """Return the volume threshold as a percentage string, e.g. ``"2%"``."""
    volume = str(value).strip()
    if not volume:
        raise ConfigError("volume threshold must not be empty")
    if not volume.endswith("%"):
        volume += "%"
    return volume


def resolve_api_key(value: str | None, env: Mapping[str, str]) -> str:
    """Return the API credential, falling back to OPENAI_API_KEY.

    Raises:
        ConfigError: If neither the flag/config nor the environment provides one
    """
    if value:
        return value
    env_value = env.get(API_KEY_ENV, "")
    if env_value:
        logger.debug("Using API key from %s", API_KEY_ENV)
        return env_value
    raise ConfigError(
        "No OpenAI API key provided. Please provide it as an argument or environment variable."
    )


def validate_output_dir(path: Path) -> Path:
    """Ensure the transcript output directory exists.

    Raises:
        ConfigError: If the directory is missing
    """
    path = Path(path)
    if not path.is_dir():
        raise ConfigError(f"Directory does not exist: {path}")
    return path


def validate_audio_file(path: Path) -> Path:
    """Check an operator-supplied audio file before any upload.

    The file must exist, be non-empty, fit the 25 MB API limit and carry
    one of the accepted extensions.

    Raises:
        ConfigError: Describing the first failed check
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"File does not exist: {path}")

    size = path.stat().st_size
    if size == 0:
        raise ConfigError(f"File is empty: {path}")
    if size > MAX_AUDIO_FILE_SIZE:
        raise ConfigError(f"File size is over 25MB: {path}")

    ext = path.suffix.lower().lstrip(".")
    if ext not in ACCEPTED_AUDIO_FORMATS:
        raise ConfigError(f"File format is not acceptable: {path}")

    return path


def load_config(
    path: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Config:
    """Load and validate configuration.

    Convenience wrapper around Config.from_toml() followed by Config.validate().

    Raises:
        ConfigError: If config cannot be loaded or validated
    """
    cfg = Config.from_toml(path, env=env, overrides=overrides)
    cfg.validate()
    return cfg


def discover_input_device() -> str | None:
    """Return the name of the default audio capture device.

    Returns:
        Device name, or None if sounddevice/PortAudio is unavailable or the
        query fails
    """
    try:
        import sounddevice
    except (ImportError, OSError) as e:
        logger.debug("sounddevice not available, cannot query input device: %s", e)
        return None

    try:
        info = sounddevice.query_devices(kind="input")
    except Exception as e:
        logger.debug("Error querying default input device: %s", e)
        return None

    name = info.get("name") if isinstance(info, Mapping) else None
    return name or None


def query_input_volume(platform: str | None = None) -> str | None:
    """Return the current input volume as a percentage string.

    Uses osascript on macOS and amixer on Linux. Any failure yields None.
    """
    platform = platform or sys.platform

    if platform == "darwin":
        cmd = ["osascript", "-e", "input volume of (get volume settings)"]
    elif platform.startswith("linux"):
        cmd = ["amixer", "sget", "Capture"]
    else:
        return None

    try:
        result = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=2.0,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Input volume query %s failed: %s", cmd[0], e)
        return None

    if result.returncode != 0:
        logger.debug("Input volume query %s exited with %d", cmd[0], result.returncode)
        return None

    output = result.stdout.decode("utf-8", errors="replace").strip()
    if platform == "darwin":
        return f"{output}%" if output.isdigit() else None

    for line in output.splitlines():
        if "Left:" in line:
            match = re.search(r"\[(\d+%)\]", line)
            if match:
                return match.group(1)
    return None
