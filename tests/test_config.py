"""Tests for config module."""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from whisper_stream.config import (
    MAX_AUDIO_FILE_SIZE,
    Config,
    ConfigError,
    discover_input_device,
    load_config,
    normalize_volume,
    query_input_volume,
    resolve_api_key,
    validate_audio_file,
    validate_output_dir,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep config discovery away from the real home and working directory."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(tmp_path)
    return home


@pytest.fixture
def tmp_config_file(tmp_path):
    """Create a TOML config file for testing."""

    def _create(content: str) -> Path:
        path = tmp_path / "custom.toml"
        path.write_text(content)
        return path

    return _create


@pytest.fixture
def full_config_content(tmp_path):
    """Full configuration with all sections."""
    out_dir = tmp_path / "out"
    out_dir.mkdir()
    return f"""
[recording]
volume = 3
silence = 2.0
duration = 30
oneshot = true

[api]
token = "sk-file"
model = "whisper-2"
base_url = "http://localhost:9000/v1"
timeout = 15.0
max_retries = 5
retry_delay = 0.5

[output]
path = "{out_dir}"
granularities = "word"
language = "de"
prompt = "Meeting notes"
translate = true
pipe_to = "wc -m"
quiet = true
"""


@pytest.fixture
def audio_file(tmp_path):
    path = tmp_path / "speech.mp3"
    path.write_bytes(b"ID3" + b"\x00" * 64)
    return path


class TestNormalizeVolume:
    """Tests for volume threshold normalization."""

    @pytest.mark.parametrize("value", ["1", "2", "0.5", "15"])
    def test_appends_percent_sign(self, value):
        assert normalize_volume(value) == f"{value}%"

    def test_keeps_existing_percent_sign(self):
        assert normalize_volume("2%") == "2%"

    def test_numeric_input(self):
        assert normalize_volume(3) == "3%"

    def test_empty_volume_rejected(self):
        with pytest.raises(ConfigError, match="must not be empty"):
            normalize_volume("  ")


class TestResolveApiKey:
    """Tests for credential resolution."""

    def test_explicit_value_wins(self):
        assert resolve_api_key("sk-flag", {"OPENAI_API_KEY": "sk-env"}) == "sk-flag"

    def test_env_fallback(self):
        assert resolve_api_key(None, {"OPENAI_API_KEY": "sk-env"}) == "sk-env"

    def test_missing_everywhere(self):
        with pytest.raises(ConfigError, match="No OpenAI API key provided"):
            resolve_api_key("", {})


class TestValidateAudioFile:
    """Tests for user-supplied input file checks."""

    def test_valid_file(self, audio_file):
        assert validate_audio_file(audio_file) == audio_file

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="File does not exist"):
            validate_audio_file(tmp_path / "missing.mp3")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.wav"
        path.touch()
        with pytest.raises(ConfigError, match="File is empty"):
            validate_audio_file(path)

    def test_oversized_file(self, tmp_path):
        path = tmp_path / "big.mp3"
        with open(path, "wb") as f:
            f.truncate(MAX_AUDIO_FILE_SIZE + 1)
        with pytest.raises(ConfigError, match="over 25MB"):
            validate_audio_file(path)

    def test_file_at_size_limit_accepted(self, tmp_path):
        path = tmp_path / "limit.mp3"
        with open(path, "wb") as f:
            f.truncate(MAX_AUDIO_FILE_SIZE)
        assert validate_audio_file(path) == path

    def test_wrong_extension(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("not audio")
        with pytest.raises(ConfigError, match="File format is not acceptable"):
            validate_audio_file(path)

    def test_extension_case_insensitive(self, tmp_path):
        path = tmp_path / "SPEECH.WAV"
        path.write_bytes(b"RIFF")
        assert validate_audio_file(path) == path


class TestValidateOutputDir:
    """Tests for output directory checks."""

    def test_existing_dir(self, tmp_path):
        assert validate_output_dir(tmp_path) == tmp_path

    def test_missing_dir(self, tmp_path):
        with pytest.raises(ConfigError, match="Directory does not exist"):
            validate_output_dir(tmp_path / "nope")


class TestConfigDefaults:
    """Test Config dataclass defaults."""

    def test_defaults(self):
        cfg = Config(api_key="sk-test")
        assert cfg.volume == "1%"
        assert cfg.silence_length == 1.5
        assert cfg.oneshot is False
        assert cfg.duration == 0
        assert cfg.model == "whisper-1"
        assert cfg.granularities == "none"
        assert cfg.max_retries == 3
        assert cfg.retry_delay == 1.0
        assert cfg.scratch_file == Path("temp_transcriptions.txt")
        assert cfg.timestamps_enabled is False

    def test_timestamps_enabled(self):
        assert Config(api_key="k", granularities="word").timestamps_enabled is True
        assert Config(api_key="k", granularities="segment").timestamps_enabled is True

    def test_config_is_frozen(self):
        cfg = Config(api_key="sk-test")
        with pytest.raises(Exception):
            cfg.volume = "5%"


class TestConfigLoading:
    """Test config resolution from file, overrides and env."""

    def test_defaults_without_file(self):
        cfg = load_config(env={"OPENAI_API_KEY": "sk-env"})
        assert cfg.api_key == "sk-env"
        assert cfg.volume == "1%"
        assert cfg.output_dir is None
        assert cfg.audio_file is None

    def test_load_full_file(self, tmp_config_file, full_config_content, tmp_path):
        cfg = load_config(tmp_config_file(full_config_content), env={})
        assert cfg.api_key == "sk-file"
        assert cfg.volume == "3%"
        assert cfg.silence_length == 2.0
        assert cfg.duration == 30
        assert cfg.oneshot is True
        assert cfg.model == "whisper-2"
        assert cfg.api_base_url == "http://localhost:9000/v1"
        assert cfg.request_timeout == 15.0
        assert cfg.max_retries == 5
        assert cfg.retry_delay == 0.5
        assert cfg.output_dir == tmp_path / "out"
        assert cfg.granularities == "word"
        assert cfg.language == "de"
        assert cfg.prompt == "Meeting notes"
        assert cfg.translate is True
        assert cfg.pipe_to == "wc -m"
        assert cfg.quiet is True

    def test_overrides_beat_file(self, tmp_config_file, full_config_content):
        cfg = load_config(
            tmp_config_file(full_config_content),
            env={},
            overrides={"volume": "7", "model": "whisper-1", "language": None},
        )
        assert cfg.volume == "7%"
        assert cfg.model == "whisper-1"
        assert cfg.language == "de"

    def test_file_token_beats_env(self, tmp_config_file, full_config_content):
        cfg = load_config(
            tmp_config_file(full_config_content), env={"OPENAI_API_KEY": "sk-env"}
        )
        assert cfg.api_key == "sk-file"

    def test_missing_credential(self):
        with pytest.raises(ConfigError, match="No OpenAI API key"):
            load_config(env={})

    def test_explicit_file_not_found(self):
        with pytest.raises(ConfigError, match="Config file not found"):
            load_config(Path("/nonexistent/config.toml"), env={"OPENAI_API_KEY": "k"})

    def test_env_config_path(self, tmp_config_file):
        path = tmp_config_file('[recording]\nvolume = "4%"\n')
        cfg = load_config(
            env={"OPENAI_API_KEY": "k", "WHISPER_STREAM_CONFIG": str(path)}
        )
        assert cfg.volume == "4%"

    def test_env_config_path_missing(self, tmp_path):
        with pytest.raises(ConfigError, match="WHISPER_STREAM_CONFIG"):
            load_config(
                env={
                    "OPENAI_API_KEY": "k",
                    "WHISPER_STREAM_CONFIG": str(tmp_path / "missing.toml"),
                }
            )

    def test_local_file_discovered(self, tmp_path):
        (tmp_path / "whisper-stream.toml").write_text("[recording]\nsilence = 0.8\n")
        cfg = load_config(env={"OPENAI_API_KEY": "k"})
        assert cfg.silence_length == 0.8

    def test_home_config_discovered(self, isolated_home):
        config_dir = isolated_home / ".config"
        config_dir.mkdir()
        (config_dir / "whisper-stream.toml").write_text('[api]\nmodel = "custom"\n')
        cfg = load_config(env={"OPENAI_API_KEY": "k"})
        assert cfg.model == "custom"

    def test_invalid_toml(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Failed to parse"):
            load_config(tmp_config_file("[recording\nvolume = "), env={"OPENAI_API_KEY": "k"})

    def test_unknown_section(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Unknown section"):
            load_config(tmp_config_file("[input]\ndevice = 1\n"), env={"OPENAI_API_KEY": "k"})

    def test_unknown_key(self, tmp_config_file):
        with pytest.raises(ConfigError, match="Unknown key 'loudness'"):
            load_config(
                tmp_config_file("[recording]\nloudness = 3\n"), env={"OPENAI_API_KEY": "k"}
            )

    def test_section_must_be_table(self, tmp_config_file):
        with pytest.raises(ConfigError, match="must be a table"):
            load_config(tmp_config_file('recording = "loud"\n'), env={"OPENAI_API_KEY": "k"})

    def test_invalid_granularities(self):
        with pytest.raises(ConfigError, match="Invalid granularities"):
            load_config(env={"OPENAI_API_KEY": "k"}, overrides={"granularities": "char"})

    def test_negative_duration(self):
        with pytest.raises(ConfigError, match="duration must be non-negative"):
            load_config(env={"OPENAI_API_KEY": "k"}, overrides={"duration": -1})

    def test_zero_silence_rejected(self):
        with pytest.raises(ConfigError, match="silence length must be positive"):
            load_config(env={"OPENAI_API_KEY": "k"}, overrides={"silence_length": 0})

    def test_zero_retries_rejected(self):
        with pytest.raises(ConfigError, match="max_retries"):
            load_config(env={"OPENAI_API_KEY": "k"}, overrides={"max_retries": 0})

    def test_non_numeric_silence(self):
        with pytest.raises(ConfigError, match="Invalid configuration values"):
            load_config(env={"OPENAI_API_KEY": "k"}, overrides={"silence_length": "long"})

    def test_missing_output_dir(self, tmp_path):
        with pytest.raises(ConfigError, match="Directory does not exist"):
            load_config(
                env={"OPENAI_API_KEY": "k"}, overrides={"output_dir": tmp_path / "nope"}
            )

    def test_invalid_audio_file(self, tmp_path):
        with pytest.raises(ConfigError, match="File does not exist"):
            load_config(
                env={"OPENAI_API_KEY": "k"}, overrides={"audio_file": tmp_path / "x.mp3"}
            )

    def test_valid_audio_file(self, audio_file):
        cfg = load_config(env={"OPENAI_API_KEY": "k"}, overrides={"audio_file": audio_file})
        assert cfg.audio_file == audio_file

    def test_empty_output_path_means_none(self, tmp_config_file):
        cfg = load_config(tmp_config_file('[output]\npath = ""\n'), env={"OPENAI_API_KEY": "k"})
        assert cfg.output_dir is None


class TestDeviceProbing:
    """Tests for best-effort input device and volume queries."""

    def test_discover_input_device(self):
        fake_sd = MagicMock()
        fake_sd.query_devices.return_value = {"name": "MacBook Pro Microphone"}
        with patch.dict("sys.modules", {"sounddevice": fake_sd}):
            assert discover_input_device() == "MacBook Pro Microphone"
        fake_sd.query_devices.assert_called_once_with(kind="input")

    def test_discover_input_device_query_error(self):
        fake_sd = MagicMock()
        fake_sd.query_devices.side_effect = RuntimeError("PortAudio not initialized")
        with patch.dict("sys.modules", {"sounddevice": fake_sd}):
            assert discover_input_device() is None

    def test_discover_input_device_unavailable(self):
        with patch.dict("sys.modules", {"sounddevice": None}):
            assert discover_input_device() is None

    @patch("whisper_stream.config.subprocess.run")
    def test_macos_volume(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=b"75\n")
        assert query_input_volume("darwin") == "75%"
        assert mock_run.call_args[0][0][0] == "osascript"

    @patch("whisper_stream.config.subprocess.run")
    def test_linux_volume(self, mock_run):
        amixer_output = (
            b"Simple mixer control 'Capture',0\n"
            b"  Capabilities: cvolume cswitch\n"
            b"  Front Left: Capture 40355 [62%] [on]\n"
            b"  Front Right: Capture 40355 [62%] [on]\n"
        )
        mock_run.return_value = MagicMock(returncode=0, stdout=amixer_output)
        assert query_input_volume("linux") == "62%"

    @patch("whisper_stream.config.subprocess.run")
    def test_volume_command_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError("amixer")
        assert query_input_volume("linux") is None

    @patch("whisper_stream.config.subprocess.run")
    def test_volume_command_timeout(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired("osascript", 2.0)
        assert query_input_volume("darwin") is None

    @patch("whisper_stream.config.subprocess.run")
    def test_volume_command_fails(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout=b"")
        assert query_input_volume("linux") is None

    def test_unsupported_platform(self):
        assert query_input_volume("win32") is None
