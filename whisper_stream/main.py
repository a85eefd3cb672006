"""Typer CLI entrypoint for whisper-stream."""

import asyncio
import logging
from pathlib import Path

import typer

from whisper_stream.accumulator import SessionAccumulator
from whisper_stream.clipboard import Clipboard
from whisper_stream.config import (
    Config,
    ConfigError,
    discover_input_device,
    load_config,
    query_input_volume,
)
from whisper_stream.orchestrator import Orchestrator
from whisper_stream.segmenter import AudioSegmenter, CaptureToolMissingError
from whisper_stream.transcriber import TranscriptionClient

VERSION = "1.0.0"

app = typer.Typer(
    help="Continuously record speech and transcribe it with the OpenAI Whisper API.",
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
)

logger = logging.getLogger(__name__)

_RULE = "-----------------------------------------------"


def _setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"whisper-stream {VERSION}")
        raise typer.Exit()


def _print_retry(attempt: int) -> None:
    typer.secho(".", fg=typer.colors.RED, bold=True, nl=False)


def _print_header(title: str) -> None:
    typer.echo("")
    typer.echo(typer.style(title, fg=typer.colors.BLUE, bold=True) + f" {VERSION}")
    typer.secho(_RULE, fg=typer.colors.YELLOW, bold=True)
    typer.echo("Current settings:")


def _display_settings(cfg: Config) -> None:
    """Print the banner and current recording settings."""
    if cfg.quiet:
        return

    _print_header("Whisper Stream Speech-to-Text Transcriber")
    typer.echo(f"  Volume threshold: {cfg.volume}")
    typer.echo(f"  Silence length: {cfg.silence_length} seconds")
    typer.echo(f"  Input language: {cfg.language or 'Not specified'}")
    if cfg.translate:
        typer.echo(f"  Translate to English: {cfg.translate}")
    if cfg.output_dir:
        typer.echo(f"  Output Dir: {cfg.output_dir}")

    input_device = discover_input_device()
    if input_device:
        typer.echo(f"  Input device: {input_device}")
    input_volume = query_input_volume()
    if input_volume:
        typer.echo(f"  Input volume: {input_volume}")

    typer.secho(_RULE, fg=typer.colors.YELLOW, bold=True)
    typer.echo("To stop the app, press " + typer.style("Ctrl+C", fg=typer.colors.CYAN))
    typer.echo("")


def _display_file_settings(cfg: Config) -> None:
    """Print the banner for single-file transcription."""
    if cfg.quiet:
        return

    _print_header("Whisper Stream Transcriber")
    typer.echo(f"  Input language: {cfg.language or 'Not specified'}")
    if cfg.translate:
        typer.echo(f"  Translate to English: {cfg.translate}")
    if cfg.output_dir:
        typer.echo(f"  Output Dir: {cfg.output_dir}")
    typer.echo(f"  Input file: {cfg.audio_file}")
    typer.secho(_RULE, fg=typer.colors.YELLOW, bold=True)
    typer.secho("Please wait ...", fg=typer.colors.CYAN)
    typer.echo("")


async def _serve(cfg: Config, segmenter: AudioSegmenter) -> int:
    """Wire the components together and run the session."""
    client = TranscriptionClient.from_config(cfg, on_retry=_print_retry)
    accumulator = SessionAccumulator(cfg.scratch_file, clipboard=Clipboard())
    orchestrator = Orchestrator(
        config=cfg,
        segmenter=segmenter,
        client=client,
        accumulator=accumulator,
    )
    return await orchestrator.run()


@app.command()
def run(
    volume: str | None = typer.Option(
        None, "--volume", "-v", help="Minimum volume threshold (default: 1%)"
    ),
    silence: float | None = typer.Option(
        None, "--silence", "-s", help="Minimum silence length in seconds (default: 1.5)"
    ),
    oneshot: bool = typer.Option(
        False, "--oneshot", "-o", help="Record and transcribe a single segment, then exit"
    ),
    duration: int | None = typer.Option(
        None, "--duration", "-d", help="Maximum segment duration in seconds (default: 0, unbounded)"
    ),
    token: str | None = typer.Option(
        None, "--token", "-t", help="OpenAI API token (default: $OPENAI_API_KEY)"
    ),
    path: Path | None = typer.Option(
        None, "--path", "-p", help="Existing directory to write the transcription file to"
    ),
    granularities: str | None = typer.Option(
        None, "--granularities", "-g", help="Timestamp granularities: none, segment or word"
    ),
    prompt: str | None = typer.Option(
        None, "--prompt", "-r", help="Prompt for the API call"
    ),
    language: str | None = typer.Option(
        None, "--language", "-l", help="Input language in ISO-639-1 format"
    ),
    file: Path | None = typer.Option(
        None, "--file", "-f", help="Transcribe this audio file instead of recording"
    ),
    translate: bool = typer.Option(
        False, "--translate", "-tr", help="Translate the transcribed text to English"
    ),
    pipe_to: str | None = typer.Option(
        None, "--pipe-to", "-p2", help="Pipe each transcription to this command (e.g. 'wc -m')"
    ),
    quiet: bool = typer.Option(
        False, "--quiet", "-q", help="Suppress the banner and settings"
    ),
    model: str | None = typer.Option(
        None, "--model", "-m", help="Transcription model (default: whisper-1)"
    ),
    config: Path | None = typer.Option(
        None, "--config", "-c", help="Path to configuration file"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", help="Enable verbose logging"
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show the version number",
    ),
) -> None:
    """Record speech, split it on silence and transcribe each segment."""
    _setup_logging(verbose)

    overrides = {
        "volume": volume,
        "silence_length": silence,
        "oneshot": oneshot or None,
        "duration": duration,
        "api_key": token,
        "output_dir": path,
        "granularities": granularities,
        "prompt": prompt,
        "language": language,
        "audio_file": file,
        "translate": translate or None,
        "pipe_to": pipe_to,
        "quiet": quiet or None,
        "model": model,
    }

    try:
        cfg = load_config(config, overrides=overrides)
        logger.debug("Config: %s", cfg)
    except ConfigError as e:
        logger.debug("Configuration error: %s", e)
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    segmenter = AudioSegmenter(
        volume=cfg.volume,
        silence_length=cfg.silence_length,
        duration=cfg.duration,
        work_dir=cfg.work_dir,
    )

    if cfg.audio_file is None:
        _display_settings(cfg)
        try:
            segmenter.ensure_available()
        except CaptureToolMissingError as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
    else:
        _display_file_settings(cfg)

    try:
        exit_code = asyncio.run(_serve(cfg, segmenter))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 0
    except Exception as e:
        logger.error("Unexpected error: %s", e, exc_info=True)
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    raise typer.Exit(exit_code)


if __name__ == "__main__":
    app()
