"""Pipe transcribed text through an operator-supplied shell command."""

import asyncio
import logging

logger = logging.getLogger(__name__)


class PipeCommandError(RuntimeError):
    """Pipe command failed to run or exited non-zero."""

    pass


async def run_pipe_command(command: str, text: str, timeout: float = 30.0) -> str:
    """Feed ``text`` plus a newline to ``command`` on stdin and return its stdout.

    The command runs through the shell, so pipelines such as ``wc -m`` or
    ``tr a-z A-Z | tee out.txt`` work as typed.

    Raises:
        PipeCommandError: On spawn failure, timeout or non-zero exit
    """
    logger.debug("Executing pipe command: %s", command)
    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise PipeCommandError(f"Cannot start '{command}': {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate((text + "\n").encode("utf-8")),
            timeout=timeout,
        )
    except asyncio.TimeoutError as e:
        proc.kill()
        await proc.wait()
        raise PipeCommandError(f"'{command}' timed out after {timeout}s") from e

    if proc.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip() if stderr else ""
        raise PipeCommandError(
            f"'{command}' failed with exit code {proc.returncode}: {detail}"
        )

    return stdout.decode("utf-8", errors="replace")
