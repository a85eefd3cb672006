"""Copy text to the system clipboard through a platform helper binary."""

import asyncio
import logging
import os
import shutil
import subprocess
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


class ClipboardError(Exception):
    """Base exception for clipboard failures."""

    pass


class CommandNotFoundError(ClipboardError):
    """No clipboard helper (pbcopy/wl-copy/xclip/xsel) available."""

    pass


class Clipboard:
    """Pipes text into pbcopy, wl-copy, xclip or xsel.

    The helper is picked from the platform and display server; the first
    one found on PATH wins.
    """

    def __init__(
        self,
        platform: str | None = None,
        env: dict[str, str] | None = None,
        timeout: float = 5.0,
    ):
        self.platform = platform or sys.platform
        self.env = env if env is not None else dict(os.environ)
        self.timeout = timeout
        self._binary_cache: dict[str, Path] = {}

    def candidates(self) -> list[list[str]]:
        """Helper commands to try, in order of preference."""
        if self.platform == "darwin":
            return [["pbcopy"]]
        if self.platform.startswith("win"):
            return [["clip"]]

        commands = []
        if self.env.get("WAYLAND_DISPLAY"):
            commands.append(["wl-copy"])
        commands.append(["xclip", "-selection", "clipboard"])
        commands.append(["xsel", "--clipboard", "--input"])
        return commands

    def _resolve_command(self) -> list[str]:
        """Return the first available helper command.

        Raises:
            CommandNotFoundError: If none of the candidates is on PATH
        """
        names = []
        for cmd in self.candidates():
            name = cmd[0]
            names.append(name)
            if name in self._binary_cache:
                return [str(self._binary_cache[name]), *cmd[1:]]
            binary_path = shutil.which(name)
            if binary_path:
                resolved = Path(binary_path)
                self._binary_cache[name] = resolved
                logger.debug("Validated binary: %s -> %s", name, resolved)
                return [str(resolved), *cmd[1:]]

        raise CommandNotFoundError(
            f"No clipboard helper found in PATH (tried: {', '.join(names)})"
        )

    async def copy(self, text: str) -> None:
        """Copy text to the clipboard.

        The helper runs in the default executor so the event loop is not
        blocked while it reads stdin.

        Raises:
            CommandNotFoundError: If no helper binary is available
            ClipboardError: If the helper times out or exits non-zero
        """
        cmd = self._resolve_command()
        logger.debug("Copying %d characters via %s", len(text), cmd[0])

        loop = asyncio.get_running_loop()

        def _run_clipboard():
            return subprocess.run(
                cmd,
                input=text.encode("utf-8"),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
            )

        try:
            result = await loop.run_in_executor(None, _run_clipboard)
        except subprocess.TimeoutExpired as e:
            raise ClipboardError(f"{cmd[0]} timed out after {self.timeout}s") from e
        except OSError as e:
            raise ClipboardError(f"{cmd[0]} could not be started: {e}") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace") if result.stderr else ""
            raise ClipboardError(
                f"{cmd[0]} failed with exit code {result.returncode}. stderr: {stderr}"
            )

        logger.debug("Clipboard copy succeeded")
