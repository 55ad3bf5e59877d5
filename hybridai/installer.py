import asyncio
import logging
import subprocess
import sys
import webbrowser
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

from .errors import (
    InstallationFailed,
    InstallationUnverified,
    ManualInstallRequired,
    UnsupportedPlatform,
)


logger = logging.getLogger("uvicorn.error")

INSTALL_SCRIPT_COMMAND = ["sh", "-c", "curl -fsSL https://ollama.com/install.sh | sh"]
DOWNLOAD_PAGES = {
    "darwin": "https://ollama.com/download/mac",
    "win32": "https://ollama.com/download/windows",
}
# Order matters: the first marker found in a line wins.
PROGRESS_MARKERS = (
    ("Downloading", "Downloading Ollama..."),
    ("Installing", "Installing Ollama..."),
    ("Starting", "Starting the Ollama service..."),
)


def progress_message_for(line: str) -> Optional[str]:
    for marker, message in PROGRESS_MARKERS:
        if marker in line:
            return message
    return None


class OllamaInstaller:
    def __init__(
        self,
        *,
        check_installed: Callable[[], Awaitable[bool]],
        platform: Optional[str] = None,
        install_command: Optional[Sequence[str]] = None,
        settle_delay_s: float = 2.0,
        retry_delay_s: float = 3.0,
        open_url: Callable[[str], object] = webbrowser.open,
    ) -> None:
        self.check_installed = check_installed
        self.platform = platform or sys.platform
        self.install_command: List[str] = list(install_command or INSTALL_SCRIPT_COMMAND)
        self.settle_delay_s = settle_delay_s
        self.retry_delay_s = retry_delay_s
        self.open_url = open_url

    async def install(self) -> AsyncIterator[str]:
        """Install Ollama, yielding coarse human-readable progress messages."""
        if self.platform.startswith("linux"):
            async with aclosing(self._install_with_script()) as messages:
                async for message in messages:
                    yield message
            return
        url = DOWNLOAD_PAGES.get(self.platform)
        if url is None:
            logger.error("[Ollama] Unsupported platform for auto-install: %s", self.platform)
            raise UnsupportedPlatform(self.platform)
        yield "Opening the download page..."
        logger.info("[Ollama] Opening download page %s", url)
        self.open_url(url)
        raise ManualInstallRequired(url)

    async def _install_with_script(self) -> AsyncIterator[str]:
        yield "Downloading the installation script..."
        logger.info("[Ollama] Installing on Linux...")
        try:
            proc = await asyncio.create_subprocess_exec(
                *self.install_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
            )
        except OSError as exc:
            logger.error("[Ollama] Installation process error: %s", exc)
            raise InstallationFailed(f"Installation failed: {exc}") from exc

        try:
            if proc.stdout is not None:
                async for raw in proc.stdout:
                    line = raw.decode("utf-8", errors="replace").rstrip()
                    logger.info("[Ollama Install] %s", line)
                    message = progress_message_for(line)
                    if message:
                        yield message
            code = await proc.wait()
        finally:
            if proc.returncode is None:
                logger.warning("[Ollama] Installation interrupted, stopping installer process")
                try:
                    proc.terminate()
                except ProcessLookupError:
                    pass
                await proc.wait()

        if code != 0:
            logger.error("[Ollama] Installation failed with code %s", code)
            raise InstallationFailed(f"Installation failed with code {code}", exit_code=code)

        logger.info("[Ollama] Installation completed successfully")
        yield "Installation complete"
        await asyncio.sleep(self.settle_delay_s)
        if await self.check_installed():
            logger.info("[Ollama] Installation verified")
            return
        logger.warning("[Ollama] Installation completed but binary not found, retrying check...")
        await asyncio.sleep(self.retry_delay_s)
        if await self.check_installed():
            logger.info("[Ollama] Installation verified on retry")
            return
        raise InstallationUnverified()
