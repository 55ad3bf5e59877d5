import asyncio
import logging
import subprocess
from typing import AsyncIterator, List, Optional

import httpx

from .errors import DeleteFailure, ListFailure, NotInstalled, PullFailure, StartTimeout
from .installer import OllamaInstaller
from .progress import decode_progress_stream
from .schemas import InferenceServerStatus, LocalModel, PullProgressEvent


logger = logging.getLogger("uvicorn.error")

_VERSION_TIMEOUT_S = 10.0


def _status_text(response: httpx.Response) -> str:
    return response.reason_phrase or str(response.status_code)


class OllamaSupervisor:
    """Owns the local Ollama server process and its HTTP API.

    The child process handle never leaves this object; every lifecycle
    transition goes through ``start``/``stop``/``ensure_running``/``aclose``.
    """

    def __init__(
        self,
        *,
        host: str = "127.0.0.1",
        port: int = 11434,
        binary: str = "ollama",
        health_timeout_s: float = 2.0,
        list_timeout_s: float = 5.0,
        start_poll_interval_s: float = 0.5,
        start_max_attempts: int = 20,
        shutdown_grace_s: float = 5.0,
        installer: Optional[OllamaInstaller] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.base_url = f"http://{host}:{port}"
        self.binary = binary
        self.health_timeout_s = health_timeout_s
        self.list_timeout_s = list_timeout_s
        self.start_poll_interval_s = start_poll_interval_s
        self.start_max_attempts = start_max_attempts
        self.shutdown_grace_s = shutdown_grace_s
        self.client = httpx.AsyncClient(timeout=None)
        self.installer = installer or OllamaInstaller(check_installed=self.check_installed)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._spawn_lock = asyncio.Lock()
        self._background: List[asyncio.Task] = []

    @property
    def has_process(self) -> bool:
        return self._process is not None

    async def _read_version(self) -> Optional[str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.binary,
                "--version",
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError:
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=_VERSION_TIMEOUT_S)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="replace").strip()

    async def check_installed(self) -> bool:
        version = await self._read_version()
        if version is None:
            logger.warning("[Ollama] Not found")
            return False
        logger.info("[Ollama] Installed: %s", version)
        return True

    async def get_version(self) -> Optional[str]:
        return await self._read_version()

    async def is_running(self) -> bool:
        try:
            resp = await self.client.get(f"{self.base_url}/api/tags", timeout=self.health_timeout_s)
        except httpx.HTTPError:
            return False
        return resp.is_success

    async def get_status(self) -> InferenceServerStatus:
        installed = await self.check_installed()
        if not installed:
            return InferenceServerStatus(installed=False, running=False)
        version = await self.get_version()
        running = await self.is_running()
        return InferenceServerStatus(installed=True, running=running, version=version)

    async def _spawn(self) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            self.binary,
            "serve",
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )

    def _track(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.append(task)
        task.add_done_callback(lambda t: self._background.remove(t) if t in self._background else None)

    async def _drain(self, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        async for raw in stream:
            logger.debug("[Ollama serve] %s", raw.decode("utf-8", errors="replace").rstrip())

    async def _watch_exit(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        logger.info("[Ollama] Process exited with code %s", code)
        if self._process is proc:
            self._process = None

    async def _start_locked(self) -> None:
        if self._process is not None:
            logger.warning("[Ollama] Process already running")
            return
        if not await self.check_installed():
            raise NotInstalled()

        logger.info("[Ollama] Starting server...")
        proc = await self._spawn()
        self._process = proc
        self._track(self._drain(getattr(proc, "stdout", None)))
        self._track(self._drain(getattr(proc, "stderr", None)))
        self._track(self._watch_exit(proc))

        for _ in range(self.start_max_attempts):
            await asyncio.sleep(self.start_poll_interval_s)
            if await self.is_running():
                logger.info("[Ollama] Server started successfully")
                return
        # The process is left running; the caller decides whether to stop it.
        raise StartTimeout()

    async def start(self) -> None:
        async with self._spawn_lock:
            await self._start_locked()

    async def stop(self) -> None:
        proc = self._process
        if proc is None:
            logger.warning("[Ollama] No process to stop")
            return
        logger.info("[Ollama] Stopping server...")
        self._process = None
        try:
            proc.terminate()
        except ProcessLookupError:
            pass

    async def ensure_running(self) -> None:
        async with self._spawn_lock:
            if await self.is_running():
                return
            await self._start_locked()

    async def list_models(self) -> List[LocalModel]:
        try:
            resp = await self.client.get(f"{self.base_url}/api/tags", timeout=self.list_timeout_s)
        except httpx.HTTPError as exc:
            logger.error("[Ollama] Failed to list models: %s", exc)
            raise ListFailure(f"Failed to list models: {exc}") from exc
        if not resp.is_success:
            logger.error("[Ollama] Failed to list models: HTTP %s", resp.status_code)
            raise ListFailure(f"Failed to list models: {_status_text(resp)}", resp.status_code)
        data = resp.json() or {}
        return [LocalModel.model_validate(item) for item in data.get("models") or []]

    async def pull_model(self, model_name: str) -> AsyncIterator[PullProgressEvent]:
        """Stream pull progress; exhausted once the server closes the stream."""
        try:
            async with self.client.stream(
                "POST",
                f"{self.base_url}/api/pull",
                json={"name": model_name},
                timeout=None,
            ) as resp:
                if not resp.is_success:
                    logger.error("[Ollama] Failed to pull model %s: HTTP %s", model_name, resp.status_code)
                    raise PullFailure(f"Failed to pull model: {_status_text(resp)}", resp.status_code)
                async for event in decode_progress_stream(resp.aiter_bytes()):
                    if event.error:
                        # Ollama reports some failures inside a 200 stream.
                        logger.error("[Ollama] Failed to pull model %s: %s", model_name, event.error)
                        raise PullFailure(f"Failed to pull model: {event.error}", resp.status_code)
                    logger.debug("[Ollama] Pull progress: %s", event.status)
                    yield event
        except httpx.HTTPError as exc:
            logger.error("[Ollama] Failed to pull model %s: %s", model_name, exc)
            raise PullFailure(f"Failed to pull model: {exc}") from exc
        logger.info("[Ollama] Model %s pulled successfully", model_name)

    async def delete_model(self, model_name: str) -> None:
        try:
            resp = await self.client.request(
                "DELETE",
                f"{self.base_url}/api/delete",
                json={"name": model_name},
            )
        except httpx.HTTPError as exc:
            logger.error("[Ollama] Failed to delete model %s: %s", model_name, exc)
            raise DeleteFailure(f"Failed to delete model: {exc}") from exc
        if not resp.is_success:
            logger.error("[Ollama] Failed to delete model %s: HTTP %s", model_name, resp.status_code)
            raise DeleteFailure(f"Failed to delete model: {_status_text(resp)}", resp.status_code)
        logger.info("[Ollama] Model %s deleted successfully", model_name)

    def auto_install(self) -> AsyncIterator[str]:
        return self.installer.install()

    async def aclose(self) -> None:
        proc = self._process
        self._process = None
        if proc is not None and proc.returncode is None:
            logger.info("[Ollama] Shutting down server...")
            try:
                proc.terminate()
                await asyncio.wait_for(proc.wait(), timeout=self.shutdown_grace_s)
            except asyncio.TimeoutError:
                logger.warning("[Ollama] Server did not exit within %.1fs, killing", self.shutdown_grace_s)
                proc.kill()
                await proc.wait()
            except ProcessLookupError:
                pass
        background = list(self._background)
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        if not self.client.is_closed:
            await self.client.aclose()
