from __future__ import annotations

import asyncio
import tarfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable

import aiohttp

from parkwarden.config import Settings
from parkwarden.services.build_service import BuildFeedError, BuildService
from parkwarden.services.logger_service import LoggerService
from parkwarden.services.process_service import AUTOSAVE, ProcessManager
from parkwarden.services.server_files import ConfigReadError, ServerFilesService

CONFIRM_WINDOW_SEC = 15
DOWNLOAD_TIMEOUT_SEC = 15 * 60
DOWNLOAD_KIND = "linux"

Notify = Callable[[str], Awaitable[None]]


@dataclass
class InstallResult:
    ok: bool
    message: str
    restarted: tuple[int, ...] = ()


class InstallService:
    """Installs a new game build. While it runs, ``install_in_progress()`` holds the supervisor off."""

    def __init__(
        self,
        settings: Settings,
        processes: ProcessManager,
        files: ServerFilesService,
        builds: BuildService,
        logger: LoggerService,
    ) -> None:
        self.settings = settings
        self.processes = processes
        self.files = files
        self.builds = builds
        self.logger = logger
        self._installing = False
        self._confirm_until = 0.0

    def install_in_progress(self) -> bool:
        return self._installing

    def confirm(self) -> bool:
        """First call arms a short confirmation window and returns False; a call inside the window returns True."""
        now = time.monotonic()
        if now < self._confirm_until:
            self._confirm_until = 0.0
            return True
        self._confirm_until = now + CONFIRM_WINDOW_SEC
        return False

    def build_uri(self, build_ref: str) -> str:
        if build_ref in ("", "-l", "latest"):
            return self.settings.dev_uri
        return self.settings.dev_uri.replace("latest", build_ref)

    async def install(self, build_ref: str, progress: Notify, announce: Notify) -> InstallResult:
        if self._installing:
            return InstallResult(False, "Process running. Please wait.")
        self._installing = True
        running = self.processes.list_running()
        try:
            uri = self.build_uri(build_ref)
            try:
                link = await self.builds.download_link(DOWNLOAD_KIND, uri)
            except BuildFeedError as exc:
                self.logger.log("install.bad_build", build=build_ref, error=str(exc)[:300])
                return InstallResult(False, "Bad build hash. Confirm the hash on the downloads page.")
            if not link:
                return InstallResult(False, "Build for Linux not available. Check the downloads page.")
            await progress(f"Build found: *{link.rsplit('/', 1)[-1]}*")

            if running:
                await announce("We're updating our OpenRCT2 build soon! Please save your current progress then disconnect.")
                await asyncio.sleep(self.settings.install_grace_sec)
                await progress("Shutting down all servers...")
                for slot in running:
                    self.processes.stop(slot)

            self.settings.builds_dir.mkdir(parents=True, exist_ok=True)
            archive = self.settings.builds_dir / link.rsplit("/", 1)[-1]
            try:
                await progress("Downloading...")
                await self._download(link, archive)
                await progress("Installing...")
                extracted = await asyncio.to_thread(self._extract, archive, self.settings.install_dir)
            except (aiohttp.ClientError, asyncio.TimeoutError, tarfile.TarError, OSError, RuntimeError) as exc:
                self.logger.log("install.failed", build=build_ref, error=str(exc)[:300])
                restarted = await self._restart(running)
                return InstallResult(False, f"Install failed: {exc}", restarted)
            self.logger.log("install.extracted", archive=str(archive), files=extracted)

            restarted = await self._restart(running)
            if running:
                await progress("All servers restarted!")
                await announce("Our OpenRCT2 build has been installed! Check that you are on our version.")
            self.logger.log("install.done", build=build_ref, restarted=list(restarted))
            return InstallResult(True, "Build update successful!", restarted)
        finally:
            self._installing = False

    async def _restart(self, slots: list[int]) -> tuple[int, ...]:
        restarted: list[int] = []
        for slot in slots:
            server_dir = self.files.server_dir(slot)
            if server_dir is None:
                self.logger.log("install.restart_skipped", slot=slot, error="server directory missing")
                continue
            try:
                loaded = self.processes.launch(AUTOSAVE, slot, server_dir)
            except (ConfigReadError, OSError) as exc:
                self.logger.log("install.restart_failed", slot=slot, error=str(exc)[:300])
                continue
            if loaded:
                restarted.append(slot)
        return tuple(restarted)

    async def _download(self, url: str, target: Path) -> None:
        timeout = aiohttp.ClientTimeout(total=DOWNLOAD_TIMEOUT_SEC)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                if response.status >= 400:
                    raise RuntimeError(f"HTTP {response.status} downloading {url}")
                with target.open("wb") as handle:
                    async for chunk in response.content.iter_chunked(64 * 1024):
                        handle.write(chunk)

    def _extract(self, archive: Path, destination: Path) -> int:
        with tarfile.open(archive, "r:*") as bundle:
            members = [member for member in bundle.getmembers() if member.isfile()]
            bundle.extractall(destination, filter="data")
        return len(members)
