from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Protocol

from parkwarden.config import Settings
from parkwarden.services.botdata_service import BotDataService
from parkwarden.services.build_service import FEEDS, BuildFeedError, BuildService
from parkwarden.services.logger_service import LoggerService
from parkwarden.services.process_service import AUTOSAVE, PRIMARY_SLOT, ProcessManager
from parkwarden.services.server_files import ConfigReadError, ServerFilesService
from parkwarden.services.status_service import StatusQueryError, StatusService

SUSPECT_LIMIT = 2
ESCALATION_COUNT = 3

HEALTHY = "HEALTHY"
SUSPECT = "SUSPECT"
ESCALATED = "ESCALATED"

AlertSender = Callable[[str], Awaitable[None]]


class InstallGate(Protocol):
    def install_in_progress(self) -> bool: ...


@dataclass
class CheckerReply:
    ok: bool
    message: str


class RepeatingTask:
    """Sleep, tick, repeat. Ticks of one task never overlap.

    ``stop()`` cancels a sleeping task right away; a tick already running is left to
    finish and the loop exits afterwards.
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        tick: Callable[[], Awaitable[object]],
        logger: LoggerService,
    ) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self._tick = tick
        self._logger = logger
        self._task: asyncio.Task | None = None
        self._stopped = False
        self._in_tick = False
        self.ticks = 0

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name=self.name)

    @property
    def active(self) -> bool:
        return not self._stopped and self._task is not None and not self._task.done()

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None and not self._in_tick:
            self._task.cancel()

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval_sec)
            if self._stopped:
                break
            self._in_tick = True
            try:
                await self._tick()
            except Exception as exc:  # noqa: BLE001
                self._logger.log("checker.tick_failed", checker=self.name, error=str(exc)[:300])
            finally:
                self._in_tick = False
                self.ticks += 1


def format_interval(interval_sec: int) -> str:
    if interval_sec % 3600 == 0:
        hours = interval_sec // 3600
        return "every hour" if hours == 1 else f"every {hours} hours"
    if interval_sec % 60 == 0:
        minutes = interval_sec // 60
        return "every minute" if minutes == 1 else f"every {minutes} minutes"
    return "every second" if interval_sec == 1 else f"every {interval_sec} seconds"


class SupervisorService:
    """Interval checkers: new-build watchers and the self-healing server watcher."""

    def __init__(
        self,
        settings: Settings,
        processes: ProcessManager,
        files: ServerFilesService,
        status: StatusService,
        builds: BuildService,
        botdata: BotDataService,
        installer: InstallGate,
        logger: LoggerService,
        alert: AlertSender,
    ) -> None:
        self.settings = settings
        self.processes = processes
        self.files = files
        self.status = status
        self.builds = builds
        self.botdata = botdata
        self.installer = installer
        self.logger = logger
        self.alert = alert
        self._build_checkers: dict[str, RepeatingTask] = {}
        self._server_checker: RepeatingTask | None = None
        self._watched: list[int] = []
        self._down_counts: dict[int, int] = {}

    # Build checkers

    def start_build_checker(self, tag: str, interval_sec: int | None = None) -> CheckerReply:
        feed = FEEDS[tag]
        if tag in self._build_checkers:
            return CheckerReply(False, f"I'm already checking for {feed.label}.")
        interval = interval_sec or self.settings.checker_interval_sec
        checker = RepeatingTask(f"build-checker-{tag}", interval, lambda: self.run_build_check_once(tag), self.logger)
        self._build_checkers[tag] = checker
        checker.start()
        self.logger.log("supervisor.build_checker_started", feed=tag, interval_sec=interval)
        return CheckerReply(True, f"Checking for {feed.label} {format_interval(interval)}.")

    def stop_build_checker(self, tag: str) -> CheckerReply:
        feed = FEEDS[tag]
        checker = self._build_checkers.pop(tag, None)
        if checker is None:
            return CheckerReply(False, f"I am not currently checking for {feed.label}.")
        checker.stop()
        self.logger.log("supervisor.build_checker_stopped", feed=tag)
        return CheckerReply(True, f"Stopped checking for {feed.label}.")

    async def run_build_check_once(self, tag: str) -> bool:
        """Returns True when a new build was recorded and announced."""
        feed = FEEDS[tag]
        try:
            latest = await self.builds.fetch_hash(tag)
        except BuildFeedError as exc:
            self.logger.log("supervisor.build_fetch_failed", feed=tag, error=str(exc)[:300])
            return False
        current = self.botdata.read(feed.current_key)
        if latest == current:
            return False
        self.botdata.write(feed.previous_key, current)
        self.botdata.write(feed.current_key, latest)
        try:
            details = await self.builds.fetch_details(tag)
        except BuildFeedError as exc:
            self.logger.log("supervisor.build_details_failed", feed=tag, error=str(exc)[:300])
            details = ""
        uri = self.builds.feed_uri(tag)
        body = f"{details}\n{uri}" if details else uri
        await self.alert(f"*BREAKING NEWS*\nThere's a **{feed.headline}**!\n\n{body}")
        self.logger.log("supervisor.new_build", feed=tag, previous=current, latest=latest)
        return True

    # Server health checker

    def start_server_checker(self, slot: int, interval_sec: int | None = None) -> CheckerReply:
        if slot < PRIMARY_SLOT:
            return CheckerReply(False, f"Invalid server number: {slot}.")
        if slot != PRIMARY_SLOT and self.files.server_dir(slot) is None:
            return CheckerReply(
                False,
                f"Server #{slot} folder doesn't exist. You can make one using the 'config' command.",
            )
        if slot in self._watched:
            return CheckerReply(False, f"I'm already checking for Server #{slot}.")
        self._watched.append(slot)
        self._down_counts[slot] = 0
        if self._server_checker is None:
            interval = interval_sec or self.settings.checker_interval_sec
            self._server_checker = RepeatingTask("server-checker", interval, self.run_server_check_once, self.logger)
            self._server_checker.start()
        in_use = self._server_checker.interval_sec
        self.logger.log(
            "supervisor.server_checker_started", slot=slot, watched=list(self._watched), interval_sec=in_use
        )
        message = f"I'm now monitoring the status of Server #{slot} {format_interval(in_use)}."
        if interval_sec and interval_sec != in_use:
            message += " All watched servers share one checker, so the requested interval was not applied."
        return CheckerReply(True, message)

    def stop_server_checker(self, slot: int) -> CheckerReply:
        if slot not in self._watched:
            return CheckerReply(False, f"I am not checking for Server #{slot}.")
        self._watched.remove(slot)
        self._down_counts.pop(slot, None)
        if not self._watched and self._server_checker is not None:
            self._server_checker.stop()
            self._server_checker = None
        self.logger.log("supervisor.server_checker_stopped", slot=slot, watched=list(self._watched))
        return CheckerReply(True, f"Stopped checking for status of Server #{slot}.")

    async def run_server_check_once(self) -> dict[str, list[int]]:
        summary: dict[str, list[int]] = {"healthy": [], "restarted": [], "escalated": [], "suppressed": []}
        if self.installer.install_in_progress():
            self.logger.log("supervisor.tick_skipped", reason="install_in_progress")
            return summary
        targets: dict[str, tuple[int, Path]] = {}
        for slot in list(self._watched):
            server_dir = self.files.server_dir(slot)
            if server_dir is None:
                self.logger.log("supervisor.slot_unresolved", slot=slot, error="server directory missing")
                continue
            try:
                port = self.files.port_for(server_dir)
            except ConfigReadError as exc:
                self.logger.log("supervisor.slot_unresolved", slot=slot, error=str(exc)[:300])
                continue
            targets[f"{self.settings.default_ip}:{port}"] = (slot, server_dir)
        if not targets:
            return summary
        try:
            result = await self.status.query_status(list(targets))
        except StatusQueryError as exc:
            self.logger.log("supervisor.status_query_failed", error=str(exc)[:300])
            return summary
        matched = set(result.matches)
        for address, (slot, server_dir) in targets.items():
            if slot not in self._watched:
                continue
            if address in matched:
                self._down_counts[slot] = 0
                summary["healthy"].append(slot)
                continue
            outcome = await self._handle_down(slot, server_dir)
            summary[outcome].append(slot)
        return summary

    def failure_count(self, slot: int) -> int:
        return self._down_counts.get(slot, 0)

    def health_state(self, slot: int) -> str:
        count = self.failure_count(slot)
        if count == 0:
            return HEALTHY
        if count <= SUSPECT_LIMIT:
            return SUSPECT
        return ESCALATED

    def watched_slots(self) -> list[int]:
        return list(self._watched)

    def active_build_checkers(self) -> list[str]:
        return sorted(self._build_checkers)

    @property
    def server_checker_active(self) -> bool:
        return self._server_checker is not None

    def shutdown(self) -> None:
        """Stop every checker. Game servers keep running; they are detached from the bot."""
        for tag in list(self._build_checkers):
            self.stop_build_checker(tag)
        for slot in list(self._watched):
            self.stop_server_checker(slot)

    async def _handle_down(self, slot: int, server_dir: Path) -> str:
        # An install may have started while the status query was in flight.
        if self.installer.install_in_progress():
            self.logger.log("supervisor.restart_skipped", slot=slot, reason="install_in_progress")
            return "suppressed"
        count = self._down_counts.get(slot, 0) + 1
        self._down_counts[slot] = count
        self.logger.log("supervisor.server_down", slot=slot, consecutive=count)
        if count > ESCALATION_COUNT:
            return "suppressed"
        escalate = count == ESCALATION_COUNT
        relaunched = await self._relaunch(slot, server_dir, rotate=escalate)
        if escalate:
            if relaunched:
                await self.alert(f"Server #{slot} is not working properly, changing autosaves.")
            else:
                await self.alert(
                    f"Server #{slot} is not working properly and could not be restarted from an older autosave."
                )
            return "escalated"
        if relaunched:
            await self.alert(f"Hmm... Server #{slot} appears to be down, restarting!")
        else:
            await self.alert(f"Server #{slot} appears to be down and the restart failed.")
        return "restarted"

    async def _relaunch(self, slot: int, server_dir: Path, *, rotate: bool) -> bool:
        """Returns True when a server process was started again."""
        previous = self.processes.describe(slot)
        headless = bool(previous.headless) if previous is not None else False
        self.processes.stop(slot)
        if rotate:
            rotated = self.files.rotate_latest_autosave(server_dir)
            self.logger.log("supervisor.autosave_rotated", slot=slot, rotated=str(rotated) if rotated else "")
        try:
            loaded = self.processes.launch(AUTOSAVE, slot, server_dir, headless)
        except (ConfigReadError, OSError) as exc:
            self.logger.log("supervisor.relaunch_failed", slot=slot, error=str(exc)[:300])
            return False
        if not loaded:
            self.logger.log("supervisor.relaunch_no_autosave", slot=slot)
            return False
        return True
