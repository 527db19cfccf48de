from __future__ import annotations

import signal
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from parkwarden.config import Settings
from parkwarden.services.logger_service import LoggerService
from parkwarden.services.server_files import ServerFilesService

AUTOSAVE = "AUTOSAVE"
PRIMARY_SLOT = 1


@dataclass
class SlotProcess:
    slot: int
    process: Any
    server_dir: Path
    port: str
    headless: bool
    scenario: str


class ProcessManager:
    """Owns the slot -> game server process table.

    Servers are spawned in their own session so they outlive a bot restart. The table is
    in-memory only; a restarted bot starts with an empty table.
    """

    def __init__(self, settings: Settings, files: ServerFilesService, logger: LoggerService) -> None:
        self.settings = settings
        self.files = files
        self.logger = logger
        self._slots: dict[int, SlotProcess] = {}
        self._scenarios: dict[int, str] = {}

    def launch(self, scenario_ref: str, slot: int, server_dir: Path, headless: bool = False) -> str:
        port = self.files.port_for(server_dir)
        if scenario_ref == AUTOSAVE:
            autosave = self.files.latest_autosave(server_dir)
            if autosave is None:
                self.logger.log("process.no_autosave", slot=slot, server_dir=str(server_dir))
                return ""
            park_path = autosave
            loaded = autosave.stem
            scenario_name = ""
        else:
            park_path = self.settings.scenarios_dir / scenario_ref
            loaded = Path(scenario_ref).stem
            scenario_name = loaded

        args = [self.settings.openrct2_binary, "host", str(park_path), "--port", port]
        if slot != PRIMARY_SLOT:
            args += ["--user-data-path", str(server_dir)]
        if headless:
            args.append("--headless")

        self.stop(slot)
        process = self._spawn(args, server_dir)
        self._slots[slot] = SlotProcess(
            slot=slot,
            process=process,
            server_dir=server_dir,
            port=port,
            headless=headless,
            scenario=scenario_name,
        )
        if scenario_name:
            self._scenarios[slot] = scenario_name
        self.logger.log(
            "process.launch",
            slot=slot,
            pid=getattr(process, "pid", None),
            port=port,
            loaded=loaded,
            headless=headless,
        )
        return loaded

    def stop(self, slot: int) -> None:
        row = self._slots.pop(slot, None)
        if row is None:
            return
        try:
            row.process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            self.logger.log("process.already_gone", slot=slot, pid=getattr(row.process, "pid", None))
            return
        self.logger.log("process.stop", slot=slot, pid=getattr(row.process, "pid", None))

    def list_running(self) -> list[int]:
        return sorted(self._slots)

    def current_scenario(self, slot: int) -> str | None:
        return self._scenarios.get(slot) or None

    def describe(self, slot: int) -> SlotProcess | None:
        return self._slots.get(slot)

    def _spawn(self, args: list[str], cwd: Path) -> Any:
        return subprocess.Popen(
            args,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
