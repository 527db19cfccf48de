from __future__ import annotations

import random
from pathlib import Path

from parkwarden.config import Settings

AUTOSAVE_SUFFIXES = (".park", ".sv6", ".sv4")
SCENARIO_SUFFIXES = (".park", ".sv6", ".sc6", ".sv4", ".sc4")
ROTATED_PREFIX = "dsc_"


class ConfigReadError(RuntimeError):
    """A server's config.ini or one of its keys is missing."""


class ServerFilesService:
    """Filesystem view of the hosted servers: slot directories, config.ini, autosaves, scenarios."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def server_dir(self, slot: int) -> Path | None:
        """Slot 1 is the primary install; slot n lives in the first ``s{n}-*`` directory inside it."""
        if slot == 1:
            return self.settings.openrct2_dir
        if slot < 1 or not self.settings.openrct2_dir.is_dir():
            return None
        prefix = f"s{slot}-"
        for entry in sorted(self.settings.openrct2_dir.iterdir()):
            if entry.is_dir() and entry.name.startswith(prefix):
                return entry
        return None

    def read_config(self, server_dir: Path, key: str) -> str:
        config_path = server_dir / "config.ini"
        if not config_path.is_file():
            raise ConfigReadError(f"No config.ini found in {server_dir}.")
        for raw_line in config_path.read_text(encoding="utf-8", errors="replace").splitlines():
            line = raw_line.strip()
            if not line or line.startswith(("#", ";", "[")):
                continue
            if "=" not in line:
                continue
            name, value = line.split("=", 1)
            if name.strip() == key:
                return value.strip().strip('"')
        raise ConfigReadError(f"'{key}' is not set in {config_path}.")

    def port_for(self, server_dir: Path) -> str:
        port = self.read_config(server_dir, "default_port")
        if not port.isdigit():
            raise ConfigReadError(f"default_port in {server_dir} is not a number: {port!r}")
        return port

    def autosave_dir(self, server_dir: Path) -> Path:
        return server_dir / "save" / "autosave"

    def list_autosaves(self, server_dir: Path) -> list[Path]:
        """Autosaves newest first; rotated-out saves are not candidates."""
        directory = self.autosave_dir(server_dir)
        if not directory.is_dir():
            return []
        saves = [
            entry
            for entry in directory.iterdir()
            if entry.is_file()
            and entry.suffix.lower() in AUTOSAVE_SUFFIXES
            and not entry.name.startswith(ROTATED_PREFIX)
        ]
        return sorted(saves, key=lambda entry: entry.stat().st_mtime, reverse=True)

    def latest_autosave(self, server_dir: Path) -> Path | None:
        saves = self.list_autosaves(server_dir)
        return saves[0] if saves else None

    def autosave_count(self, server_dir: Path) -> int:
        return len(self.list_autosaves(server_dir))

    def rotate_latest_autosave(self, server_dir: Path) -> Path | None:
        """Rename the newest autosave aside so the next resume falls back to an older one.

        The last remaining autosave is never rotated. Returns the new path, or None when
        nothing was renamed.
        """
        saves = self.list_autosaves(server_dir)
        if len(saves) < 2:
            return None
        newest = saves[0]
        target = newest.with_name(f"{ROTATED_PREFIX}{newest.name}")
        newest.replace(target)
        return target

    def list_scenarios(self, search: str = "") -> list[str]:
        directory = self.settings.scenarios_dir
        if not directory.is_dir():
            return []
        names = sorted(
            entry.name
            for entry in directory.iterdir()
            if entry.is_file() and entry.suffix.lower() in SCENARIO_SUFFIXES
        )
        needle = search.strip().lower()
        if not needle:
            return names
        exact = [name for name in names if Path(name).stem.lower() == needle]
        if exact:
            return exact
        return [name for name in names if needle in Path(name).stem.lower()]

    def random_scenario(self) -> str | None:
        names = self.list_scenarios()
        return random.choice(names) if names else None
