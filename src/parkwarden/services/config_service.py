from __future__ import annotations

import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from parkwarden.config import Settings
from parkwarden.services.server_files import ConfigReadError, ServerFilesService

# Editable config.ini keys, each with the section OpenRCT2 keeps it in.
CONFIG_KEYS: dict[str, str] = {
    "autosave": "general",
    "debugging_tools": "general",
    "test_unfinished_tracks": "general",
    "last_run_version": "general",
    "player_name": "network",
    "default_port": "network",
    "default_password": "network",
    "advertise": "network",
    "maxplayers": "network",
    "server_name": "network",
    "server_description": "network",
    "provider_name": "network",
    "provider_email": "network",
    "provider_website": "network",
    "known_keys_only": "network",
    "log_chat": "network",
    "log_server_actions": "network",
}
BOOL_KEYS = frozenset(
    {"debugging_tools", "test_unfinished_tracks", "advertise", "known_keys_only", "log_chat", "log_server_actions"}
)
INT_RANGES: dict[str, tuple[int, int]] = {
    "autosave": (0, 5),
    "default_port": (1025, 48000),
    "maxplayers": (1, 255),
}
AUTOSAVE_LABELS = (
    "every minute",
    "every 5 minutes",
    "every 15 minutes",
    "every half hour",
    "every hour",
    "never",
)
TEMPLATE_FILES = ("config.ini", "groups.json", "users.json")
_BOOL_VALUES = {"t": "true", "true": "true", "f": "false", "false": "false"}
_QUOTED_RE = re.compile(r"""^(['"])(.+?)\1\s*(.*)$""")


class ConfigValueError(ValueError):
    """A value that config.ini would not accept for that key."""


@dataclass(frozen=True)
class ServerDir:
    slot: int
    path: Path
    created: bool = False


def setting_label(key: str) -> str:
    return " ".join(word.capitalize() for word in key.split("_"))


def split_setting(text: str) -> tuple[str, str]:
    """``'server name' My Park`` or ``maxplayers 16`` -> (setting search, value)."""
    text = text.strip()
    quoted = _QUOTED_RE.match(text)
    if quoted:
        return quoted.group(2).strip(), quoted.group(3).strip()
    search, _, value = text.partition(" ")
    return search, value.strip()


def resolve_key(search: str) -> str | None:
    needle = "_".join(search.lower().split())
    if not needle:
        return None
    if needle in CONFIG_KEYS:
        return needle
    return next((key for key in CONFIG_KEYS if needle in key), None)


def normalize_value(key: str, value: str) -> str:
    value = value.strip()
    if not value:
        raise ConfigValueError("You must enter the new value to set.")
    if key in BOOL_KEYS:
        normalized = _BOOL_VALUES.get(value.lower())
        if normalized is None:
            raise ConfigValueError("You must enter either 'true' or 'false'.")
        return normalized
    if key in INT_RANGES:
        low, high = INT_RANGES[key]
        if not value.isdigit() or not low <= int(value) <= high:
            raise ConfigValueError(f"You must enter a value between {low}-{high}.")
        return str(int(value))
    if '"' in value or "\n" in value:
        raise ConfigValueError("Values cannot contain double quotes or line breaks.")
    return value


class ServerConfigService:
    """Reads and edits the whitelisted keys of a server's config.ini, and creates slot folders."""

    def __init__(self, settings: Settings, files: ServerFilesService) -> None:
        self.settings = settings
        self.files = files

    def ensure_server_dir(self, slot: int) -> ServerDir:
        existing = self.files.server_dir(slot)
        if existing is not None:
            return ServerDir(slot, existing)
        if slot < 2:
            raise ConfigReadError(f"Invalid server number: {slot}.")
        path = self.settings.openrct2_dir / f"s{slot}-Server{slot}"
        (path / "save").mkdir(parents=True)
        resources = self.settings.resources_dir
        for name in TEMPLATE_FILES:
            template = resources / name if resources is not None else None
            if template is not None and template.is_file():
                shutil.copyfile(template, path / name)
        if not (path / "config.ini").exists():
            (path / "config.ini").write_text("[general]\n\n[network]\n", encoding="utf-8")
        return ServerDir(slot, path, created=True)

    def show(self, server_dir: Path) -> list[tuple[str, str]]:
        values: list[tuple[str, str]] = []
        for key in CONFIG_KEYS:
            try:
                values.append((key, self.files.read_config(server_dir, key)))
            except ConfigReadError:
                continue
        return values

    def set_value(self, server_dir: Path, key: str, value: str) -> str:
        """Validate and write one key. Returns the value as written (unquoted)."""
        if key not in CONFIG_KEYS:
            raise ConfigValueError(f"'{key}' is not an editable setting.")
        normalized = normalize_value(key, value)
        config_path = server_dir / "config.ini"
        if not config_path.is_file():
            raise ConfigReadError(f"No config.ini found in {server_dir}.")
        rendered = normalized if key in BOOL_KEYS or key in INT_RANGES else f'"{normalized}"'
        lines = config_path.read_text(encoding="utf-8", errors="replace").splitlines()
        _replace_or_insert(lines, CONFIG_KEYS[key], key, f"{key} = {rendered}")
        tmp = config_path.with_suffix(".ini.tmp")
        tmp.write_text("\n".join(lines) + "\n", encoding="utf-8")
        tmp.replace(config_path)
        return normalized


def format_config(slot: int, values: list[tuple[str, str]]) -> str:
    if not values:
        return f"Server #{slot} config.ini has none of the editable settings yet."
    rows = []
    for key, value in values:
        row = f"**{setting_label(key)}** = {value}"
        if key == "autosave" and value.isdigit() and int(value) < len(AUTOSAVE_LABELS):
            row = f"{row} ({AUTOSAVE_LABELS[int(value)]})"
        rows.append(row)
    return f"Server #{slot} config.ini:\n\n" + "\n".join(rows)


def _replace_or_insert(lines: list[str], section: str, key: str, new_line: str) -> None:
    current_section = ""
    section_end: int | None = None
    for index, raw_line in enumerate(lines):
        line = raw_line.strip()
        if line.startswith("[") and line.endswith("]"):
            if current_section == section and section_end is None:
                section_end = index
            current_section = line[1:-1].strip()
            continue
        if "=" in line and line.split("=", 1)[0].strip() == key:
            lines[index] = new_line
            return
    if current_section == section and section_end is None:
        section_end = len(lines)
    if section_end is None:
        lines.extend([f"[{section}]", new_line])
        return
    insert_at = section_end
    while insert_at > 0 and not lines[insert_at - 1].strip():
        insert_at -= 1
    lines.insert(insert_at, new_line)
