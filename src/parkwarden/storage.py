from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import msgpack


STORE_VERSION = 1
AUTOSAVE_INTERVAL_SEC = 5

DEFAULT_STORE: dict[str, Any] = {
    "meta": {"version": STORE_VERSION},
    "botdata": {
        "curdevhash": "",
        "lastdevhash": "",
        "curlauncherhash": "",
        "lastlauncherhash": "",
    },
    "access": {
        "user_tiers": {},
        "role_tiers": {
            "Trusted": 10,
            "Entrepreneur": 50,
            "Gatekeeper": 70,
            "Operator": 90,
        },
    },
    "logs": [],
}


class MessagePackStore:
    """Bot state on disk: build hashes, access tiers and the event log."""

    def __init__(self, path: Path, autosave_interval_sec: float = AUTOSAVE_INTERVAL_SEC) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.autosave_interval_sec = autosave_interval_sec
        self._lock = asyncio.Lock()
        self._dirty = False
        self.data: dict[str, Any] = {}

    async def load(self) -> None:
        async with self._lock:
            if not self.path.exists():
                self.data = _clone_defaults()
                await self._save_unlocked()
                return
            try:
                loaded = msgpack.unpackb(self.path.read_bytes(), raw=False)
            except (ValueError, msgpack.UnpackException) as exc:
                loaded = None
                aside = self.path.with_suffix(self.path.suffix + ".corrupt")
                self.path.replace(aside)
                print(f"[parkwarden] unreadable store moved to {aside}: {exc}")
            if not isinstance(loaded, dict):
                loaded = {}
            self.data = loaded
            _merge_defaults(self.data, _clone_defaults())
            self.data["meta"]["version"] = STORE_VERSION
            self._dirty = True

    def section(self, name: str) -> dict[str, Any]:
        return self.data.setdefault(name, {})

    async def autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.autosave_interval_sec)
            if self._dirty:
                await self.save()

    async def save(self) -> None:
        async with self._lock:
            await self._save_unlocked()

    async def _save_unlocked(self) -> None:
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_bytes(msgpack.packb(self.data, use_bin_type=True))
        tmp.replace(self.path)
        self._dirty = False

    def touch(self) -> None:
        self._dirty = True

    @property
    def dirty(self) -> bool:
        return self._dirty


def _merge_defaults(target: dict[str, Any], defaults: dict[str, Any]) -> None:
    for key, value in defaults.items():
        if key not in target:
            target[key] = value
        elif isinstance(value, dict) and isinstance(target[key], dict):
            _merge_defaults(target[key], value)


def _clone_defaults() -> dict[str, Any]:
    return msgpack.unpackb(msgpack.packb(DEFAULT_STORE, use_bin_type=True), raw=False)
