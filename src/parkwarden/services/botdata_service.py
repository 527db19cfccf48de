from __future__ import annotations

from parkwarden.storage import MessagePackStore


class BotDataService:
    """Flat key/value memory that survives bot restarts (last seen build hashes and the like)."""

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store

    def read(self, key: str) -> str:
        return str(self.store.section("botdata").get(key, "") or "")

    def write(self, key: str, value: str) -> None:
        self.store.section("botdata")[key] = str(value)
        self.store.touch()

    def all(self) -> dict[str, str]:
        return {str(k): str(v) for k, v in self.store.section("botdata").items()}
