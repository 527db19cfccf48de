from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

from parkwarden.config import Settings
from parkwarden.services.status_service import StatusResult, StatusService, format_status

LISTED = [
    {"name": "GTW's Nostalgia Server", "ip": {"v4": ["10.0.0.5"]}, "port": 11753, "players": 1, "version": "0.4.5"},
    {"name": "GTW's Nostalgia Server #2", "ip": {"v4": ["10.0.0.5"]}, "port": 5000, "players": 4, "version": "0.4.5"},
    {"name": "Coaster Club", "ip": {"v4": ["192.0.2.9"]}, "port": 11753, "players": 0, "version": "0.4.4"},
    {"name": "No address", "ip": {}, "port": 1},
]


class StubStatusService(StatusService):
    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.fetches = 0

    async def _fetch_servers(self) -> list[dict[str, Any]]:
        self.fetches += 1
        return LISTED


def _make_settings(tmp_path: Path) -> Settings:
    return Settings(
        discord_token="token",
        command_prefix=",",
        store_path=tmp_path / "state.msgpack",
        openrct2_dir=tmp_path / "openrct2",
        scenarios_dir=tmp_path / "scenarios",
        openrct2_binary="openrct2",
        default_ip="10.0.0.5",
        alert_channel_id=1,
        main_channel_id=2,
        log_channel_id=0,
        dev_uri="https://example.invalid/develop/latest",
        launcher_uri="https://example.invalid/launcher",
        master_server_uri="https://example.invalid/servers",
        builds_dir=tmp_path / "builds",
        install_dir=tmp_path / "install",
    )


def test_match_by_host_and_port(tmp_path: Path) -> None:
    service = StubStatusService(_make_settings(tmp_path))

    result = asyncio.run(service.query_status(["10.0.0.5:5000", "10.0.0.5:6000"]))

    assert result.matches == ["10.0.0.5:5000"]
    assert [row["port"] for row in result.servers] == [5000]
    assert service.fetches == 1


def test_match_by_bare_ip_and_name(tmp_path: Path) -> None:
    service = StubStatusService(_make_settings(tmp_path))

    result = asyncio.run(service.query_status(["10.0.0.5", "coaster"]))

    assert result.matches == ["10.0.0.5", "coaster"]
    assert len(result.servers) == 3


def test_empty_batch_skips_the_request(tmp_path: Path) -> None:
    service = StubStatusService(_make_settings(tmp_path))

    result = asyncio.run(service.query_status([]))

    assert result == StatusResult()
    assert service.fetches == 0


def test_format_status_lists_misses() -> None:
    result = StatusResult(servers=[LISTED[0]], matches=["10.0.0.5:11753"])

    text = format_status(result, ["10.0.0.5:11753", "nowhere"])

    assert "*GTW's Nostalgia Server* is **UP**!" in text
    assert "There is 1 player on." in text
    assert "Could not find servers with '*nowhere*'" in text
    assert format_status(StatusResult(), ["x"]) == "**No servers found with given input!**"
