from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import Any

import aiohttp

from parkwarden.config import Settings

REQUEST_TIMEOUT_SEC = 30


class StatusQueryError(RuntimeError):
    """The master server list could not be fetched or decoded."""


@dataclass
class StatusResult:
    servers: list[dict[str, Any]] = field(default_factory=list)
    matches: list[str] = field(default_factory=list)


class StatusService:
    """Looks servers up in the public master server list."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def query_status(self, inputs: list[str]) -> StatusResult:
        """Match each input against the list by IPv4, ``ip:port``, or a name substring.

        One request covers the whole batch. An empty batch returns an empty result
        without touching the network.
        """
        queries = [str(item).strip().lower() for item in inputs if str(item).strip()]
        if not queries:
            return StatusResult()
        listed = await self._fetch_servers()
        result = StatusResult()
        for server in listed:
            ipv4 = _server_ipv4(server)
            address = f"{ipv4}:{server.get('port', '')}" if ipv4 else ""
            name = str(server.get("name", "")).lower()
            if ipv4 and ipv4 in queries:
                hit = ipv4
            elif address and address in queries:
                hit = address
            else:
                hit = next((query for query in queries if query in name), "")
            if not hit:
                continue
            result.servers.append(server)
            if hit not in result.matches:
                result.matches.append(hit)
        return result

    async def _fetch_servers(self) -> list[dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC)
        headers = {"User-Agent": "parkwarden", "Accept": "application/json"}
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.settings.master_server_uri, headers=headers) as response:
                    body = await response.text()
                    if response.status >= 400:
                        raise StatusQueryError(f"HTTP {response.status}: {body[:300]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise StatusQueryError(f"Master server request failed: {exc}") from exc
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise StatusQueryError("Master server returned invalid JSON.") from exc
        servers = data.get("servers") if isinstance(data, dict) else None
        if not isinstance(servers, list):
            raise StatusQueryError("Master server response has no server list.")
        return [row for row in servers if isinstance(row, dict)]


def _server_ipv4(server: dict[str, Any]) -> str:
    ip = server.get("ip")
    if not isinstance(ip, dict):
        return ""
    v4 = ip.get("v4")
    if isinstance(v4, list) and v4:
        return str(v4[0])
    return ""


def format_status(result: StatusResult, inputs: list[str]) -> str:
    if not result.servers:
        return "**No servers found with given input!**"
    lines: list[str] = []
    for server in result.servers:
        players = int(server.get("players", 0) or 0)
        crowd = "There is 1 player on." if players == 1 else f"There are {players} players on."
        lines.append(
            f"*{server.get('name', '?')}* is **UP**!\n"
            f"Server version: **{server.get('version', '?')}**\n"
            f"{crowd}\n"
        )
    matched = set(result.matches)
    for query in inputs:
        if query.strip().lower() not in matched:
            lines.append(f"Could not find servers with '*{query}*'")
    return "\n".join(lines)[:1900]
