from __future__ import annotations

import asyncio
from dataclasses import dataclass

import aiohttp
from bs4 import BeautifulSoup

from parkwarden.config import Settings

REQUEST_TIMEOUT_SEC = 30


class BuildFeedError(RuntimeError):
    """A build page could not be fetched or did not contain what we look for."""


@dataclass(frozen=True)
class BuildFeed:
    tag: str
    label: str
    headline: str

    @property
    def current_key(self) -> str:
        return f"cur{self.tag}hash"

    @property
    def previous_key(self) -> str:
        return f"last{self.tag}hash"


FEEDS: dict[str, BuildFeed] = {
    "dev": BuildFeed(tag="dev", label="develop builds", headline="NEW OPENRCT2 BUILD"),
    "launcher": BuildFeed(tag="launcher", label="launcher builds", headline="NEW LAUNCHER BUILD"),
}


class BuildService:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def feed_uri(self, tag: str) -> str:
        if tag == "dev":
            return self.settings.dev_uri
        if tag == "launcher":
            return self.settings.launcher_uri
        raise KeyError(tag)

    async def fetch_hash(self, tag: str) -> str:
        soup = await self._soup(self.feed_uri(tag))
        if tag == "dev":
            node = soup.select_one("li span")
        else:
            node = soup.find("code")
        value = node.get_text(strip=True) if node else ""
        if not value:
            raise BuildFeedError(f"No build hash found on the {tag} page.")
        return value

    async def fetch_details(self, tag: str) -> str:
        soup = await self._soup(self.feed_uri(tag))
        if tag == "dev":
            return _dev_details(soup)
        return _launcher_details(soup)

    async def download_link(self, kind: str, uri: str) -> str | None:
        soup = await self._soup(uri)
        scope = soup.find("main") or soup
        for anchor in scope.find_all("a", href=True):
            href = str(anchor["href"])
            if kind in href:
                return href
        return None

    async def _soup(self, uri: str) -> BeautifulSoup:
        return BeautifulSoup(await self._fetch_page(uri), "html.parser")

    async def _fetch_page(self, uri: str) -> str:
        timeout = aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SEC)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(uri, headers={"User-Agent": "parkwarden"}) as response:
                    body = await response.text()
                    if response.status >= 400:
                        raise BuildFeedError(f"HTTP {response.status} from {uri}")
                    return body
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise BuildFeedError(f"Request to {uri} failed: {exc}") from exc


def _dev_details(soup: BeautifulSoup) -> str:
    title = soup.find("h1")
    lines: list[str] = []
    listing = soup.find("ul")
    items = listing.find_all("li", recursive=False) if listing else []
    if len(items) > 2:
        spans = items[2].find_all("span")
        if len(spans) > 1:
            lines.append(f"Release Date: **{spans[1].get_text(strip=True)}**")
        if spans:
            lines.append(f"Was released **{spans[0].get_text(strip=True)} ago**")
    if len(items) > 1:
        anchor = items[1].find("a")
        if anchor:
            lines.append(f"Git Hash: **{anchor.get_text(strip=True)}**")
    heading = f"*{title.get_text(strip=True)}*\n\n" if title else ""
    return heading + "\n".join(lines)


def _launcher_details(soup: BeautifulSoup) -> str:
    lines = ["*Latest OpenRCT2 launcher download*", ""]
    entry = soup.select_one(".release-entry") or soup
    header = entry.select_one(".release-header")
    if header:
        version = header.find("a")
        if version:
            lines.append(f"Version: **{version.get_text(strip=True)}**")
        stamp = header.find("relative-time") or header.find("time")
        if stamp:
            lines.append(f"Release Date: **{stamp.get_text(strip=True)}**")
    code = entry.find("code")
    if code:
        lines.append(f"Git Hash: **{code.get_text(strip=True)}**")
    return "\n".join(lines)
