from __future__ import annotations

import discord


async def resolve_text_channel(bot: discord.Client, channel_id: int) -> discord.abc.Messageable | None:
    """
    Resolve a configured channel id to something we can send to.

    The channel cache can be cold right after login; this helper tries the cache
    and then falls back to an API fetch.
    """

    if not channel_id:
        return None
    channel = bot.get_channel(channel_id)
    if channel is not None:
        return channel  # type: ignore[return-value]
    try:
        fetched = await bot.fetch_channel(channel_id)
    except (discord.Forbidden, discord.NotFound, discord.HTTPException):
        return None
    if isinstance(fetched, discord.abc.Messageable):
        return fetched
    return None
