from __future__ import annotations

import discord

from parkwarden.storage import MessagePackStore

TIER_TRUSTED = 10
TIER_RUN = 50
TIER_OPERATE = 70
TIER_INSTALL = 90


class AccessService:
    """Command tiers come from Discord role names, with per-user overrides on top."""

    def __init__(self, store: MessagePackStore) -> None:
        self.store = store

    def get_tier(self, member: discord.abc.User | discord.Member) -> int:
        access = self.store.section("access")
        user_tier = int(access.get("user_tiers", {}).get(str(member.id), 0))
        if isinstance(member, discord.Member):
            role_tiers = access.get("role_tiers", {})
            role_tier = max((int(role_tiers.get(role.name, 0)) for role in member.roles), default=0)
        else:
            role_tier = 0
        return max(user_tier, role_tier)

    def can_run(self, member: discord.abc.User | discord.Member, min_tier: int) -> bool:
        return self.get_tier(member) >= min_tier

    def set_user_tier(self, user_id: int, tier: int) -> None:
        user_tiers = self.store.section("access").setdefault("user_tiers", {})
        if tier <= 0:
            user_tiers.pop(str(user_id), None)
        else:
            user_tiers[str(user_id)] = int(tier)
        self.store.touch()
