from __future__ import annotations

import random
from dataclasses import dataclass, field

from parkwarden.services.server_files import ServerFilesService

VOTE_EMOJIS = tuple(f"{digit}\u20e3" for digit in "123456789") + ("\U0001f51f",)
VOTE_WINDOW_SEC = 30
CHANGE_DELAY_SEC = 10


@dataclass(frozen=True)
class VoteOutcome:
    scenario: str | None
    votes: int = 0
    tie: bool = False


@dataclass
class ScenarioVote:
    """One scenario vote at a time for the primary server.

    Reopening a running vote draws fresh choices from the scenarios not offered yet.
    Reaction counts include the bot's own reaction on every choice.
    """

    files: ServerFilesService
    rng: random.Random = field(default_factory=random.Random)
    active: bool = False
    choices: list[str] = field(default_factory=list)
    _pool: list[str] = field(default_factory=list)

    def open(self) -> list[str]:
        pool = self._pool if self.active else self.files.list_scenarios()
        pool = list(pool)
        count = min(len(VOTE_EMOJIS), len(pool))
        self.choices = [pool.pop(self.rng.randrange(len(pool))) for _ in range(count)]
        self._pool = pool
        self.active = bool(self.choices)
        return list(self.choices)

    def close(self) -> None:
        self.active = False
        self.choices = []
        self._pool = []

    def cancel(self) -> bool:
        was_active = self.active
        self.close()
        return was_active

    def ballot(self) -> str:
        rows = [f"{emoji} | {_stem(name)}" for emoji, name in zip(VOTE_EMOJIS, self.choices)]
        return "Choose the next scenario:\n\n" + "\n".join(rows)

    def tally(self, reaction_counts: dict[str, int]) -> VoteOutcome:
        votes = {
            index: reaction_counts.get(emoji, 0) - 1
            for index, emoji in enumerate(VOTE_EMOJIS[: len(self.choices)])
        }
        highest = max(votes.values(), default=0)
        if highest < 1:
            return VoteOutcome(None)
        top = [index for index, count in votes.items() if count == highest]
        picked = top[0] if len(top) == 1 else self.rng.choice(top)
        return VoteOutcome(self.choices[picked], highest, tie=len(top) > 1)


def _stem(name: str) -> str:
    return name.rsplit(".", 1)[0]
