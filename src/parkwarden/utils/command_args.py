from __future__ import annotations

import re
from dataclasses import dataclass

_INTERVAL_RE = re.compile(r"^([1-9][0-9]*)([smh])$", re.IGNORECASE)
_SLOT_RE = re.compile(r"^[1-9][0-9]*$")
_FLAG_RE = re.compile(r"^-[a-z]+$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600}


@dataclass(frozen=True)
class CommandArgs:
    """Parsed command tail: ``[-flags] [slot] [interval] [free text]``.

    Flags are single letters and may be grouped (``-ah``). The first bare positive
    integer is the slot. A number with an ``s``/``m``/``h`` suffix is the interval.
    Everything else is kept, in order, as free text.
    """

    flags: frozenset[str] = frozenset()
    slot: int | None = None
    interval_sec: int | None = None
    text: str = ""

    def has(self, flag: str) -> bool:
        return flag in self.flags


def parse_interval(token: str) -> int | None:
    match = _INTERVAL_RE.match(token.strip())
    if not match:
        return None
    return int(match.group(1)) * _UNIT_SECONDS[match.group(2).lower()]


def parse_command_args(raw: str) -> CommandArgs:
    flags: set[str] = set()
    slot: int | None = None
    interval: int | None = None
    words: list[str] = []
    for token in raw.split():
        if not words and _FLAG_RE.match(token):
            flags.update(token[1:].lower())
            continue
        if slot is None and not words and _SLOT_RE.match(token):
            slot = int(token)
            continue
        if interval is None:
            parsed = parse_interval(token)
            if parsed is not None:
                interval = parsed
                continue
        words.append(token)
    return CommandArgs(flags=frozenset(flags), slot=slot, interval_sec=interval, text=" ".join(words))
