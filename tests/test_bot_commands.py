from __future__ import annotations

import asyncio
from pathlib import Path
from types import SimpleNamespace

from parkwarden.bot import ParkBot
from parkwarden.config import Settings
from parkwarden.services.vote_service import VOTE_EMOJIS
from parkwarden.utils.command_args import parse_command_args


def _make_settings(tmp_path: Path) -> Settings:
    root = tmp_path / "openrct2"
    root.mkdir(exist_ok=True)
    return Settings(
        discord_token="token",
        command_prefix=",",
        store_path=tmp_path / "state.msgpack",
        openrct2_dir=root,
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
        checker_interval_sec=3600,
    )


def _make_bot(tmp_path: Path) -> tuple[ParkBot, list[str], list[list[str]]]:
    bot = ParkBot(_make_settings(tmp_path))
    asyncio.run(bot.store.load())
    alerts: list[str] = []
    spawned: list[list[str]] = []

    async def record_alert(text: str) -> None:
        alerts.append(text)

    def fake_spawn(args: list[str], cwd: Path) -> SimpleNamespace:
        spawned.append(args)
        return SimpleNamespace(pid=len(spawned), send_signal=lambda sig: None)

    bot.send_alert = record_alert  # type: ignore[assignment]
    bot.processes._spawn = fake_spawn  # type: ignore[assignment]
    return bot, alerts, spawned


def _make_primary(bot: ParkBot) -> None:
    root = bot.settings.openrct2_dir
    (root / "config.ini").write_text("[network]\ndefault_port = 11753\n", encoding="utf-8")
    bot.settings.scenarios_dir.mkdir()
    for name in ("Forest Frontiers.sc6", "Forest Frontiers II.sc6", "Dynamite Dunes.sc6"):
        (bot.settings.scenarios_dir / name).write_bytes(b"x")


def test_run_scenario_by_search(tmp_path: Path) -> None:
    bot, alerts, spawned = _make_bot(tmp_path)
    _make_primary(bot)

    reply = asyncio.run(bot.run_scenario(parse_command_args("dunes")))

    assert reply == "Starting up **Dynamite Dunes** on Server #1."
    assert alerts == ["Now running **Dynamite Dunes** on Server #1!"]
    assert len(spawned) == 1
    assert bot.processes.list_running() == [1]


def test_run_scenario_ambiguous_and_missing(tmp_path: Path) -> None:
    bot, alerts, spawned = _make_bot(tmp_path)
    _make_primary(bot)

    ambiguous = asyncio.run(bot.run_scenario(parse_command_args("forest")))
    missing = asyncio.run(bot.run_scenario(parse_command_args("atlantis")))
    empty = asyncio.run(bot.run_scenario(parse_command_args("")))

    assert "returned multiple scenarios" in ambiguous
    assert missing == "No scenario found with 'atlantis'."
    assert empty == "You must specify a scenario to run."
    assert spawned == []
    assert alerts == []


def test_run_autosave_without_saves(tmp_path: Path) -> None:
    bot, alerts, spawned = _make_bot(tmp_path)
    _make_primary(bot)

    reply = asyncio.run(bot.run_scenario(parse_command_args("-a")))

    assert reply == "No autosaves found for Server #1."
    assert spawned == []


def test_run_blocked_during_install_and_unknown_slot(tmp_path: Path) -> None:
    bot, _, spawned = _make_bot(tmp_path)
    _make_primary(bot)

    assert "doesn't exist" in asyncio.run(bot.run_scenario(parse_command_args("5 dunes")))
    bot.installer._installing = True
    assert "Installing new OpenRCT2 build" in asyncio.run(bot.run_scenario(parse_command_args("dunes")))
    assert spawned == []


def test_checker_commands_route_to_supervisor(tmp_path: Path) -> None:
    bot, _, _ = _make_bot(tmp_path)
    _make_primary(bot)

    async def scenario() -> None:
        assert bot.start_checker(parse_command_args("-d 5m")).message == "Checking for develop builds every 5 minutes."
        assert bot.start_checker(parse_command_args("launcher")).ok is True
        assert bot.start_checker(parse_command_args("-s")).message == "I'm now monitoring the status of Server #1 every hour."
        assert bot.start_checker(parse_command_args("-s 1")).ok is False
        assert bot.start_checker(parse_command_args("")).ok is False
        summary = bot.status_summary()
        assert "Build checkers: `dev, launcher`" in summary
        assert "Server #1: `HEALTHY`" in summary
        assert "Last seen builds: dev `-` launcher `-`" in summary
        assert bot.stop_checker(parse_command_args("-d")).ok is True
        assert bot.stop_checker(parse_command_args("-l")).ok is True
        assert bot.stop_checker(parse_command_args("-s 1")).ok is True
        assert bot.supervisor.server_checker_active is False

    asyncio.run(scenario())


def test_config_command_creates_slot_and_sets_values(tmp_path: Path) -> None:
    bot, _, _ = _make_bot(tmp_path)
    _make_primary(bot)

    shown = bot.configure_server("2")
    port = bot.configure_server("2 port 11760")
    bad = bot.configure_server("2 maxplayers 999")
    name = bot.configure_server("'server name' Sunny Park")

    assert shown.startswith("Created folder `s2-Server2` for Server #2.")
    assert port == "Successfully set **Default Port** to *11760* for Server #2."
    assert bad == "You must enter a value between 1-255."
    assert name == "Successfully set **Server Name** to *Sunny Park* for Server #1."
    assert bot.files.port_for(bot.files.server_dir(2)) == "11760"
    assert bot.configure_server("colour red") == "No setting found with 'colour'."
    assert (bot.settings.openrct2_dir / "s2-Server2" / "save").is_dir()


def test_vote_winner_runs_on_primary_server(tmp_path: Path) -> None:
    bot, alerts, spawned = _make_bot(tmp_path)
    _make_primary(bot)
    messages: list[str] = []

    async def announce(text: str) -> None:
        messages.append(text)

    choices = bot.voting.open()
    winner = choices.index("Dynamite Dunes.sc6")
    counts = {emoji: 1 for emoji in VOTE_EMOJIS[: len(choices)]}
    counts[VOTE_EMOJIS[winner]] = 3

    stem = asyncio.run(bot.finish_vote(counts, announce, delay_sec=0))

    assert stem == "Dynamite Dunes"
    assert messages[0].startswith("Selected scenario: **Dynamite Dunes** (2 votes)")
    assert messages[-1] == "Starting up **Dynamite Dunes** on Server #1."
    assert alerts == ["Now running **Dynamite Dunes** on Server #1!"]
    assert len(spawned) == 1
    assert bot.voting.active is False


def test_vote_without_votes_changes_nothing(tmp_path: Path) -> None:
    bot, _, spawned = _make_bot(tmp_path)
    _make_primary(bot)
    messages: list[str] = []

    async def announce(text: str) -> None:
        messages.append(text)

    choices = bot.voting.open()
    stem = asyncio.run(bot.finish_vote({emoji: 1 for emoji in VOTE_EMOJIS[: len(choices)]}, announce, delay_sec=0))

    assert stem is None
    assert messages == ["Scenario change cancelled. No votes were submitted!"]
    assert spawned == []
