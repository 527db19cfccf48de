from __future__ import annotations

import asyncio
import itertools
import os
import signal
from pathlib import Path

import pytest

from parkwarden.config import Settings
from parkwarden.services.logger_service import LoggerService
from parkwarden.services.process_service import AUTOSAVE, ProcessManager
from parkwarden.services.server_files import ConfigReadError, ServerFilesService
from parkwarden.storage import MessagePackStore

_pids = itertools.count(4000)


class StubProcess:
    def __init__(self) -> None:
        self.pid = next(_pids)
        self.signals: list[int] = []

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)


class StubProcessManager(ProcessManager):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.spawned: list[tuple[list[str], Path, StubProcess]] = []

    def _spawn(self, args: list[str], cwd: Path) -> StubProcess:
        process = StubProcess()
        self.spawned.append((args, cwd, process))
        return process


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
    )


def _make_manager(tmp_path: Path) -> StubProcessManager:
    settings = _make_settings(tmp_path)
    store = MessagePackStore(settings.store_path)
    asyncio.run(store.load())
    return StubProcessManager(settings, ServerFilesService(settings), LoggerService(store))


def _make_server(server_dir: Path, port: int, autosaves: int = 0) -> Path:
    server_dir.mkdir(parents=True, exist_ok=True)
    (server_dir / "config.ini").write_text(f"[network]\ndefault_port = {port}\n", encoding="utf-8")
    if autosaves:
        autosave_dir = server_dir / "save" / "autosave"
        autosave_dir.mkdir(parents=True)
        for index in range(autosaves):
            save = autosave_dir / f"autosave_{index}.park"
            save.write_bytes(b"park")
            os.utime(save, (1_000 + index, 1_000 + index))
    return server_dir


def test_launch_scenario_on_primary_slot(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    primary = _make_server(manager.settings.openrct2_dir, 11753)

    loaded = manager.launch("Forest Frontiers.sc6", 1, primary)

    assert loaded == "Forest Frontiers"
    args, cwd, _ = manager.spawned[0]
    assert args == [
        "openrct2",
        "host",
        str(manager.settings.scenarios_dir / "Forest Frontiers.sc6"),
        "--port",
        "11753",
    ]
    assert cwd == primary
    assert manager.list_running() == [1]
    assert manager.current_scenario(1) == "Forest Frontiers"


def test_auxiliary_slot_gets_its_own_user_data_path_and_headless(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    aux = _make_server(manager.settings.openrct2_dir / "s2-nostalgia", 5000)

    manager.launch("Dynamite Dunes.sc6", 2, aux, headless=True)

    args, _, _ = manager.spawned[0]
    assert args[args.index("--user-data-path") + 1] == str(aux)
    assert args[-1] == "--headless"
    assert args[args.index("--port") + 1] == "5000"


def test_stop_signals_and_clears_slot(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    primary = _make_server(manager.settings.openrct2_dir, 11753)
    manager.launch("Forest Frontiers.sc6", 1, primary)
    process = manager.spawned[0][2]

    manager.stop(1)

    assert process.signals == [signal.SIGTERM]
    assert manager.list_running() == []
    manager.stop(1)
    assert process.signals == [signal.SIGTERM]


def test_stop_never_launched_slot_is_noop(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    manager.stop(7)
    assert manager.list_running() == []


def test_relaunch_stops_previous_process_first(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    primary = _make_server(manager.settings.openrct2_dir, 11753)
    manager.launch("Forest Frontiers.sc6", 1, primary)
    manager.launch("Dynamite Dunes.sc6", 1, primary)

    first, second = manager.spawned[0][2], manager.spawned[1][2]
    assert first.signals == [signal.SIGTERM]
    assert second.signals == []
    assert manager.list_running() == [1]
    assert manager.describe(1).process is second


def test_resume_autosave_loads_newest_save(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    aux = _make_server(manager.settings.openrct2_dir / "s2-nostalgia", 5000, autosaves=3)

    loaded = manager.launch(AUTOSAVE, 2, aux)

    assert loaded == "autosave_2"
    args, _, _ = manager.spawned[0]
    assert args[2] == str(aux / "save" / "autosave" / "autosave_2.park")
    assert manager.current_scenario(2) is None
    assert manager.list_running() == [2]


def test_resume_without_autosave_returns_empty_and_spawns_nothing(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    aux = _make_server(manager.settings.openrct2_dir / "s2-nostalgia", 5000)

    assert manager.launch(AUTOSAVE, 2, aux) == ""
    assert manager.spawned == []
    assert manager.list_running() == []


def test_missing_config_raises_before_spawn(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    broken = tmp_path / "broken"
    broken.mkdir()

    with pytest.raises(ConfigReadError):
        manager.launch("Forest Frontiers.sc6", 1, broken)
    assert manager.spawned == []


def test_current_scenario_survives_autosave_resume(tmp_path: Path) -> None:
    manager = _make_manager(tmp_path)
    primary = _make_server(manager.settings.openrct2_dir, 11753, autosaves=1)
    manager.launch("Forest Frontiers.sc6", 1, primary)
    manager.launch(AUTOSAVE, 1, primary)

    assert manager.current_scenario(1) == "Forest Frontiers"
    assert manager.describe(1).scenario == ""
