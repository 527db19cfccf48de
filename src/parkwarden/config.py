from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

DEFAULT_DEV_URI = "https://openrct2.org/downloads/develop/latest"
DEFAULT_LAUNCHER_URI = "https://github.com/OpenRCT2/OpenLauncher/releases"
DEFAULT_MASTER_SERVER_URI = "https://servers.openrct2.io"


@dataclass(frozen=True)
class Settings:
    discord_token: str
    command_prefix: str
    store_path: Path
    openrct2_dir: Path
    scenarios_dir: Path
    openrct2_binary: str
    default_ip: str
    alert_channel_id: int
    main_channel_id: int
    log_channel_id: int
    dev_uri: str
    launcher_uri: str
    master_server_uri: str
    builds_dir: Path
    install_dir: Path
    checker_interval_sec: int = 300
    install_grace_sec: int = 30
    log_file: Path | None = None
    resources_dir: Path | None = None

    @staticmethod
    def load(path: Path = Path("parkwarden.txt")) -> "Settings":
        values = _parse_settings_file(path)
        token = values.get("DISCORD_TOKEN", "").strip()
        openrct2_dir = values.get("OPENRCT2_DIR", "").strip()
        if not token:
            raise RuntimeError(f"DISCORD_TOKEN is required in {path}.")
        if not openrct2_dir:
            raise RuntimeError(f"OPENRCT2_DIR is required in {path}.")
        root = Path(openrct2_dir).expanduser()
        return Settings(
            discord_token=token,
            command_prefix=values.get("COMMAND_PREFIX", ","),
            store_path=Path(values.get("STORE_PATH", "data/parkwarden.msgpack")),
            openrct2_dir=root,
            scenarios_dir=Path(values.get("SCENARIOS_DIR", str(root / "scenario"))).expanduser(),
            openrct2_binary=values.get("OPENRCT2_BINARY", "openrct2").strip(),
            default_ip=values.get("DEFAULT_IP", "127.0.0.1").strip(),
            alert_channel_id=_int_value(values, "ALERT_CHANNEL_ID"),
            main_channel_id=_int_value(values, "MAIN_CHANNEL_ID"),
            log_channel_id=_int_value(values, "LOG_CHANNEL_ID"),
            dev_uri=values.get("DEV_URI", DEFAULT_DEV_URI).strip(),
            launcher_uri=values.get("LAUNCHER_URI", DEFAULT_LAUNCHER_URI).strip(),
            master_server_uri=values.get("MASTER_SERVER_URI", DEFAULT_MASTER_SERVER_URI).strip(),
            builds_dir=Path(values.get("BUILDS_DIR", "data/builds")).expanduser(),
            install_dir=Path(values.get("INSTALL_DIR", "~")).expanduser(),
            checker_interval_sec=max(1, _int_value(values, "CHECKER_INTERVAL_SEC", 300)),
            install_grace_sec=max(0, _int_value(values, "INSTALL_GRACE_SEC", 30)),
            log_file=_optional_path(values, "LOG_FILE", "data/parkwarden.log"),
            resources_dir=_optional_path(values, "RESOURCES_DIR", ""),
        )


def _optional_path(values: dict[str, str], key: str, default: str) -> Path | None:
    raw = values.get(key, default).strip()
    return Path(raw).expanduser() if raw else None


def _int_value(values: dict[str, str], key: str, default: int = 0) -> int:
    raw = values.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{key} must be an integer, got {raw!r}.") from exc


def _parse_settings_file(path: Path) -> dict[str, str]:
    if not path.exists():
        raise RuntimeError(f"{path} not found. Copy parkwarden.example.txt to {path} and fill values.")
    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip()
    return values
