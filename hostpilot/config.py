from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_CONTROL_PORT = 8902
DEFAULT_HOSTS_FILE = Path.home() / ".hostpilot" / "hosts.json"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    hosts_file: str = str(DEFAULT_HOSTS_FILE)
    control_port: int = DEFAULT_CONTROL_PORT
    reconnect_delay: float = 5.0
    command_timeout: float = 20.0
    log_dir: str = "/tmp/service-manager"
    log_tail_lines: int = 200
    known_hosts: str | None = None  # None disables host key verification
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_path: str | Path | None = None) -> Settings:
        load_dotenv(env_path)

        hosts_file = os.path.expanduser(
            os.getenv("HOSTPILOT_HOSTS_FILE", str(DEFAULT_HOSTS_FILE))
        )
        known_hosts = os.getenv("HOSTPILOT_KNOWN_HOSTS", "").strip() or None

        return cls(
            hosts_file=hosts_file,
            control_port=_env_int("HOSTPILOT_CONTROL_PORT", DEFAULT_CONTROL_PORT),
            reconnect_delay=_env_float("HOSTPILOT_RECONNECT_DELAY", 5.0),
            command_timeout=_env_float("HOSTPILOT_COMMAND_TIMEOUT", 20.0),
            log_dir=os.getenv("HOSTPILOT_LOG_DIR", "/tmp/service-manager"),
            log_tail_lines=_env_int("HOSTPILOT_LOG_TAIL_LINES", 200),
            known_hosts=os.path.expanduser(known_hosts) if known_hosts else None,
            log_level=os.getenv("HOSTPILOT_LOG_LEVEL", "INFO").upper(),
        )
