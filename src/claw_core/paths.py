from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping


DEFAULT_MOUNT_PATH = Path("/data/moltbot")
DEFAULT_STATE_DIR = Path("/root/.openclaw")
DEFAULT_SKILLS_DIR = Path("/root/clawd/skills")


@dataclass(frozen=True)
class KeeperPaths:
    data_dir: Path
    log_dir: Path
    gateway_log_file: Path


def default_keeper_data_dir(home: Path | None = None) -> Path:
    resolved_home = (home or Path.home()).expanduser()
    return resolved_home / ".local" / "share" / "claw_keeper"


def resolve_keeper_data_dir(runtime_values: Mapping[str, Any] | None) -> Path:
    if runtime_values is not None:
        configured = str(runtime_values.get("data_dir") or "").strip()
        if configured:
            return Path(configured).expanduser().resolve()
    return default_keeper_data_dir()


def keeper_paths(data_dir: Path, *, gateway_log_file: str | Path | None = None) -> KeeperPaths:
    resolved = Path(data_dir).expanduser()
    log_dir = resolved / "logs"
    log_file = Path(gateway_log_file).expanduser() if gateway_log_file else log_dir / "gateway.log"
    return KeeperPaths(data_dir=resolved, log_dir=log_dir, gateway_log_file=log_file)
