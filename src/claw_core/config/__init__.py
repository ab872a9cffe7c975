from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    import tomli as tomllib

from claw_core import shared as core_shared
from claw_core.errors import ConfigError
from claw_core.paths import DEFAULT_MOUNT_PATH, DEFAULT_SKILLS_DIR, DEFAULT_STATE_DIR


_SECTION_KEYS = ("storage", "sync", "gateway", "logging", "runtime")

HALF_STARTED_POLICY_WAIT = "wait"
HALF_STARTED_POLICY_RESTART = "restart"
HALF_STARTED_POLICY_CHOICES = (HALF_STARTED_POLICY_WAIT, HALF_STARTED_POLICY_RESTART)
DEFAULT_HALF_STARTED_POLICY = HALF_STARTED_POLICY_WAIT

DEFAULT_BUCKET_NAME = "moltbot-data"
DEFAULT_MOUNT_COMMAND = "s3fs"
DEFAULT_MOUNT_TIMEOUT_SECONDS = 60.0
DEFAULT_SYNC_INTERVAL_SECONDS = 300.0
DEFAULT_TRANSFER_TIMEOUT_SECONDS = 300.0
DEFAULT_MARKER_FILE_NAME = ".last-sync"
DEFAULT_SYNC_EXCLUDES = ("*.lock", "*.log", "*.tmp")
DEFAULT_REQUIRED_FILES = ("openclaw.json",)
DEFAULT_GATEWAY_COMMAND = "openclaw"
DEFAULT_GATEWAY_HOST = "127.0.0.1"
DEFAULT_GATEWAY_PORT = 18789
DEFAULT_GATEWAY_BIND = "lan"
DEFAULT_GATEWAY_MATCH_PATTERNS = ("openclaw gateway", "start-openclaw.sh")
DEFAULT_GATEWAY_EXCLUDE_PATTERNS = ("openclaw devices", "openclaw --version", "openclaw onboard")
DEFAULT_STARTUP_TIMEOUT_SECONDS = 180.0
DEFAULT_READY_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_CLI_READY_TIMEOUT_SECONDS = 15.0

# Hosting-environment secret name -> variable name the gateway process expects.
DEFAULT_GATEWAY_ENV_MAP: dict[str, str] = {
    "ANTHROPIC_API_KEY": "ANTHROPIC_API_KEY",
    "ANTHROPIC_BASE_URL": "ANTHROPIC_BASE_URL",
    "OPENAI_API_KEY": "OPENAI_API_KEY",
    "MOLTBOT_GATEWAY_TOKEN": "OPENCLAW_GATEWAY_TOKEN",
    "DEV_MODE": "OPENCLAW_DEV_MODE",
    "TELEGRAM_BOT_TOKEN": "TELEGRAM_BOT_TOKEN",
    "TELEGRAM_DM_POLICY": "TELEGRAM_DM_POLICY",
    "DISCORD_BOT_TOKEN": "DISCORD_BOT_TOKEN",
    "DISCORD_DM_POLICY": "DISCORD_DM_POLICY",
    "SLACK_BOT_TOKEN": "SLACK_BOT_TOKEN",
    "SLACK_APP_TOKEN": "SLACK_APP_TOKEN",
    "CF_AI_GATEWAY_ACCOUNT_ID": "CF_AI_GATEWAY_ACCOUNT_ID",
    "CF_AI_GATEWAY_GATEWAY_ID": "CF_AI_GATEWAY_GATEWAY_ID",
    "CLOUDFLARE_AI_GATEWAY_API_KEY": "CLOUDFLARE_AI_GATEWAY_API_KEY",
    "CDP_SECRET": "CDP_SECRET",
    "WORKER_URL": "WORKER_URL",
}


def _ensure_dict(value: object, *, label: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{label} must be a table/object.")
    return dict(value)


def _ensure_optional_str(value: object, *, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be a string.")
    return value.strip() or None


def _str_with_default(value: object, *, default: str, label: str) -> str:
    return _ensure_optional_str(value, label=label) or default


@dataclass(frozen=True)
class StorageConfig:
    bucket_name: str = DEFAULT_BUCKET_NAME
    mount_path: Path = DEFAULT_MOUNT_PATH
    endpoint_url: str | None = None
    mount_command: str = DEFAULT_MOUNT_COMMAND
    mount_timeout_seconds: float = DEFAULT_MOUNT_TIMEOUT_SECONDS
    tolerate_unmounted: bool = True


@dataclass(frozen=True)
class SyncTargetConfig:
    name: str
    local: Path
    remote: str


def _default_sync_targets() -> tuple[SyncTargetConfig, ...]:
    return (
        SyncTargetConfig(name="openclaw", local=DEFAULT_STATE_DIR, remote="openclaw"),
        SyncTargetConfig(name="skills", local=DEFAULT_SKILLS_DIR, remote="skills"),
    )


@dataclass(frozen=True)
class SyncConfig:
    interval_seconds: float = DEFAULT_SYNC_INTERVAL_SECONDS
    transfer_timeout_seconds: float = DEFAULT_TRANSFER_TIMEOUT_SECONDS
    marker_file_name: str = DEFAULT_MARKER_FILE_NAME
    excludes: tuple[str, ...] = DEFAULT_SYNC_EXCLUDES
    mirror_deletes: bool = False
    required_files: tuple[str, ...] = DEFAULT_REQUIRED_FILES
    targets: tuple[SyncTargetConfig, ...] = field(default_factory=_default_sync_targets)

    @property
    def primary_target(self) -> SyncTargetConfig:
        return self.targets[0]


@dataclass(frozen=True)
class GatewayConfig:
    command: str = DEFAULT_GATEWAY_COMMAND
    host: str = DEFAULT_GATEWAY_HOST
    port: int = DEFAULT_GATEWAY_PORT
    bind: str = DEFAULT_GATEWAY_BIND
    extra_args: tuple[str, ...] = ()
    match_patterns: tuple[str, ...] = DEFAULT_GATEWAY_MATCH_PATTERNS
    exclude_patterns: tuple[str, ...] = DEFAULT_GATEWAY_EXCLUDE_PATTERNS
    startup_timeout_seconds: float = DEFAULT_STARTUP_TIMEOUT_SECONDS
    ready_poll_interval_seconds: float = DEFAULT_READY_POLL_INTERVAL_SECONDS
    cli_ready_timeout_seconds: float = DEFAULT_CLI_READY_TIMEOUT_SECONDS
    half_started_policy: str = DEFAULT_HALF_STARTED_POLICY
    env_map: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_GATEWAY_ENV_MAP))
    log_file: str | None = None

    @property
    def ws_url(self) -> str:
        return f"ws://{self.host}:{self.port}"


@dataclass(frozen=True)
class LoggingConfig:
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RuntimeConfig:
    strict_mode: bool = False
    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class KeeperConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    gateway: GatewayConfig = field(default_factory=GatewayConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    extras: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | dict[str, Any]) -> "KeeperConfig":
        if not isinstance(payload, Mapping):
            raise ConfigError("Config payload root must be a table/object.")

        raw = dict(payload)
        missing_sections = [section for section in _SECTION_KEYS if section not in raw]
        if missing_sections:
            raise ConfigError(
                "Config payload missing required sections: " + ", ".join(missing_sections)
            )

        logging = LoggingConfig(values=_ensure_dict(raw.get("logging"), label="section 'logging'"))
        extras = {k: v for k, v in raw.items() if k not in _SECTION_KEYS}
        return cls(
            storage=_parse_storage(raw),
            sync=_parse_sync(raw),
            gateway=_parse_gateway(raw),
            logging=logging,
            runtime=_parse_runtime(raw),
            extras=extras,
        )

    @classmethod
    def from_toml_path(cls, path: str | Path) -> "KeeperConfig":
        config_path = Path(path)
        try:
            raw = config_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Unable to read config file {config_path}: {exc}") from exc
        try:
            parsed = tomllib.loads(raw)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigError("Config payload root must be a table/object.")
        return cls.from_dict(parsed)


def _parse_storage(raw_root: dict[str, Any]) -> StorageConfig:
    values = _ensure_dict(raw_root.get("storage"), label="section 'storage'")
    mount_path = _ensure_optional_str(values.get("mount_path"), label="storage.mount_path")
    return StorageConfig(
        bucket_name=_str_with_default(values.get("bucket_name"), default=DEFAULT_BUCKET_NAME, label="storage.bucket_name"),
        mount_path=Path(mount_path) if mount_path else DEFAULT_MOUNT_PATH,
        endpoint_url=_ensure_optional_str(values.get("endpoint_url"), label="storage.endpoint_url"),
        mount_command=_str_with_default(
            values.get("mount_command"), default=DEFAULT_MOUNT_COMMAND, label="storage.mount_command"
        ),
        mount_timeout_seconds=core_shared.parse_positive_number(
            values.get("mount_timeout_seconds"),
            default=DEFAULT_MOUNT_TIMEOUT_SECONDS,
            label="storage.mount_timeout_seconds",
            error_factory=ConfigError,
        ),
        tolerate_unmounted=core_shared.coerce_bool(
            values.get("tolerate_unmounted"),
            default=True,
            label="storage.tolerate_unmounted",
            error_factory=ConfigError,
        ),
    )


def _parse_sync_targets(raw_targets: object) -> tuple[SyncTargetConfig, ...]:
    if raw_targets is None:
        return _default_sync_targets()
    targets_raw = _ensure_dict(raw_targets, label="section 'sync.targets'")
    if not targets_raw:
        raise ConfigError("sync.targets must define at least one target.")
    targets: list[SyncTargetConfig] = []
    seen_remote: set[str] = set()
    for name, value in targets_raw.items():
        entry = _ensure_dict(value, label=f"section 'sync.targets.{name}'")
        local = _ensure_optional_str(entry.get("local"), label=f"sync.targets.{name}.local")
        remote = _ensure_optional_str(entry.get("remote"), label=f"sync.targets.{name}.remote") or str(name)
        if not local:
            raise ConfigError(f"sync.targets.{name}.local is required.")
        remote = remote.strip("/")
        if not remote or ".." in Path(remote).parts:
            raise ConfigError(f"sync.targets.{name}.remote must be a relative subdirectory.")
        if remote in seen_remote:
            raise ConfigError(f"sync.targets.{name}.remote duplicates another target: {remote}")
        seen_remote.add(remote)
        targets.append(SyncTargetConfig(name=str(name), local=Path(local).expanduser(), remote=remote))
    return tuple(targets)


def _parse_sync(raw_root: dict[str, Any]) -> SyncConfig:
    values = _ensure_dict(raw_root.get("sync"), label="section 'sync'")
    marker_file_name = _str_with_default(
        values.get("marker_file_name"), default=DEFAULT_MARKER_FILE_NAME, label="sync.marker_file_name"
    )
    if "/" in marker_file_name:
        raise ConfigError("sync.marker_file_name must be a bare file name.")
    return SyncConfig(
        interval_seconds=core_shared.parse_positive_number(
            values.get("interval_seconds"),
            default=DEFAULT_SYNC_INTERVAL_SECONDS,
            label="sync.interval_seconds",
            error_factory=ConfigError,
        ),
        transfer_timeout_seconds=core_shared.parse_positive_number(
            values.get("transfer_timeout_seconds"),
            default=DEFAULT_TRANSFER_TIMEOUT_SECONDS,
            label="sync.transfer_timeout_seconds",
            error_factory=ConfigError,
        ),
        marker_file_name=marker_file_name,
        excludes=core_shared.normalize_str_list(
            values.get("excludes"), default=DEFAULT_SYNC_EXCLUDES, label="sync.excludes", error_factory=ConfigError
        ),
        mirror_deletes=core_shared.coerce_bool(
            values.get("mirror_deletes"), default=False, label="sync.mirror_deletes", error_factory=ConfigError
        ),
        required_files=core_shared.normalize_str_list(
            values.get("required_files"),
            default=DEFAULT_REQUIRED_FILES,
            label="sync.required_files",
            error_factory=ConfigError,
        ),
        targets=_parse_sync_targets(values.get("targets")),
    )


def parse_half_started_policy(value: object, *, label: str = "gateway.half_started_policy") -> str:
    if value is None:
        return DEFAULT_HALF_STARTED_POLICY
    if not isinstance(value, str):
        raise ConfigError(f"{label} must be one of: {', '.join(HALF_STARTED_POLICY_CHOICES)}.")
    resolved = value.strip().lower()
    if resolved not in HALF_STARTED_POLICY_CHOICES:
        raise ConfigError(f"{label} must be one of: {', '.join(HALF_STARTED_POLICY_CHOICES)}.")
    return resolved


def _parse_env_map(value: object) -> dict[str, str]:
    env_map = dict(DEFAULT_GATEWAY_ENV_MAP)
    overrides = _ensure_dict(value, label="section 'gateway.env_map'")
    for source, target in overrides.items():
        if target in (None, "", False):
            env_map.pop(str(source), None)
            continue
        if not isinstance(target, str):
            raise ConfigError(f"gateway.env_map.{source} must be a string.")
        env_map[str(source)] = target.strip()
    return env_map


def _parse_gateway(raw_root: dict[str, Any]) -> GatewayConfig:
    values = _ensure_dict(raw_root.get("gateway"), label="section 'gateway'")
    return GatewayConfig(
        command=_str_with_default(values.get("command"), default=DEFAULT_GATEWAY_COMMAND, label="gateway.command"),
        host=_str_with_default(values.get("host"), default=DEFAULT_GATEWAY_HOST, label="gateway.host"),
        port=core_shared.parse_port(
            values.get("port"), default=DEFAULT_GATEWAY_PORT, label="gateway.port", error_factory=ConfigError
        ),
        bind=_str_with_default(values.get("bind"), default=DEFAULT_GATEWAY_BIND, label="gateway.bind"),
        extra_args=core_shared.normalize_str_list(
            values.get("extra_args"), default=(), label="gateway.extra_args", error_factory=ConfigError
        ),
        match_patterns=core_shared.normalize_str_list(
            values.get("match_patterns"),
            default=DEFAULT_GATEWAY_MATCH_PATTERNS,
            label="gateway.match_patterns",
            error_factory=ConfigError,
        ),
        exclude_patterns=core_shared.normalize_str_list(
            values.get("exclude_patterns"),
            default=DEFAULT_GATEWAY_EXCLUDE_PATTERNS,
            label="gateway.exclude_patterns",
            error_factory=ConfigError,
        ),
        startup_timeout_seconds=core_shared.parse_positive_number(
            values.get("startup_timeout_seconds"),
            default=DEFAULT_STARTUP_TIMEOUT_SECONDS,
            label="gateway.startup_timeout_seconds",
            error_factory=ConfigError,
        ),
        ready_poll_interval_seconds=core_shared.parse_positive_number(
            values.get("ready_poll_interval_seconds"),
            default=DEFAULT_READY_POLL_INTERVAL_SECONDS,
            label="gateway.ready_poll_interval_seconds",
            error_factory=ConfigError,
        ),
        cli_ready_timeout_seconds=core_shared.parse_positive_number(
            values.get("cli_ready_timeout_seconds"),
            default=DEFAULT_CLI_READY_TIMEOUT_SECONDS,
            label="gateway.cli_ready_timeout_seconds",
            error_factory=ConfigError,
        ),
        half_started_policy=parse_half_started_policy(values.get("half_started_policy")),
        env_map=_parse_env_map(values.get("env_map")),
        log_file=_ensure_optional_str(values.get("log_file"), label="gateway.log_file"),
    )


def _parse_runtime(raw_root: dict[str, Any]) -> RuntimeConfig:
    runtime_raw = _ensure_dict(raw_root.get("runtime"), label="section 'runtime'")
    strict_mode = core_shared.coerce_bool(
        runtime_raw.pop("strict_mode", None),
        default=False,
        label="runtime.strict_mode",
        error_factory=ConfigError,
    )
    return RuntimeConfig(strict_mode=strict_mode, values=runtime_raw)


def default_keeper_config() -> KeeperConfig:
    return KeeperConfig.from_dict({section: {} for section in _SECTION_KEYS})


def load_keeper_config(path: str | Path) -> KeeperConfig:
    return KeeperConfig.from_toml_path(path)


def load_keeper_config_dict(payload: Mapping[str, Any] | dict[str, Any]) -> KeeperConfig:
    return KeeperConfig.from_dict(payload)


__all__ = [
    "DEFAULT_GATEWAY_ENV_MAP",
    "DEFAULT_HALF_STARTED_POLICY",
    "GatewayConfig",
    "HALF_STARTED_POLICY_CHOICES",
    "HALF_STARTED_POLICY_RESTART",
    "HALF_STARTED_POLICY_WAIT",
    "KeeperConfig",
    "LoggingConfig",
    "RuntimeConfig",
    "StorageConfig",
    "SyncConfig",
    "SyncTargetConfig",
    "default_keeper_config",
    "load_keeper_config",
    "load_keeper_config_dict",
    "parse_half_started_policy",
]
