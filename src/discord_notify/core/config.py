from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError
from .utils import expand_path

logger = logging.getLogger("discord_notify.core.config")

CONFIG_ENV = "DISCORD_NOTIFY_CONFIG"
SOCKET_ENV = "DISCORD_NOTIFY_SOCKET"
DATA_DIR_ENV = "DISCORD_NOTIFY_DATA_DIR"
USER_ID_ENV = "DISCORD_NOTIFY_USER_ID"
DEFAULT_BOT_TOKEN_ENV = "DISCORD_TOKEN"

DEFAULT_SOCKET_PATH = "/tmp/discord-notify.sock"
DEFAULT_DATA_DIR = "~/.discord-notify"
DEFAULT_ASK_TIMEOUT_MS = 5 * 60 * 1000
DEFAULT_MAX_ASK_TIMEOUT_MS = 60 * 60 * 1000
DEFAULT_RESTART_GRACE_MS = 60 * 1000
DEFAULT_RETENTION_DAYS = 7
DEFAULT_RESUME_COMMAND = ("claude", "--resume", "{session_id}")
DEFAULT_PROCESS_NAME = "claude"
DEFAULT_LAUNCH_DELAY_SECONDS = 3.0
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_LOG_BACKUP_COUNT = 3


def config_home() -> Path:
    return Path.home() / ".config" / "discord-notify"


def config_candidates() -> list[Path]:
    explicit = os.environ.get(CONFIG_ENV)
    if explicit:
        return [expand_path(explicit)]
    home = config_home()
    return [
        home / "config.yml",
        home / "config.yaml",
        home / "config.json",
        Path.home() / ".discord-notify" / "config.json",
    ]


@dataclass(frozen=True)
class TimeoutConfig:
    default_ask_ms: int = DEFAULT_ASK_TIMEOUT_MS
    max_ask_ms: int = DEFAULT_MAX_ASK_TIMEOUT_MS
    restart_grace_ms: int = DEFAULT_RESTART_GRACE_MS

    def effective(self, requested_ms: Optional[int]) -> int:
        if requested_ms is None or requested_ms <= 0:
            return min(self.default_ask_ms, self.max_ask_ms)
        return min(int(requested_ms), self.max_ask_ms)


@dataclass(frozen=True)
class RecoveryConfig:
    enabled: bool = True
    resume_command: tuple[str, ...] = DEFAULT_RESUME_COMMAND
    process_name: str = DEFAULT_PROCESS_NAME
    launch_delay_seconds: float = DEFAULT_LAUNCH_DELAY_SECONDS


@dataclass(frozen=True)
class LogConfig:
    path: Path
    level: str = "INFO"
    max_bytes: int = DEFAULT_LOG_MAX_BYTES
    backup_count: int = DEFAULT_LOG_BACKUP_COUNT


@dataclass(frozen=True)
class NotifyConfig:
    socket_path: Path
    data_dir: Path
    user_id: Optional[str]
    bot_token_env: str
    bot_token: Optional[str]
    timeouts: TimeoutConfig
    retention_days: int
    recovery: RecoveryConfig
    log: LogConfig
    source_path: Optional[Path] = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def pid_path(self) -> Path:
        return self.data_dir / "daemon.pid"

    def require_daemon_settings(self) -> None:
        if not self.bot_token:
            raise ConfigError(
                f"{self.bot_token_env} environment variable is required",
                user_message=f"Set {self.bot_token_env} to the Discord bot token.",
            )
        if not self.user_id:
            raise ConfigError(
                "discord.user_id is not configured",
                user_message=(
                    "Add your Discord user id to "
                    f"{config_home() / 'config.yml'}:\n"
                    "  discord:\n    user_id: 'YOUR_USER_ID'"
                ),
            )

    @classmethod
    def from_raw(
        cls,
        raw: Mapping[str, Any],
        *,
        env: Optional[Mapping[str, str]] = None,
        source_path: Optional[Path] = None,
    ) -> "NotifyConfig":
        environ = os.environ if env is None else env
        cfg: dict[str, Any] = dict(raw) if isinstance(raw, Mapping) else {}

        socket_value = environ.get(SOCKET_ENV) or _pick(
            cfg, "socket_path", "socketPath", default=DEFAULT_SOCKET_PATH
        )
        data_dir_value = environ.get(DATA_DIR_ENV) or _pick(
            cfg, "data_dir", "dataDir", default=DEFAULT_DATA_DIR
        )
        socket_path = _parse_path(socket_value, key="socket_path")
        data_dir = _parse_path(data_dir_value, key="data_dir")

        discord_cfg = _section(cfg, "discord")
        user_id = environ.get(USER_ID_ENV) or _pick(
            discord_cfg, "user_id", "userId", default=None
        )
        user_id = str(user_id).strip() if user_id is not None else None
        bot_token_env = str(
            _pick(discord_cfg, "bot_token_env", default=DEFAULT_BOT_TOKEN_ENV)
        ).strip()
        if not bot_token_env:
            raise ConfigError("discord.bot_token_env must be non-empty")
        bot_token = environ.get(bot_token_env) or None

        timeouts_cfg = _section(cfg, "timeouts")
        timeouts = TimeoutConfig(
            default_ask_ms=_parse_positive_int_or_default(
                _pick(timeouts_cfg, "default_ask_ms", "defaultAsk", default=None),
                default=DEFAULT_ASK_TIMEOUT_MS,
                key="timeouts.default_ask_ms",
            ),
            max_ask_ms=_parse_positive_int_or_default(
                _pick(timeouts_cfg, "max_ask_ms", "maxAsk", default=None),
                default=DEFAULT_MAX_ASK_TIMEOUT_MS,
                key="timeouts.max_ask_ms",
            ),
            restart_grace_ms=_parse_positive_int_or_default(
                _pick(timeouts_cfg, "restart_grace_ms", default=None),
                default=DEFAULT_RESTART_GRACE_MS,
                key="timeouts.restart_grace_ms",
            ),
        )

        retention_cfg = _section(cfg, "retention")
        retention_days = _parse_positive_int_or_default(
            retention_cfg.get("days"),
            default=DEFAULT_RETENTION_DAYS,
            key="retention.days",
        )

        recovery_cfg = _section(cfg, "recovery")
        recovery = RecoveryConfig(
            enabled=_parse_bool_or_default(
                recovery_cfg.get("enabled"), default=True, key="recovery.enabled"
            ),
            resume_command=_parse_command(
                recovery_cfg.get("resume_command"),
                default=DEFAULT_RESUME_COMMAND,
                key="recovery.resume_command",
            ),
            process_name=str(
                recovery_cfg.get("process_name") or DEFAULT_PROCESS_NAME
            ).strip(),
            launch_delay_seconds=_parse_non_negative_float_or_default(
                recovery_cfg.get("launch_delay_seconds"),
                default=DEFAULT_LAUNCH_DELAY_SECONDS,
                key="recovery.launch_delay_seconds",
            ),
        )

        log_cfg = _section(cfg, "log")
        log_path_value = log_cfg.get("path")
        log = LogConfig(
            path=(
                _parse_path(log_path_value, key="log.path")
                if log_path_value
                else data_dir / "daemon.log"
            ),
            level=str(log_cfg.get("level") or "INFO").strip().upper(),
            max_bytes=_parse_positive_int_or_default(
                log_cfg.get("max_bytes"),
                default=DEFAULT_LOG_MAX_BYTES,
                key="log.max_bytes",
            ),
            backup_count=_parse_positive_int_or_default(
                log_cfg.get("backup_count"),
                default=DEFAULT_LOG_BACKUP_COUNT,
                key="log.backup_count",
            ),
        )

        return cls(
            socket_path=socket_path,
            data_dir=data_dir,
            user_id=user_id or None,
            bot_token_env=bot_token_env,
            bot_token=bot_token,
            timeouts=timeouts,
            retention_days=retention_days,
            recovery=recovery,
            log=log,
            source_path=source_path,
            raw=cfg,
        )


def load_dotenv_for_config() -> None:
    """Best-effort load of ``~/.config/discord-notify/.env``."""
    candidate = config_home() / ".env"
    try:
        if candidate.exists():
            load_dotenv(dotenv_path=candidate, override=False)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def _load_yaml_dict(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def load_raw_config() -> tuple[dict[str, Any], Optional[Path]]:
    for candidate in config_candidates():
        if candidate.exists():
            return _load_yaml_dict(candidate), candidate
    return {}, None


def load_config(*, require_secrets: bool = True) -> NotifyConfig:
    """Load the daemon configuration (config file, .env, environment)."""
    load_dotenv_for_config()
    raw, source_path = load_raw_config()
    config = NotifyConfig.from_raw(raw, source_path=source_path)
    if require_secrets:
        config.require_daemon_settings()
    return config


def load_cli_config() -> NotifyConfig:
    """Configuration for CLI invocations; never requires the bot token.

    A broken config file must not stop the CLI from reaching a running daemon
    on the default socket, so read errors fall back to defaults.
    """
    try:
        raw, source_path = load_raw_config()
    except ConfigError as exc:
        logger.debug("Ignoring unreadable config for CLI: %s", exc)
        raw, source_path = {}, None
    return NotifyConfig.from_raw(raw, source_path=source_path)


def _section(cfg: Mapping[str, Any], key: str) -> dict[str, Any]:
    value = cfg.get(key)
    return dict(value) if isinstance(value, Mapping) else {}


def _pick(cfg: Mapping[str, Any], *keys: str, default: Any) -> Any:
    for key in keys:
        value = cfg.get(key)
        if value is not None and value != "":
            return value
    return default


def _parse_path(value: Any, *, key: str) -> Path:
    if not isinstance(value, (str, Path)) or not str(value).strip():
        raise ConfigError(f"{key} must be a string path")
    return expand_path(str(value).strip())


def _parse_positive_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be an integer") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_non_negative_float_or_default(
    value: Any, *, default: float, key: str
) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number") from exc
    if parsed < 0:
        return default
    return parsed


def _parse_bool_or_default(value: Any, *, default: bool, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise ConfigError(f"{key} must be a boolean")


def _parse_command(
    value: Any, *, default: tuple[str, ...], key: str
) -> tuple[str, ...]:
    if value is None:
        return default
    if isinstance(value, str):
        parts = shlex.split(value)
    elif isinstance(value, (list, tuple)):
        parts = [str(item) for item in value]
    else:
        raise ConfigError(f"{key} must be a list of strings")
    parts = [part for part in parts if part.strip()]
    if not parts:
        raise ConfigError(f"{key} must be non-empty")
    return tuple(parts)
