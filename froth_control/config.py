"""Configuration loader for froth-control."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ACK_TIMEOUT_SECONDS = 3.0
DEFAULT_COMPLETION_TIMEOUT_SECONDS = 2.0

SUPPORTED_TRANSPORTS = ("tcp", "websockets")


@dataclass(slots=True)
class BrokerConfig:
    host: str = constants.DEFAULT_BROKER_HOST
    port: int = constants.DEFAULT_BROKER_PORT
    username: Optional[str] = None
    password: Optional[str] = None
    transport: str = "tcp"
    ws_path: str = constants.DEFAULT_WS_PATH
    tls: bool = False
    keepalive: int = 60


@dataclass(slots=True)
class CommandConfig:
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    ack_timeout_seconds: float = DEFAULT_ACK_TIMEOUT_SECONDS
    completion_timeout_seconds: float = DEFAULT_COMPLETION_TIMEOUT_SECONDS
    retry_delay_seconds: float = 0.0
    strict_vocabulary: bool = False
    extra_commands: List[str] = field(default_factory=list)
    journal_path: Optional[Path] = None


@dataclass(slots=True)
class ApiConfig:
    base_url: str = constants.DEFAULT_API_BASE_URL
    token: Optional[str] = None
    timeout_seconds: float = 10.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class FrothConfig:
    broker: BrokerConfig
    commands: CommandConfig
    api: ApiConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _parse_list(value: str, *, default: Iterable[str] = ()) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional_path(value: Optional[str]) -> Optional[Path]:
    if not value or not value.strip():
        return None
    return Path(value.strip()).expanduser()


def load_config(path: Optional[Path] = None) -> FrothConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "broker": {
                "host": constants.DEFAULT_BROKER_HOST,
                "port": str(constants.DEFAULT_BROKER_PORT),
                "transport": "tcp",
                "ws_path": constants.DEFAULT_WS_PATH,
                "tls": "false",
                "keepalive": "60",
            },
            "commands": {
                "max_attempts": str(DEFAULT_MAX_ATTEMPTS),
                "ack_timeout_seconds": str(DEFAULT_ACK_TIMEOUT_SECONDS),
                "completion_timeout_seconds": str(DEFAULT_COMPLETION_TIMEOUT_SECONDS),
                "retry_delay_seconds": "0.0",
                "strict_vocabulary": "false",
                "extra_commands": "",
                "journal_path": "",
            },
            "api": {
                "base_url": constants.DEFAULT_API_BASE_URL,
                "timeout_seconds": "10.0",
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    host_value = parser.get("broker", "host")
    port_value = parser.getint("broker", "port", fallback=constants.DEFAULT_BROKER_PORT)

    if ":" in host_value:
        host_part, port_part = host_value.rsplit(":", 1)
        try:
            parsed_port = int(port_part)
        except ValueError:
            pass
        else:
            host_value = host_part
            port_value = parsed_port
            parser.set("broker", "host", host_part)
            parser.set("broker", "port", str(parsed_port))

    transport = parser.get("broker", "transport", fallback="tcp").strip().lower()
    if transport not in SUPPORTED_TRANSPORTS:
        raise ValueError(
            f"Unsupported broker transport {transport!r}; "
            f"expected one of {', '.join(SUPPORTED_TRANSPORTS)}"
        )

    broker = BrokerConfig(
        host=host_value,
        port=port_value,
        username=parser.get("broker", "username", fallback=None),
        password=parser.get("broker", "password", fallback=None),
        transport=transport,
        ws_path=parser.get("broker", "ws_path", fallback=constants.DEFAULT_WS_PATH),
        tls=parser.getboolean("broker", "tls", fallback=False),
        keepalive=max(1, parser.getint("broker", "keepalive", fallback=60)),
    )

    commands = CommandConfig(
        max_attempts=max(
            1,
            parser.getint("commands", "max_attempts", fallback=DEFAULT_MAX_ATTEMPTS),
        ),
        ack_timeout_seconds=max(
            0.001,
            parser.getfloat(
                "commands",
                "ack_timeout_seconds",
                fallback=DEFAULT_ACK_TIMEOUT_SECONDS,
            ),
        ),
        completion_timeout_seconds=max(
            0.001,
            parser.getfloat(
                "commands",
                "completion_timeout_seconds",
                fallback=DEFAULT_COMPLETION_TIMEOUT_SECONDS,
            ),
        ),
        retry_delay_seconds=max(
            0.0,
            parser.getfloat("commands", "retry_delay_seconds", fallback=0.0),
        ),
        strict_vocabulary=parser.getboolean(
            "commands", "strict_vocabulary", fallback=False
        ),
        extra_commands=_parse_list(
            parser.get("commands", "extra_commands", fallback="")
        ),
        journal_path=_optional_path(
            parser.get("commands", "journal_path", fallback="")
        ),
    )

    api = ApiConfig(
        base_url=parser.get("api", "base_url", fallback=constants.DEFAULT_API_BASE_URL),
        token=parser.get("api", "token", fallback=None),
        timeout_seconds=max(
            0.1, parser.getfloat("api", "timeout_seconds", fallback=10.0)
        ),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(parser.get("logging", "path", fallback="")),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return FrothConfig(
        broker=broker,
        commands=commands,
        api=api,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )


def save_config(config: FrothConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
