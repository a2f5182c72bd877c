"""Command-line interface for froth-control."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .adapters import MachineApiClient, MQTTConnectionError
from .app import FrothControlApp, resolve_session_location
from .config import FrothConfig, load_config
from .core.models import CommandStatus, FeedbackMessage
from .dispatcher import CommandBusyError, CommandDispatchError
from .logging import configure_logging
from .machine_commands import CommandVocabulary
from .session import SessionContext, SessionError, load_session, save_session

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_FAILED = 2
EXIT_REJECTED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="froth-control", description="Send control commands to Froth coffee kiosks"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "-s",
        "--session",
        type=Path,
        default=constants.DEFAULT_SESSION_PATH,
        help=f"Path to the stored machine session (default: {constants.DEFAULT_SESSION_PATH})",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    send_parser = subparsers.add_parser("send", help="Send a command and wait for completion")
    send_parser.add_argument("name", help="Command name, e.g. flushing or coffee_brew")
    send_parser.add_argument(
        "--device", help="Machine id (defaults to the stored session machine)"
    )

    watch_parser = subparsers.add_parser("watch", help="Print machine feedback messages")
    watch_parser.add_argument("--device", help="Machine id to watch")
    watch_parser.add_argument(
        "--duration", type=float, default=None, help="Stop after this many seconds"
    )

    use_parser = subparsers.add_parser(
        "use-machine", help="Store the machine this kiosk controls"
    )
    use_parser.add_argument("machine_id")
    use_parser.add_argument("--user", dest="user_id")
    use_parser.add_argument("--location")

    subparsers.add_parser("commands", help="List known machine commands")

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _resolve_session(args: argparse.Namespace) -> Optional[SessionContext]:
    device = getattr(args, "device", None)
    stored = load_session(args.session)
    if device:
        if stored is not None and stored.device_id == device:
            return stored
        return SessionContext(device_id=device)
    return stored


async def _run_send(
    config: FrothConfig, session: SessionContext, command_name: str
) -> int:
    api: Optional[MachineApiClient] = None
    if config.api.token:
        api = MachineApiClient(config.api)
        session = await resolve_session_location(session, api)

    try:
        async with FrothControlApp(config, session, api=api) as app:
            try:
                result = await app.send(command_name)
            except CommandBusyError as exc:
                LOGGER.error("%s", exc)
                return EXIT_REJECTED
            except CommandDispatchError as exc:
                LOGGER.error("Command rejected: %s", exc)
                return EXIT_REJECTED
    finally:
        if api is not None:
            await api.aclose()

    print(f"{command_name}: {result.status.value} ({result.attempts} attempt(s))")
    return EXIT_OK if result.status == CommandStatus.COMPLETED else EXIT_FAILED


async def _run_watch(
    config: FrothConfig, session: SessionContext, duration: Optional[float]
) -> int:
    def on_message(message: FeedbackMessage) -> None:
        print(
            f"{message.received_at.isoformat(timespec='seconds')} "
            f"{message.topic} {message.raw!r} ({message.kind.value})"
        )

    async with FrothControlApp(config, session) as app:
        await app.watch(on_message, duration=duration)
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(
        config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                if key in ("password", "token") and value:
                    value = "********"
                print(f"{key} = {value}")
            print()
        return EXIT_OK

    if args.command == "commands":
        vocabulary = CommandVocabulary(config.commands.extra_commands)
        for name in vocabulary.names:
            print(name)
        return EXIT_OK

    if args.command == "use-machine":
        try:
            session = SessionContext(
                device_id=args.machine_id,
                user_id=args.user_id,
                location=args.location,
            )
        except ValueError as exc:
            LOGGER.error("Invalid machine id: %s", exc)
            return EXIT_ERROR
        path = save_session(session, args.session)
        print(f"Machine {session.device_id} stored in {path}")
        return EXIT_OK

    try:
        session = _resolve_session(args)
    except (SessionError, ValueError) as exc:
        LOGGER.error("Unable to load machine session: %s", exc)
        return EXIT_ERROR

    if session is None:
        LOGGER.error(
            "No machine selected; run 'froth-control use-machine <id>' or pass --device"
        )
        return EXIT_ERROR

    try:
        if args.command == "send":
            return asyncio.run(_run_send(config, session, args.name))
        if args.command == "watch":
            return asyncio.run(_run_watch(config, session, args.duration))
    except MQTTConnectionError as exc:
        LOGGER.error("MQTT connection failed: %s", exc)
        return EXIT_ERROR
    except KeyboardInterrupt:
        return EXIT_OK

    LOGGER.error("Unknown command: %s", args.command)
    return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
