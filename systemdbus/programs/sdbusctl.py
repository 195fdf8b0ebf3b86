#!/usr/bin/python3
#
# sdbusctl -- Query and control systemd over the system bus
#

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from systemd.journal import JournalHandler

from systemdbus import api
from systemdbus.config import BusConfig
from systemdbus.exceptions import SystemdBusException
from systemdbus.methods import Mode


logger = logging.getLogger("sdbusctl")


# Same as `systemctl is-active` for inactive units
EXIT_NOT_ACTIVE = 3


def get_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser("sdbusctl", description="Query and control systemd over the system bus")
    parser.add_argument("--debug", action="store_true", help="Enable debug output")
    parser.add_argument("--address", help="Bus address (default: $DBUS_SYSTEM_BUS_ADDRESS or the system bus)")
    parser.add_argument("--timeout", type=float, help="Seconds to wait for each reply")

    commands = parser.add_subparsers(dest="command", required=True)

    command = commands.add_parser("is-active", help="Show the active state of a unit")
    command.add_argument("unit")

    command = commands.add_parser("part-of", help="List the units a unit is part of")
    command.add_argument("unit")

    for name in ("start", "stop", "restart"):
        command = commands.add_parser(name, help=f"{name.capitalize()} a unit")
        command.add_argument("unit")
        command.add_argument("--mode", default=Mode.REPLACE, help="Job mode (default: replace)")

    command = commands.add_parser("start-and-wait", help="Start a unit and wait for it to settle")
    command.add_argument("unit")
    command.add_argument("--wait", type=float, default=5, help="Seconds the state must stay unchanged")
    command.add_argument("--mode", default=Mode.REPLACE, help="Job mode (default: replace)")

    for name in ("reboot", "poweroff"):
        command = commands.add_parser(name, help=f"{name.capitalize()} the machine")
        command.add_argument(
            "--interactive", action="store_true", help="Allow interactive authorization"
        )

    return parser


def setup_logging(debug: bool):
    if "JOURNAL_STREAM" in os.environ:
        handler = JournalHandler()
    elif debug:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("[%(levelname)s:%(name)s] %(msg)s"))
    else:
        return

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if debug else logging.INFO)
    root_logger.addHandler(handler)


async def handle(connection, args) -> int:
    if args.command == "is-active":
        state = await api.unit_active_state(connection, args.unit)
        print(state)
        return 0 if state == "active" else EXIT_NOT_ACTIVE
    if args.command == "part-of":
        for unit in await api.unit_part_of(connection, args.unit):
            print(unit)
        return 0
    if args.command == "start":
        await api.unit_start(connection, args.unit, args.mode)
    elif args.command == "stop":
        await api.unit_stop(connection, args.unit, args.mode)
    elif args.command == "restart":
        await api.unit_restart(connection, args.unit, args.mode)
    elif args.command == "start-and-wait":
        status = await api.unit_start_and_wait(connection, args.unit, args.wait, args.mode)
        print(f"state={status.state} code={status.code} status={status.status}")
        return 0 if status.state == "active" else EXIT_NOT_ACTIVE
    elif args.command == "reboot":
        await api.reboot(connection, args.interactive)
    elif args.command == "poweroff":
        await api.power_off(connection, args.interactive)
    return 0


async def run(argv: list[str] | None = None) -> int:
    args = get_parser().parse_args(argv)
    setup_logging(args.debug)

    try:
        config = BusConfig.from_environ()
        if args.address is not None:
            config = dataclasses.replace(config, address=args.address)
        if args.timeout is not None:
            config = dataclasses.replace(config, call_timeout=args.timeout)

        async with await api.system(config) as connection:
            return await handle(connection, args)
    except SystemdBusException as e:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"sdbusctl: {e}", file=sys.stderr)
        return 1


def main():
    try:
        sys.exit(asyncio.run(run()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
