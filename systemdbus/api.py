"""
systemdbus/api.py - Public functions

Every function except system() takes the connection to use as its first
argument. Connections are never shared implicitly; hold on to the one
returned by system(), or use ConnectionCache, to reuse it.
"""

import asyncio
from dataclasses import dataclass
import logging

from systemdbus.config import BusConfig
from systemdbus.connection import Connection, connect
from systemdbus.manager import LoginManager, ServiceManager
from systemdbus.unit import UnitProxy, UnitRef


logger = logging.getLogger("systemdbus")


@dataclass(slots=True)
class UnitStatus:
    """
    Outcome of unit_start_and_wait(). Field names follow systemctl's output.
    """

    state: str
    code: str
    status: int


async def system(config: BusConfig | None = None) -> Connection:
    """
    Open a new connection to the system bus.
    """
    return await connect(config)


async def unit_active_state(connection: Connection, unit_name: str) -> str:
    ref = await ServiceManager(connection).get_unit(unit_name)
    return await UnitProxy(connection, ref).active_state()


async def unit_part_of(connection: Connection, unit_name: str) -> list[str]:
    ref = await ServiceManager(connection).get_unit(unit_name)
    return await UnitProxy(connection, ref).part_of()


async def unit_start(connection: Connection, unit_name: str, mode: str):
    await ServiceManager(connection).start_unit(unit_name, mode)


async def unit_stop(connection: Connection, unit_name: str, mode: str):
    await ServiceManager(connection).stop_unit(unit_name, mode)


async def unit_restart(connection: Connection, unit_name: str, mode: str):
    await ServiceManager(connection).restart_unit(unit_name, mode)


async def unit_start_and_wait(
    connection: Connection,
    unit_name: str,
    wait_interval: float,
    mode: str,
) -> UnitStatus:
    """
    Start a unit and wait for its active state to settle.

    The unit is addressed by its escaped object path, so it does not need to
    be loaded beforehand. After starting, the active state is polled every
    ``config.poll_interval`` seconds until it has stayed the same for
    wait_interval seconds.
    """
    unit = UnitProxy(connection, UnitRef.from_name(unit_name))
    loop = asyncio.get_running_loop()
    poll_interval = connection.config.poll_interval

    state = await unit.active_state()
    await unit.start(mode)

    changed_at = loop.time()
    while (remaining := wait_interval - (loop.time() - changed_at)) > 0:
        await asyncio.sleep(min(poll_interval, remaining))
        current = await unit.active_state()
        if current != state:
            logger.debug("%s changed from %s to %s", unit_name, state, current)
            state = current
            changed_at = loop.time()

    status = await unit.exec_main_status()
    code = await unit.sub_state()
    return UnitStatus(state, code, status)


async def reboot(connection: Connection, interactive: bool):
    await LoginManager(connection).reboot(interactive)


async def power_off(connection: Connection, interactive: bool):
    await LoginManager(connection).power_off(interactive)
