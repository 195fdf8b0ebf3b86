"""
systemdbus/manager.py - systemd service manager and login manager proxies
"""

import logging

from systemdbus.dbus.message import MessageFlags
from systemdbus.methods import (
    JOB_ERROR_MAP,
    UNIT_ERROR_MAP,
    RemoteMethod,
    check_mode,
    invoke,
)
from systemdbus.unit import UnitRef


logger = logging.getLogger("systemd")


class ServiceManager:
    """
    Proxy for ``org.freedesktop.systemd1.Manager``.
    """

    def __init__(self, connection):
        self.connection = connection

    async def get_unit(self, unit_name: str) -> UnitRef:
        """
        Resolve a loaded unit to its object path.

        Raises UnitNotFound if systemd has no such unit loaded.
        """
        path = await invoke(
            self.connection, RemoteMethod.GET_UNIT, unit_name, error_map=UNIT_ERROR_MAP
        )
        return UnitRef(path)

    async def _queue_job(self, method: RemoteMethod, unit_name: str, mode: str):
        # The manager takes the unit name directly, which also covers units
        # that are not loaded yet
        check_mode(mode)
        job = await invoke(
            self.connection, method, unit_name, str(mode), error_map=JOB_ERROR_MAP
        )
        logger.debug("Queued job %s for %s %s", job, method.value.member, unit_name)

    async def start_unit(self, unit_name: str, mode: str):
        await self._queue_job(RemoteMethod.START_UNIT, unit_name, mode)

    async def stop_unit(self, unit_name: str, mode: str):
        await self._queue_job(RemoteMethod.STOP_UNIT, unit_name, mode)

    async def restart_unit(self, unit_name: str, mode: str):
        await self._queue_job(RemoteMethod.RESTART_UNIT, unit_name, mode)


class LoginManager:
    """
    Proxy for ``org.freedesktop.login1.Manager``.

    Reboot and power off take effect immediately. Confirming with the user is
    up to the caller.
    """

    def __init__(self, connection):
        self.connection = connection

    async def _power_action(self, method: RemoteMethod, interactive: bool):
        if not isinstance(interactive, bool):
            raise TypeError(f"interactive must be a bool, not {type(interactive).__name__}")
        flags = MessageFlags(0)
        if interactive:
            flags |= MessageFlags.ALLOW_INTERACTIVE_AUTHORIZATION
        logger.info("Requesting %s", method.value.member)
        await invoke(self.connection, method, interactive, flags=flags)

    async def reboot(self, interactive: bool):
        await self._power_action(RemoteMethod.REBOOT, interactive)

    async def power_off(self, interactive: bool):
        await self._power_action(RemoteMethod.POWER_OFF, interactive)
