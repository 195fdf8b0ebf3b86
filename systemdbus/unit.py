"""
systemdbus/unit.py - systemd unit proxy
"""

from dataclasses import dataclass
import logging
from typing import Any

from systemdbus.exceptions import MessageDecodeError
from systemdbus.methods import (
    JOB_ERROR_MAP,
    SERVICE_INTERFACE,
    UNIT_ERROR_MAP,
    UNIT_INTERFACE,
    RemoteMethod,
    check_mode,
    invoke,
)


logger = logging.getLogger("systemd")


UNIT_PATH_PREFIX = "/org/freedesktop/systemd1/unit/"


def unit_path(unit_name: str) -> str:
    """
    Get the object path systemd uses for unit_name.

    Every byte outside ``[A-Za-z0-9]``, and a leading digit, is escaped as
    ``_`` followed by two lowercase hex digits. An empty name becomes ``_``.
    """
    if not unit_name:
        return UNIT_PATH_PREFIX + "_"

    label = []
    for i, byte in enumerate(unit_name.encode()):
        char = chr(byte)
        if char.isascii() and (char.isalpha() or (char.isdigit() and i > 0)):
            label.append(char)
        else:
            label.append(f"_{byte:02x}")
    return UNIT_PATH_PREFIX + "".join(label)


@dataclass(frozen=True, slots=True)
class UnitRef:
    path: str
    interface: str = UNIT_INTERFACE

    @classmethod
    def from_name(cls, unit_name: str) -> "UnitRef":
        return cls(unit_path(unit_name))


class UnitProxy:
    """
    Read properties of, and start, one unit object.
    """

    def __init__(self, connection, ref: UnitRef):
        self.connection = connection
        self.ref = ref

    async def get_property(self, interface: str, name: str, signature: str) -> Any:
        variant = await invoke(
            self.connection,
            RemoteMethod.GET_PROPERTY,
            interface,
            name,
            path=self.ref.path,
            error_map=UNIT_ERROR_MAP,
        )
        if variant.signature != signature:
            raise MessageDecodeError(
                f"Property {interface}.{name} has signature {variant.signature!r}, expected {signature!r}"
            )
        return variant.value

    async def active_state(self) -> str:
        return await self.get_property(self.ref.interface, "ActiveState", "s")

    async def sub_state(self) -> str:
        return await self.get_property(self.ref.interface, "SubState", "s")

    async def part_of(self) -> list[str]:
        return list(await self.get_property(self.ref.interface, "PartOf", "as"))

    async def exec_main_status(self) -> int:
        """
        Exit status of the main process. Only service units have this.
        """
        return await self.get_property(SERVICE_INTERFACE, "ExecMainStatus", "i")

    async def start(self, mode: str):
        check_mode(mode)
        job = await invoke(
            self.connection,
            RemoteMethod.UNIT_START,
            str(mode),
            path=self.ref.path,
            error_map=JOB_ERROR_MAP,
        )
        logger.debug("Queued job %s to start %s", job, self.ref.path)
