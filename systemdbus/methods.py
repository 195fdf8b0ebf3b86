"""
systemdbus/methods.py - The remote methods supported by systemdbus
"""

from dataclasses import dataclass
from enum import Enum, StrEnum

from systemdbus.dbus.message import MessageFlags
from systemdbus.exceptions import JobQueueError, MessageDecodeError, UnitNotFound


DBUS_SERVICE = "org.freedesktop.DBus"
DBUS_PATH = "/org/freedesktop/DBus"
DBUS_INTERFACE = "org.freedesktop.DBus"
PROPERTIES_INTERFACE = "org.freedesktop.DBus.Properties"

SYSTEMD_SERVICE = "org.freedesktop.systemd1"
SYSTEMD_PATH = "/org/freedesktop/systemd1"
MANAGER_INTERFACE = "org.freedesktop.systemd1.Manager"
UNIT_INTERFACE = "org.freedesktop.systemd1.Unit"
SERVICE_INTERFACE = "org.freedesktop.systemd1.Service"

LOGIN_SERVICE = "org.freedesktop.login1"
LOGIN_PATH = "/org/freedesktop/login1"
LOGIN_MANAGER_INTERFACE = "org.freedesktop.login1.Manager"

# Bus error names
UNKNOWN_OBJECT = "org.freedesktop.DBus.Error.UnknownObject"
NO_SUCH_UNIT = "org.freedesktop.systemd1.NoSuchUnit"
TRANSACTION_IS_DESTRUCTIVE = "org.freedesktop.systemd1.TransactionIsDestructive"
TRANSACTION_JOBS_CONFLICTING = "org.freedesktop.systemd1.TransactionJobsConflicting"
TRANSACTION_ORDER_IS_CYCLIC = "org.freedesktop.systemd1.TransactionOrderIsCyclic"
NO_ISOLATION = "org.freedesktop.systemd1.NoIsolation"

UNIT_ERROR_MAP = {
    NO_SUCH_UNIT: UnitNotFound,
    UNKNOWN_OBJECT: UnitNotFound,
}

JOB_ERROR_MAP = {
    **UNIT_ERROR_MAP,
    TRANSACTION_IS_DESTRUCTIVE: JobQueueError,
    TRANSACTION_JOBS_CONFLICTING: JobQueueError,
    TRANSACTION_ORDER_IS_CYCLIC: JobQueueError,
    NO_ISOLATION: JobQueueError,
}


class Mode(StrEnum):
    """
    Job modes understood by systemd. Any other non-empty string is passed
    through as well.
    """

    REPLACE = "replace"
    FAIL = "fail"
    ISOLATE = "isolate"
    IGNORE_DEPENDENCIES = "ignore-dependencies"
    IGNORE_REQUIREMENTS = "ignore-requirements"


def check_mode(mode: str):
    if not isinstance(mode, str) or not mode:
        raise ValueError(f"Job mode must be a non-empty string, not {mode!r}")


@dataclass(frozen=True, slots=True)
class MethodSignature:
    destination: str
    path: str | None
    interface: str
    member: str
    arguments: str = ""
    returns: str = ""


class RemoteMethod(Enum):
    """
    Every remote call made by systemdbus. A path of ``None`` means the object
    path is given per call.
    """

    HELLO = MethodSignature(DBUS_SERVICE, DBUS_PATH, DBUS_INTERFACE, "Hello", "", "s")
    GET_UNIT = MethodSignature(SYSTEMD_SERVICE, SYSTEMD_PATH, MANAGER_INTERFACE, "GetUnit", "s", "o")
    START_UNIT = MethodSignature(SYSTEMD_SERVICE, SYSTEMD_PATH, MANAGER_INTERFACE, "StartUnit", "ss", "o")
    STOP_UNIT = MethodSignature(SYSTEMD_SERVICE, SYSTEMD_PATH, MANAGER_INTERFACE, "StopUnit", "ss", "o")
    RESTART_UNIT = MethodSignature(SYSTEMD_SERVICE, SYSTEMD_PATH, MANAGER_INTERFACE, "RestartUnit", "ss", "o")
    UNIT_START = MethodSignature(SYSTEMD_SERVICE, None, UNIT_INTERFACE, "Start", "s", "o")
    GET_PROPERTY = MethodSignature(SYSTEMD_SERVICE, None, PROPERTIES_INTERFACE, "Get", "ss", "v")
    REBOOT = MethodSignature(LOGIN_SERVICE, LOGIN_PATH, LOGIN_MANAGER_INTERFACE, "Reboot", "b", "")
    POWER_OFF = MethodSignature(LOGIN_SERVICE, LOGIN_PATH, LOGIN_MANAGER_INTERFACE, "PowerOff", "b", "")


async def invoke(
    connection,
    method: RemoteMethod,
    *args,
    path: str | None = None,
    error_map: dict | None = None,
    flags: MessageFlags = MessageFlags(0),
):
    """
    Call method on connection and return the reply value.

    Methods without a return value return ``None``. An error reply is raised
    as the exception error_map gives for its name, or RemoteError.
    """
    signature = method.value
    if signature.path is None and path is None:
        raise ValueError(f"{method.name} requires an object path")

    reply = await connection.call(
        signature.destination,
        path or signature.path,
        signature.interface,
        signature.member,
        args,
        signature.arguments,
        flags=flags,
    )
    reply.raise_on_error(error_map)

    if reply.signature != signature.returns:
        raise MessageDecodeError(
            f"{signature.interface}.{signature.member} returned signature "
            f"{reply.signature!r}, expected {signature.returns!r}"
        )
    if not signature.returns:
        return None
    return reply.body[0]
