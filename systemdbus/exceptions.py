"""
systemdbus/exceptions.py - Exceptions for systemdbus
"""


class SystemdBusException(Exception):
    pass


class InvalidConfig(SystemdBusException):
    pass


class BusConnectError(SystemdBusException):
    """
    The bus could not be reached, authentication was rejected, or the
    connection was closed or lost.
    """
    pass


class BusTimeoutError(SystemdBusException, TimeoutError):
    pass


class MessageDecodeError(SystemdBusException):
    """
    Malformed message data. The connection it came from should be considered
    broken.
    """
    pass


class RemoteError(SystemdBusException):
    """
    An error reply sent by the remote side.

    ``name`` is the bus error name (e.g. ``org.freedesktop.DBus.Error.AccessDenied``)
    and ``message`` the human readable description, if any.
    """
    def __init__(self, name: str, message: str = ""):
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class UnitNotFound(RemoteError):
    pass


class JobQueueError(RemoteError):
    pass
