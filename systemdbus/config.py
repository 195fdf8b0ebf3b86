"""
systemdbus/config.py - Connection settings
"""

from dataclasses import dataclass
import os
from typing import Mapping

from systemdbus.exceptions import InvalidConfig


DEFAULT_SYSTEM_BUS_ADDRESS = "unix:path=/var/run/dbus/system_bus_socket"

# Same default reply timeout as libdbus
DEFAULT_CALL_TIMEOUT = 25.0

DEFAULT_CONNECT_TIMEOUT = 5.0

DEFAULT_POLL_INTERVAL = 0.5


@dataclass(slots=True)
class BusConfig:
    address: str = DEFAULT_SYSTEM_BUS_ADDRESS
    call_timeout: float = DEFAULT_CALL_TIMEOUT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def __post_init__(self):
        if not self.address:
            raise InvalidConfig("Bus address must not be empty")
        for name in ("call_timeout", "connect_timeout", "poll_interval"):
            if getattr(self, name) <= 0:
                raise InvalidConfig(f"{name} must be positive")

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "BusConfig":
        """
        Build a configuration from the environment.

        ``DBUS_SYSTEM_BUS_ADDRESS`` overrides the bus address the same way it
        does for libdbus and sd-bus. ``SYSTEMDBUS_CALL_TIMEOUT`` and
        ``SYSTEMDBUS_CONNECT_TIMEOUT`` are given in seconds.
        """
        if environ is None:
            environ = os.environ

        kwargs = {}
        address = environ.get("DBUS_SYSTEM_BUS_ADDRESS")
        if address:
            kwargs["address"] = address
        for variable, name in (
            ("SYSTEMDBUS_CALL_TIMEOUT", "call_timeout"),
            ("SYSTEMDBUS_CONNECT_TIMEOUT", "connect_timeout"),
        ):
            if variable in environ:
                try:
                    kwargs[name] = float(environ[variable])
                except ValueError:
                    raise InvalidConfig(f"Invalid value for {variable}: {environ[variable]!r}") from None
        return cls(**kwargs)
