"""
systemdbus - Control systemd and logind over the system bus
"""

VERSION = "0.1.0"

from systemdbus.api import (  # noqa: E402
    UnitStatus,
    power_off,
    reboot,
    system,
    unit_active_state,
    unit_part_of,
    unit_restart,
    unit_start,
    unit_start_and_wait,
    unit_stop,
)
from systemdbus.cache import ConnectionCache  # noqa: E402
from systemdbus.config import BusConfig  # noqa: E402
from systemdbus.connection import Connection  # noqa: E402
from systemdbus.exceptions import (  # noqa: E402
    BusConnectError,
    BusTimeoutError,
    InvalidConfig,
    JobQueueError,
    MessageDecodeError,
    RemoteError,
    SystemdBusException,
    UnitNotFound,
)
from systemdbus.methods import Mode  # noqa: E402
