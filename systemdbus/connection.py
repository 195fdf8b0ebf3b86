"""
systemdbus/connection.py - Bus connection with reply correlation
"""

import asyncio
import logging

from systemdbus.config import BusConfig
from systemdbus.dbus.message import (
    Message,
    MessageFlags,
    MessageType,
    Reply,
    reply_from_message,
)
from systemdbus.dbus.socket import DBusProtocol, MessageWriter, open_bus_connection
from systemdbus.exceptions import (
    BusConnectError,
    BusTimeoutError,
    SystemdBusException,
)
from systemdbus.methods import RemoteMethod, invoke


logger = logging.getLogger("connection")


class PendingCalls:
    """
    Reply slots for in-flight calls, keyed by serial.

    Each slot is a future that is resolved at most once. Registration,
    resolution and removal all happen on the event loop thread, which is what
    keeps the table consistent between concurrent callers.
    """

    def __init__(self):
        self.calls: dict[int, asyncio.Future] = {}
        self.error: Exception | None = None

    def __contains__(self, serial: int) -> bool:
        return serial in self.calls

    def __len__(self) -> int:
        return len(self.calls)

    def register(self, serial: int) -> asyncio.Future:
        if serial in self.calls:
            raise RuntimeError(f"Serial {serial} is already in flight")
        future = asyncio.get_running_loop().create_future()
        self.calls[serial] = future
        return future

    def discard(self, serial: int):
        self.calls.pop(serial, None)

    def message_received(self, message: Message):
        if message.type not in (MessageType.METHOD_RETURN, MessageType.ERROR):
            logger.debug("Ignoring %s message", message.type.name)
            return

        future = self.calls.pop(message.reply_serial, None)
        if future is None:
            logger.debug("Dropping reply for unknown serial %s", message.reply_serial)
            return
        if not future.done():
            future.set_result(reply_from_message(message))

    def connection_lost(self, exc: Exception):
        if self.error is None:
            self.error = exc
        calls, self.calls = self.calls, {}
        for future in calls.values():
            if not future.done():
                future.set_exception(exc)


class Connection:
    """
    An authenticated connection to the system bus.

    Any number of calls may be in flight at once. Replies are matched to
    calls by serial so they may arrive in any order.

    The connection is closed by close(), by leaving an ``async with`` block,
    or when it is garbage collected.
    """

    def __init__(self, protocol: DBusProtocol, writer: MessageWriter, config: BusConfig):
        self.protocol = protocol
        self.writer = writer
        self.config = config
        self.loop = asyncio.get_running_loop()
        self.pending = PendingCalls()
        self.unique_name: str | None = None
        protocol.handler = self.pending

    @property
    def closed(self) -> bool:
        return self.writer.is_closing() or self.pending.error is not None

    async def call(
        self,
        destination: str | None,
        path: str,
        interface: str | None,
        member: str,
        args=(),
        signature: str = "",
        timeout: float | None = None,
        flags: MessageFlags = MessageFlags(0),
    ) -> Reply:
        """
        Call a remote method and wait for its reply.

        Raises BusTimeoutError if no reply arrives within timeout seconds
        (default ``config.call_timeout``) and BusConnectError if the connection
        is or becomes unusable.
        """
        if self.closed:
            raise BusConnectError("Connection is closed") from self.pending.error

        if timeout is None:
            timeout = self.config.call_timeout

        # Serials still awaiting a reply are skipped once the counter wraps
        serial = self.writer.next_serial(self.pending)
        future = self.pending.register(serial)

        try:
            self.writer.write_call(serial, destination, path, interface, member, args, signature, flags)
            logger.debug("Called %s.%s on %s (serial %s)", interface, member, path, serial)
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError:
            raise BusTimeoutError(
                f"No reply to {interface}.{member} (serial {serial}) within {timeout} seconds"
            ) from None
        finally:
            self.pending.discard(serial)

    def close(self):
        if not self.writer.is_closing():
            logger.debug("Closing connection %s", self.unique_name)
            self.writer.close()
        self.pending.connection_lost(BusConnectError("Connection closed"))

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.close()

    def __del__(self):
        if not self.writer.is_closing() and not self.loop.is_closed():
            self.writer.close()


async def connect(config: BusConfig | None = None) -> Connection:
    """
    Connect to the system bus and register with the bus daemon.
    """
    if config is None:
        config = BusConfig.from_environ()

    connection = None
    # The Hello round trip counts towards connect_timeout as well
    try:
        async with asyncio.timeout(config.connect_timeout):
            protocol, writer = await open_bus_connection(config.address)
            connection = Connection(protocol, writer, config)
            connection.unique_name = await invoke(connection, RemoteMethod.HELLO)
    except TimeoutError:
        if connection is not None:
            connection.close()
        raise BusConnectError(f"Timed out connecting to {config.address}") from None
    except BusConnectError:
        if connection is not None:
            connection.close()
        raise
    except SystemdBusException as e:
        if connection is not None:
            connection.close()
        raise BusConnectError(f"Bus did not accept Hello: {e}") from e

    logger.debug("Connected to %s as %s", config.address, connection.unique_name)
    return connection
