"""
systemdbus/dbus/socket.py - D-Bus transport over asyncio
"""

import asyncio
from dataclasses import dataclass, field
import logging
import os
from urllib.parse import unquote

from systemdbus.dbus.message import (
    MessageFlags,
    decode_message,
    encode_call,
    message_length,
)
from systemdbus.exceptions import BusConnectError, MessageDecodeError


logger = logging.getLogger("dbus")


MAX_SERIAL = 2**32 - 1


@dataclass(slots=True)
class BusAddress:
    transport: str
    options: dict[str, str] = field(default_factory=dict)

    @property
    def socket_path(self) -> str:
        """
        Path suitable for connecting a unix socket. Abstract socket names are
        prefixed with a nul byte.
        """
        if "path" in self.options:
            return self.options["path"]
        if "abstract" in self.options:
            return "\0" + self.options["abstract"]
        raise BusConnectError(f"Unix address has neither path nor abstract: {self}")

    def __str__(self):
        options = ",".join(f"{key}={value}" for key, value in self.options.items())
        return f"{self.transport}:{options}"


def parse_address(address: str) -> list[BusAddress]:
    """
    Parse a D-Bus server address string. Multiple addresses are separated by
    ``;`` and are tried in order.
    """
    addresses = []
    for entry in address.split(";"):
        if not entry:
            continue
        transport, sep, rest = entry.partition(":")
        if not sep or not transport:
            raise BusConnectError(f"Invalid bus address {entry!r}")
        options = {}
        for pair in rest.split(","):
            if not pair:
                continue
            key, eq, value = pair.partition("=")
            if not eq or not key:
                raise BusConnectError(f"Invalid bus address option {pair!r} in {entry!r}")
            options[key] = unquote(value)
        addresses.append(BusAddress(transport, options))
    if not addresses:
        raise BusConnectError(f"No usable bus address in {address!r}")
    return addresses


class DBusProtocol(asyncio.Protocol):
    """
    Frames the byte stream into messages.

    Before authentication completes, received data is split into SASL lines
    and queued for authenticate(). Afterwards complete messages are passed to
    ``handler.message_received()``. Transport loss and malformed data are
    reported through ``handler.connection_lost()``.
    """

    def __init__(self, handler=None):
        self.transport = None
        self.handler = handler
        self.buffer = b""
        self.authenticated = False
        self.auth_lines = asyncio.Queue()

    def connection_made(self, transport):
        self.transport = transport

    def connection_lost(self, exc):
        if not self.authenticated:
            # Wake up authenticate()
            self.auth_lines.put_nowait(None)
        if self.handler:
            self.handler.connection_lost(
                BusConnectError(f"Connection to bus lost: {exc}" if exc else "Connection to bus closed")
            )

    def data_received(self, data):
        self.buffer += data
        if self.authenticated:
            self.process_messages()
            return

        while b"\r\n" in self.buffer:
            line, _, self.buffer = self.buffer.partition(b"\r\n")
            self.auth_lines.put_nowait(line.decode("ascii", "replace"))

    def begin(self):
        """
        Switch to message mode after the BEGIN command has been sent.
        """
        self.authenticated = True
        self.process_messages()

    def process_messages(self):
        while self.buffer:
            try:
                length = message_length(self.buffer)
                if length is None or len(self.buffer) < length:
                    break
                message = decode_message(self.buffer[:length])
            except MessageDecodeError as e:
                logger.debug("Malformed message from bus: %s", e)
                self.buffer = b""
                if self.handler:
                    self.handler.connection_lost(e)
                self.transport.close()
                return

            self.buffer = self.buffer[length:]
            if self.handler:
                self.handler.message_received(message)

    async def read_auth_line(self) -> str | None:
        return await self.auth_lines.get()


class MessageWriter:
    def __init__(self, protocol: DBusProtocol, transport: asyncio.BaseTransport):
        self._protocol = protocol
        self._transport = transport
        self._serial = 0

    def next_serial(self, in_use=()) -> int:
        """
        Get the next serial, wrapping to 1 and skipping serials in in_use.
        """
        while True:
            self._serial += 1
            if self._serial > MAX_SERIAL:
                self._serial = 1
            if self._serial not in in_use:
                return self._serial

    def write_call(
        self,
        serial: int,
        destination: str | None,
        path: str,
        interface: str | None,
        member: str,
        args=(),
        signature: str = "",
        flags: MessageFlags = MessageFlags(0),
    ):
        """
        Write a method call with the given serial.

        The message is encoded completely before anything is written so a
        call never leaves a partial message on the wire.
        """
        data = encode_call(serial, destination, path, interface, member, args, signature, flags)
        self._transport.write(data)

    def is_closing(self) -> bool:
        return self._transport.is_closing()

    def close(self):
        """Close the writer."""
        self._transport.close()


async def authenticate(protocol: DBusProtocol, uid: int | None = None) -> str:
    """
    Authenticate with SASL EXTERNAL and switch the protocol to message mode.

    Returns the server GUID.
    """
    if uid is None:
        uid = os.getuid()

    protocol.transport.write(b"\0AUTH EXTERNAL " + str(uid).encode().hex().encode() + b"\r\n")

    line = await protocol.read_auth_line()
    if line is None:
        raise BusConnectError("Connection closed during authentication")
    if line.startswith("REJECTED"):
        raise BusConnectError(f"Authentication rejected by bus (server offers: {line[8:].strip()})")
    if not line.startswith("OK "):
        raise BusConnectError(f"Unexpected authentication reply {line!r}")

    guid = line[3:].strip()
    protocol.transport.write(b"BEGIN\r\n")
    protocol.begin()
    logger.debug("Authenticated with bus %s", guid)
    return guid


async def open_bus_connection(address: str, handler=None) -> tuple[DBusProtocol, MessageWriter]:
    """
    Open and authenticate a connection to the bus at address, returning the
    protocol and a MessageWriter.
    """
    loop = asyncio.get_running_loop()
    failures = []

    for bus_address in parse_address(address):
        if bus_address.transport != "unix":
            failures.append(f"{bus_address}: unsupported transport")
            continue

        protocol = DBusProtocol(handler)
        try:
            transport, _ = await loop.create_unix_connection(
                lambda: protocol, bus_address.socket_path
            )
        except OSError as e:
            failures.append(f"{bus_address}: {e}")
            continue

        logger.debug("Connected to %s", bus_address)
        try:
            await authenticate(protocol)
        except BaseException:
            transport.close()
            raise

        return protocol, MessageWriter(protocol, transport)

    raise BusConnectError("Unable to connect to bus: " + "; ".join(failures))
