import asyncio
import random

import pytest

from systemdbus.connection import connect
from systemdbus.dbus.message import ErrorReply, MethodReturn
from systemdbus.exceptions import (
    BusConnectError,
    BusTimeoutError,
    MessageDecodeError,
)

from tests.conftest_bus import NO_REPLY, MockBusError, RawReply


TEST_INTERFACE = "org.example.Test"


async def echo(message):
    (text, delay) = message.body
    await asyncio.sleep(delay)
    return "s", (text,)


def call_echo(connection, text, delay=0.0, **kwargs):
    return connection.call(
        "org.example", "/org/example", TEST_INTERFACE, "Echo", (text, delay), "sd", **kwargs
    )


async def test_hello(mockbus, bus):
    assert bus.unique_name == ":1.1"
    assert not bus.closed
    (hello,) = mockbus.calls
    assert hello.member == "Hello"
    assert hello.destination == "org.freedesktop.DBus"


async def test_reply(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", echo)

    reply = await call_echo(bus, "ping")

    assert isinstance(reply, MethodReturn)
    assert reply.signature == "s"
    assert reply.body == ("ping",)
    assert len(bus.pending) == 0


async def test_replies_out_of_order(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", echo)

    # Later calls are answered first
    replies = await asyncio.gather(
        *(call_echo(bus, f"call {i}", 0.1 - i * 0.02) for i in range(5))
    )

    assert [reply.body for reply in replies] == [(f"call {i}",) for i in range(5)]
    assert [reply.reply_serial for reply in mockbus.replies[1:]] == [
        call.serial for call in reversed(mockbus.calls[1:])
    ]


async def test_many_concurrent_calls(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", echo)

    texts = [f"unit-{i}.service" for i in range(100)]
    replies = await asyncio.gather(
        *(call_echo(bus, text, random.uniform(0, 0.05)) for text in texts)
    )

    assert [reply.body[0] for reply in replies] == texts
    assert len(bus.pending) == 0


async def test_error_reply(mockbus, bus):
    def fail(message):
        raise MockBusError("org.example.Error.Failed", "Nope")

    mockbus.handle(TEST_INTERFACE, "Echo", fail)

    reply = await call_echo(bus, "ping")

    assert isinstance(reply, ErrorReply)
    assert reply.name == "org.example.Error.Failed"
    assert reply.message == "Nope"


async def test_timeout(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", lambda message: NO_REPLY)

    with pytest.raises(BusTimeoutError):
        await call_echo(bus, "ping", timeout=0.05)

    assert len(bus.pending) == 0
    assert not bus.closed


async def test_timeout_is_builtin_timeout(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", lambda message: NO_REPLY)

    with pytest.raises(TimeoutError):
        await call_echo(bus, "ping", timeout=0.05)


async def test_late_reply_is_dropped(mockbus, bus):
    release = asyncio.Event()

    async def slow(message):
        await release.wait()
        return "s", ("late",)

    mockbus.handle(TEST_INTERFACE, "Echo", slow)

    with pytest.raises(BusTimeoutError):
        await call_echo(bus, "ping", timeout=0.05)

    mockbus.handle(TEST_INTERFACE, "Echo", echo)
    release.set()
    reply = await call_echo(bus, "pong")

    assert reply.body == ("pong",)
    assert len(bus.pending) == 0


async def test_call_on_closed_connection(mockbus, bus):
    bus.close()

    assert bus.closed
    with pytest.raises(BusConnectError):
        await call_echo(bus, "ping")


async def test_close_twice(bus):
    async with bus:
        pass
    bus.close()

    assert bus.closed


async def test_disconnect_fails_pending_calls(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", lambda message: NO_REPLY)

    tasks = [asyncio.create_task(call_echo(bus, f"call {i}")) for i in range(3)]
    while len(mockbus.calls) < 4:
        await asyncio.sleep(0.01)
    await mockbus.disconnect_clients()

    for task in tasks:
        with pytest.raises(BusConnectError):
            await task
    assert bus.closed
    assert len(bus.pending) == 0

    with pytest.raises(BusConnectError):
        await call_echo(bus, "again")


async def test_malformed_reply(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", lambda message: RawReply(b"x" * 16))

    with pytest.raises(MessageDecodeError):
        await call_echo(bus, "ping")

    assert bus.closed


async def test_connections_are_independent(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", echo)

    async with await connect(mockbus.config) as other:
        assert other.unique_name == ":1.2"
        reply = await call_echo(other, "other")
        assert reply.body == ("other",)

    assert other.closed
    reply = await call_echo(bus, "first")
    assert reply.body == ("first",)


async def test_connect_missing_socket(mockbus):
    config = mockbus.config
    config.address = f"unix:path={mockbus.path}-missing"

    with pytest.raises(BusConnectError):
        await connect(config)


async def test_connect_auth_rejected(mockbus):
    mockbus.reject_auth = True

    with pytest.raises(BusConnectError):
        await connect(mockbus.config)


async def test_connect_hello_rejected(mockbus):
    def reject(message):
        raise MockBusError("org.freedesktop.DBus.Error.AccessDenied", "Go away")

    mockbus.handle("org.freedesktop.DBus", "Hello", reject)

    with pytest.raises(BusConnectError) as excinfo:
        await connect(mockbus.config)
    assert "Go away" in str(excinfo.value)


async def test_connect_hello_timeout(mockbus):
    mockbus.handle("org.freedesktop.DBus", "Hello", lambda message: NO_REPLY)
    config = mockbus.config
    config.connect_timeout = 0.1
    config.call_timeout = 2

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(BusConnectError):
        await connect(config)
    assert loop.time() - started < 0.5


async def test_connect_uses_environment(mockbus, monkeypatch):
    monkeypatch.setenv("DBUS_SYSTEM_BUS_ADDRESS", mockbus.address)

    connection = await connect()
    try:
        assert connection.config.address == mockbus.address
        assert connection.unique_name == ":1.1"
    finally:
        connection.close()


async def test_cancelled_call_releases_slot(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", lambda message: NO_REPLY)

    task = asyncio.create_task(call_echo(bus, "ping"))
    while len(bus.pending) == 0:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert len(bus.pending) == 0
    assert not bus.closed


async def test_serial_wrap_skips_call_in_flight(mockbus, bus):
    mockbus.handle(TEST_INTERFACE, "Echo", echo)
    mockbus.handle(TEST_INTERFACE, "Wait", lambda message: NO_REPLY)

    bus.writer._serial = 1
    waiting = asyncio.create_task(
        bus.call("org.example", "/org/example", TEST_INTERFACE, "Wait")
    )
    while 2 not in bus.pending:
        await asyncio.sleep(0.01)

    # Wrap back onto the serial still held by the Wait call
    bus.writer._serial = 1
    reply = await call_echo(bus, "ping")

    assert reply.body == ("ping",)
    assert mockbus.calls_to(TEST_INTERFACE, "Echo")[0].serial == 3
    assert 2 in bus.pending
    assert not waiting.done()

    waiting.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiting
    assert len(bus.pending) == 0


async def test_unencodable_call_releases_slot(mockbus, bus):
    with pytest.raises(ValueError):
        await bus.call("org.example", "/org/example", TEST_INTERFACE, "Echo", (-1,), "u")

    assert len(bus.pending) == 0
    assert mockbus.calls_to(TEST_INTERFACE, "Echo") == []
    assert not bus.closed
