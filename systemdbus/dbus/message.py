"""
systemdbus/dbus/message.py - D-Bus message marshalling
"""

from ctypes import (
    BigEndianStructure,
    LittleEndianStructure,
    c_uint8,
    c_uint32,
    sizeof,
)
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
import re
import struct
from typing import Any

from systemdbus.exceptions import MessageDecodeError, RemoteError


PROTOCOL_VERSION = 1

MAX_MESSAGE_LENGTH = 2**27
MAX_ARRAY_LENGTH = 2**26

LITTLE_ENDIAN = ord("l")
BIG_ENDIAN = ord("B")


class MessageType(IntEnum):
    """
    D-Bus message type
    """

    METHOD_CALL = 1
    METHOD_RETURN = 2
    ERROR = 3
    SIGNAL = 4


class MessageFlags(IntFlag):
    """
    D-Bus message flags
    """

    NO_REPLY_EXPECTED = 0x1
    NO_AUTO_START = 0x2
    ALLOW_INTERACTIVE_AUTHORIZATION = 0x4


class HeaderField(IntEnum):
    """
    Header field codes
    """

    PATH = 1
    INTERFACE = 2
    MEMBER = 3
    ERROR_NAME = 4
    REPLY_SERIAL = 5
    DESTINATION = 6
    SENDER = 7
    SIGNATURE = 8
    UNIX_FDS = 9


HEADER_FIELD_SIGNATURES = {
    HeaderField.PATH: "o",
    HeaderField.INTERFACE: "s",
    HeaderField.MEMBER: "s",
    HeaderField.ERROR_NAME: "s",
    HeaderField.REPLY_SERIAL: "u",
    HeaderField.DESTINATION: "s",
    HeaderField.SENDER: "s",
    HeaderField.SIGNATURE: "g",
    HeaderField.UNIX_FDS: "u",
}

REQUIRED_HEADER_FIELDS = {
    MessageType.METHOD_CALL: (HeaderField.PATH, HeaderField.MEMBER),
    MessageType.METHOD_RETURN: (HeaderField.REPLY_SERIAL,),
    MessageType.ERROR: (HeaderField.ERROR_NAME, HeaderField.REPLY_SERIAL),
    MessageType.SIGNAL: (HeaderField.PATH, HeaderField.INTERFACE, HeaderField.MEMBER),
}

# struct format for each fixed size type
FIXED_TYPES = {
    "y": "B",
    "b": "I",
    "n": "h",
    "q": "H",
    "i": "i",
    "u": "I",
    "x": "q",
    "t": "Q",
    "d": "d",
}

ALIGNMENT = {
    "y": 1,
    "b": 4,
    "n": 2,
    "q": 2,
    "i": 4,
    "u": 4,
    "x": 8,
    "t": 8,
    "d": 8,
    "s": 4,
    "o": 4,
    "g": 1,
    "a": 4,
    "(": 8,
    "{": 8,
    "v": 1,
}

OBJECT_PATH_RE = re.compile(r"^/$|^(/[A-Za-z0-9_]+)+$")


class SignatureError(ValueError):
    pass


def align(offset: int, alignment: int) -> int:
    """
    Get the offset after padding to alignment
    """
    return (offset + alignment - 1) & ~(alignment - 1)


def _complete_type_end(signature: str, start: int) -> int:
    """
    Get the index just past the single complete type starting at start
    """
    if start >= len(signature):
        raise SignatureError(f"Incomplete signature {signature!r}")
    code = signature[start]
    if code in FIXED_TYPES or code in "sogv":
        return start + 1
    if code == "a":
        return _complete_type_end(signature, start + 1)
    if code == "(":
        idx = start + 1
        if idx < len(signature) and signature[idx] == ")":
            raise SignatureError(f"Empty struct in signature {signature!r}")
        while idx < len(signature) and signature[idx] != ")":
            idx = _complete_type_end(signature, idx)
        if idx >= len(signature):
            raise SignatureError(f"Unterminated struct in signature {signature!r}")
        return idx + 1
    if code == "{":
        if start == 0 or signature[start - 1] != "a":
            raise SignatureError(f"Dict entry outside array in signature {signature!r}")
        key_end = _complete_type_end(signature, start + 1)
        if signature[start + 1] not in FIXED_TYPES and signature[start + 1] not in "sog":
            raise SignatureError(f"Dict key must be a basic type in signature {signature!r}")
        idx = _complete_type_end(signature, key_end)
        if idx >= len(signature) or signature[idx] != "}":
            raise SignatureError(f"Dict entry must have exactly two types in signature {signature!r}")
        return idx + 1
    raise SignatureError(f"Unknown type code {code!r} in signature {signature!r}")


def split_signature(signature: str) -> list[str]:
    """
    Split a signature into its complete types.
    """
    types = []
    idx = 0
    while idx < len(signature):
        end = _complete_type_end(signature, idx)
        types.append(signature[idx:end])
        idx = end
    return types


@dataclass(frozen=True, slots=True)
class Variant:
    signature: str
    value: Any


class Marshaller:
    """
    Serializes values into a buffer.

    ``offset`` is the position of the start of the buffer within the message
    so padding is computed correctly for data that does not start at zero.
    """

    def __init__(self, byteorder: str = "<", offset: int = 0):
        self.byteorder = byteorder
        self.offset = offset
        self.buffer = bytearray()

    def pad(self, alignment: int):
        position = self.offset + len(self.buffer)
        self.buffer.extend(b"\0" * (align(position, alignment) - position))

    def write_all(self, signature: str, values):
        types = split_signature(signature)
        values = tuple(values)
        if len(types) != len(values):
            raise ValueError(f"Signature {signature!r} takes {len(types)} values, got {len(values)}")
        for type_, value in zip(types, values):
            self.write(type_, value)

    def write(self, signature: str, value: Any):
        code = signature[0]
        if code in FIXED_TYPES:
            if code == "b":
                if not isinstance(value, bool):
                    raise TypeError(f"Expected bool, got {type(value).__name__}")
                value = int(value)
            self.pad(ALIGNMENT[code])
            try:
                self.buffer.extend(struct.pack(self.byteorder + FIXED_TYPES[code], value))
            except struct.error as e:
                raise ValueError(f"Invalid value {value!r} for type {code!r}: {e}") from None
        elif code in "so":
            if not isinstance(value, str):
                raise TypeError(f"Expected str, got {type(value).__name__}")
            if code == "o" and not OBJECT_PATH_RE.match(value):
                raise ValueError(f"Invalid object path {value!r}")
            data = value.encode()
            self.pad(4)
            self.buffer.extend(struct.pack(self.byteorder + "I", len(data)))
            self.buffer.extend(data + b"\0")
        elif code == "g":
            split_signature(value)
            data = value.encode()
            self.buffer.extend(struct.pack("B", len(data)))
            self.buffer.extend(data + b"\0")
        elif code == "v":
            if not isinstance(value, Variant):
                raise TypeError(f"Expected Variant, got {type(value).__name__}")
            if len(split_signature(value.signature)) != 1:
                raise ValueError(f"Variant must hold a single complete type, not {value.signature!r}")
            self.write("g", value.signature)
            self.write(value.signature, value.value)
        elif code == "a":
            element = signature[1:]
            self.pad(4)
            length_at = len(self.buffer)
            self.buffer.extend(b"\0\0\0\0")
            self.pad(ALIGNMENT[element[0]])
            start = len(self.buffer)
            items = value.items() if element[0] == "{" else value
            for item in items:
                self.write(element, item)
            length = len(self.buffer) - start
            if length > MAX_ARRAY_LENGTH:
                raise ValueError(f"Array of {length} bytes exceeds maximum length")
            struct.pack_into(self.byteorder + "I", self.buffer, length_at, length)
        elif code in "({":
            self.pad(8)
            self.write_all(signature[1:-1], value)
        else:
            raise SignatureError(f"Unknown type code {code!r}")


class Unmarshaller:
    """
    Reads values from a buffer. Every read is bounds checked and raises
    MessageDecodeError on truncated or invalid data.
    """

    def __init__(self, data: bytes, byteorder: str = "<", offset: int = 0):
        self.data = data
        self.byteorder = byteorder
        self.offset = offset

    def align(self, alignment: int):
        offset = align(self.offset, alignment)
        if offset > len(self.data):
            raise MessageDecodeError("Truncated message")
        self.offset = offset

    def take(self, length: int) -> bytes:
        if self.offset + length > len(self.data):
            raise MessageDecodeError("Truncated message")
        data = self.data[self.offset:self.offset + length]
        self.offset += length
        return bytes(data)

    def read_all(self, signature: str) -> tuple:
        try:
            types = split_signature(signature)
        except SignatureError as e:
            raise MessageDecodeError(str(e)) from None
        return tuple(self.read(type_) for type_ in types)

    def _read_fixed(self, code: str):
        fmt = self.byteorder + FIXED_TYPES[code]
        self.align(ALIGNMENT[code])
        (value,) = struct.unpack(fmt, self.take(struct.calcsize(fmt)))
        return value

    def _read_string(self, length: int) -> str:
        data = self.take(length + 1)
        if data[-1] != 0:
            raise MessageDecodeError("String is not nul terminated")
        try:
            return data[:-1].decode()
        except UnicodeDecodeError:
            raise MessageDecodeError("String is not valid UTF-8") from None

    def read(self, signature: str) -> Any:
        code = signature[0]
        if code in FIXED_TYPES:
            value = self._read_fixed(code)
            if code == "b":
                if value not in (0, 1):
                    raise MessageDecodeError(f"Invalid boolean value {value}")
                return bool(value)
            return value
        if code in "so":
            value = self._read_string(self._read_fixed("u"))
            if code == "o" and not OBJECT_PATH_RE.match(value):
                raise MessageDecodeError(f"Invalid object path {value!r}")
            return value
        if code == "g":
            value = self._read_string(self._read_fixed("y"))
            try:
                split_signature(value)
            except SignatureError as e:
                raise MessageDecodeError(str(e)) from None
            return value
        if code == "v":
            variant_signature = self.read("g")
            try:
                types = split_signature(variant_signature)
            except SignatureError as e:
                raise MessageDecodeError(str(e)) from None
            if len(types) != 1:
                raise MessageDecodeError(f"Variant signature {variant_signature!r} is not a single type")
            return Variant(variant_signature, self.read(variant_signature))
        if code == "a":
            length = self._read_fixed("u")
            if length > MAX_ARRAY_LENGTH:
                raise MessageDecodeError(f"Array length {length} exceeds maximum")
            element = signature[1:]
            self.align(ALIGNMENT[element[0]])
            end = self.offset + length
            if end > len(self.data):
                raise MessageDecodeError("Truncated message")
            items = []
            while self.offset < end:
                items.append(self.read(element))
            if self.offset != end:
                raise MessageDecodeError("Array contents overrun array length")
            if element[0] == "{":
                return dict(items)
            return items
        if code in "({":
            self.align(8)
            return self.read_all(signature[1:-1])
        raise MessageDecodeError(f"Unknown type code {code!r}")


class _FixedHeaderFields:
    _fields_ = [
        ("endian", c_uint8),
        ("type", c_uint8),
        ("flags", c_uint8),
        ("version", c_uint8),
        ("body_length", c_uint32),
        ("serial", c_uint32),
        ("fields_length", c_uint32),
    ]


class LittleEndianHeader(LittleEndianStructure):
    _fields_ = _FixedHeaderFields._fields_


class BigEndianHeader(BigEndianStructure):
    _fields_ = _FixedHeaderFields._fields_


HEADER_LENGTH = sizeof(LittleEndianHeader)


def _header_class(endian: int) -> type:
    if endian == LITTLE_ENDIAN:
        return LittleEndianHeader
    if endian == BIG_ENDIAN:
        return BigEndianHeader
    raise MessageDecodeError(f"Invalid endianness marker {endian:#x}")


def message_length(data: bytes) -> int | None:
    """
    Get the total length of the message at the start of data. Returns ``None``
    if not enough data has arrived to tell.
    """
    if len(data) < HEADER_LENGTH:
        return None
    header = _header_class(data[0]).from_buffer_copy(bytes(data[:HEADER_LENGTH]))
    length = align(HEADER_LENGTH + header.fields_length, 8) + header.body_length
    if length > MAX_MESSAGE_LENGTH:
        raise MessageDecodeError(f"Message length {length} exceeds maximum")
    return length


@dataclass(slots=True)
class Message:
    type: MessageType
    serial: int
    flags: MessageFlags = MessageFlags(0)
    path: str | None = None
    interface: str | None = None
    member: str | None = None
    error_name: str | None = None
    reply_serial: int | None = None
    destination: str | None = None
    sender: str | None = None
    signature: str = ""
    body: tuple = field(default_factory=tuple)

    _header_attributes = {
        HeaderField.PATH: "path",
        HeaderField.INTERFACE: "interface",
        HeaderField.MEMBER: "member",
        HeaderField.ERROR_NAME: "error_name",
        HeaderField.REPLY_SERIAL: "reply_serial",
        HeaderField.DESTINATION: "destination",
        HeaderField.SENDER: "sender",
    }

    def pack(self) -> bytes:
        """
        Serialize as a little endian message.
        """
        if not 0 < self.serial < 2**32:
            raise ValueError(f"Invalid serial {self.serial}")

        body = Marshaller()
        body.write_all(self.signature, self.body)

        fields = Marshaller(offset=HEADER_LENGTH)
        for code, attribute in self._header_attributes.items():
            value = getattr(self, attribute)
            if value is not None:
                fields.write("(yv)", (code, Variant(HEADER_FIELD_SIGNATURES[code], value)))
        if self.signature:
            fields.write("(yv)", (HeaderField.SIGNATURE, Variant("g", self.signature)))

        header = LittleEndianHeader(
            endian=LITTLE_ENDIAN,
            type=self.type,
            flags=self.flags,
            version=PROTOCOL_VERSION,
            body_length=len(body.buffer),
            serial=self.serial,
            fields_length=len(fields.buffer),
        )
        fields.pad(8)
        return bytes(header) + bytes(fields.buffer) + bytes(body.buffer)

    @classmethod
    def unpack(cls, data: bytes) -> "Message":
        """
        Parse a complete message.
        """
        length = message_length(data)
        if length is None or len(data) < length:
            raise MessageDecodeError("Truncated message")
        if len(data) > length:
            raise MessageDecodeError("Trailing data after message")

        header = _header_class(data[0]).from_buffer_copy(bytes(data[:HEADER_LENGTH]))
        byteorder = "<" if header.endian == LITTLE_ENDIAN else ">"

        if header.version != PROTOCOL_VERSION:
            raise MessageDecodeError(f"Unsupported protocol version {header.version}")
        try:
            message_type = MessageType(header.type)
        except ValueError:
            raise MessageDecodeError(f"Unknown message type {header.type}") from None
        if header.serial == 0:
            raise MessageDecodeError("Message serial must not be zero")

        fields_end = HEADER_LENGTH + header.fields_length
        reader = Unmarshaller(data[:fields_end], byteorder, HEADER_LENGTH)
        fields = {}
        while reader.offset < fields_end:
            code, variant = reader.read("(yv)")
            if code in HEADER_FIELD_SIGNATURES:
                code = HeaderField(code)
                if variant.signature != HEADER_FIELD_SIGNATURES[code]:
                    raise MessageDecodeError(
                        f"Header field {code.name} has signature {variant.signature!r}"
                    )
                fields[code] = variant.value

        for code in REQUIRED_HEADER_FIELDS[message_type]:
            if code not in fields:
                raise MessageDecodeError(f"{message_type.name} message is missing {code.name}")

        message = cls(
            type=message_type,
            serial=header.serial,
            flags=MessageFlags(header.flags & 0x7),
            signature=fields.get(HeaderField.SIGNATURE, ""),
        )
        for code, attribute in cls._header_attributes.items():
            if code in fields:
                setattr(message, attribute, fields[code])

        body_start = align(fields_end, 8)
        body = Unmarshaller(data[body_start:], byteorder)
        message.body = body.read_all(message.signature)
        if body.offset != header.body_length:
            raise MessageDecodeError("Body length does not match signature")
        return message


@dataclass(frozen=True, slots=True)
class MethodReturn:
    """
    Successful reply to a method call
    """

    reply_serial: int
    signature: str = ""
    body: tuple = ()

    def raise_on_error(self, error_map: dict | None = None):
        pass


@dataclass(frozen=True, slots=True)
class ErrorReply:
    """
    Error reply to a method call
    """

    reply_serial: int
    name: str
    message: str = ""

    def raise_on_error(self, error_map: dict | None = None):
        """
        Raise the exception mapped to the error name, or RemoteError if the
        name is not in error_map.
        """
        exception = (error_map or {}).get(self.name, RemoteError)
        raise exception(self.name, self.message)


Reply = MethodReturn | ErrorReply


def reply_from_message(message: Message) -> Reply:
    if message.type == MessageType.METHOD_RETURN:
        return MethodReturn(message.reply_serial, message.signature, message.body)
    if message.type == MessageType.ERROR:
        text = ""
        if message.signature.startswith("s"):
            text = message.body[0]
        return ErrorReply(message.reply_serial, message.error_name, text)
    raise MessageDecodeError(f"{message.type.name} message is not a reply")


def encode_call(
    serial: int,
    destination: str | None,
    path: str,
    interface: str | None,
    member: str,
    args=(),
    signature: str = "",
    flags: MessageFlags = MessageFlags(0),
) -> bytes:
    """
    Encode a method call message.
    """
    return Message(
        type=MessageType.METHOD_CALL,
        serial=serial,
        flags=flags,
        path=path,
        interface=interface,
        member=member,
        destination=destination,
        signature=signature,
        body=tuple(args),
    ).pack()


def decode_reply(data: bytes) -> Reply:
    """
    Decode a method return or error message.
    """
    return reply_from_message(Message.unpack(data))


def decode_message(data: bytes) -> Message:
    """
    Decode any complete message in either byte order.
    """
    return Message.unpack(data)
