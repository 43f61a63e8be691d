from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional, Union

from .constants import (
    ACK,
    BLOCK_FORMAT,
    BLOCK_SIZE,
    DATA,
    ERROR,
    HEADER_LEN,
    MAX_BLOCK,
    MAX_PACKET,
    OPCODE_FORMAT,
    RRQ,
    WRQ,
)
from .errors import MalformedPacket


class Opcode(enum.IntEnum):
    RRQ = RRQ
    WRQ = WRQ
    DATA = DATA
    ACK = ACK
    ERROR = ERROR


def _check_block(block: int) -> None:
    if not 0 <= block <= MAX_BLOCK:
        raise ValueError(f"block number out of range: {block}")


def _encode_request(opcode: Opcode, filename: str) -> bytes:
    if not filename:
        raise ValueError("filename must not be empty")
    if "\x00" in filename:
        raise ValueError("filename must not contain NUL")
    return struct.pack(OPCODE_FORMAT, int(opcode)) + filename.encode("utf-8")


@dataclass(frozen=True, slots=True)
class ReadRequest:
    filename: str

    opcode = Opcode.RRQ

    def to_bytes(self) -> bytes:
        return _encode_request(self.opcode, self.filename)


@dataclass(frozen=True, slots=True)
class WriteRequest:
    filename: str

    opcode = Opcode.WRQ

    def to_bytes(self) -> bytes:
        return _encode_request(self.opcode, self.filename)


@dataclass(frozen=True, slots=True)
class Data:
    block: int
    payload: bytes = b""

    opcode = Opcode.DATA

    @property
    def is_final(self) -> bool:
        return len(self.payload) < BLOCK_SIZE

    def to_bytes(self) -> bytes:
        _check_block(self.block)
        if len(self.payload) > BLOCK_SIZE:
            raise ValueError(f"payload too large: {len(self.payload)}")
        return struct.pack(BLOCK_FORMAT, int(self.opcode), self.block) + self.payload


@dataclass(frozen=True, slots=True)
class Ack:
    block: int

    opcode = Opcode.ACK

    def to_bytes(self) -> bytes:
        _check_block(self.block)
        return struct.pack(BLOCK_FORMAT, int(self.opcode), self.block)


@dataclass(frozen=True, slots=True)
class Error:
    message: str

    opcode = Opcode.ERROR

    def to_bytes(self) -> bytes:
        text = self.message.encode("utf-8")[: MAX_PACKET - 2]
        return struct.pack(OPCODE_FORMAT, int(self.opcode)) + text


Packet = Union[ReadRequest, WriteRequest, Data, Ack, Error]


def encode(packet: Packet) -> bytes:
    return packet.to_bytes()


def _decode_filename(body: bytes) -> str:
    # tolerate the RFC 1350 "filename\0mode\0" layout; only octet transfers exist here
    name = body.split(b"\x00", 1)[0]
    if not name:
        raise MalformedPacket("request carries no filename")
    try:
        return name.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPacket(f"filename is not valid UTF-8: {exc}") from None


def decode(raw: bytes, length: Optional[int] = None) -> Packet:
    """Decode one datagram.

    ``length`` is the size reported by the transport and wins over
    ``len(raw)`` when the caller hands in a larger buffer.
    """
    buf = raw if length is None else raw[:length]
    if len(buf) < 2:
        raise MalformedPacket("datagram too small to carry an opcode")
    if len(buf) > MAX_PACKET:
        raise MalformedPacket(f"datagram exceeds {MAX_PACKET} bytes: {len(buf)}")

    # high opcode byte is not significant
    try:
        opcode = Opcode(buf[1])
    except ValueError:
        raise MalformedPacket(f"unknown opcode {buf[1]:#04x}") from None

    if opcode is Opcode.RRQ:
        return ReadRequest(_decode_filename(buf[2:]))
    if opcode is Opcode.WRQ:
        return WriteRequest(_decode_filename(buf[2:]))
    if opcode is Opcode.ERROR:
        return Error(buf[2:].rstrip(b"\x00").decode("utf-8", errors="replace"))

    if len(buf) < HEADER_LEN:
        raise MalformedPacket(f"{opcode.name} packet truncated: {len(buf)} bytes")
    (block,) = struct.unpack_from("!H", buf, 2)

    if opcode is Opcode.ACK:
        if len(buf) != HEADER_LEN:
            raise MalformedPacket(f"ACK packet must be {HEADER_LEN} bytes, got {len(buf)}")
        return Ack(block)
    return Data(block, bytes(buf[HEADER_LEN:]))
