from __future__ import annotations

import contextlib
import enum
import logging
import os
import tempfile
import time
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional, Tuple, Union

from .config import TransferConfig
from .constants import BLOCK_SIZE, DALLY_TIMEOUTS
from .errors import (
    AccessViolation,
    EmptyTransfer,
    FileNotFound,
    FileWriteFailure,
    MalformedPacket,
    ProtocolMismatch,
    RemoteError,
    TransferFailed,
    TransferTimeout,
)
from .net import Address, UdpEndpoint
from .packet import Ack, Data, Error, Packet, decode, encode
from .sequencer import BlockSequencer, next_block

logger = logging.getLogger(__name__)

PathLike = Union[str, "os.PathLike[str]"]


class Role(enum.Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class SessionState(enum.Enum):
    START = "start"
    SEND_BLOCK = "send-block"
    AWAIT_ACK = "await-ack"
    AWAIT_DATA = "await-data"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class TransferResult:
    role: Role
    filename: str
    state: SessionState
    bytes_transferred: int = 0
    blocks: int = 0
    timeouts: int = 0
    retransmits: int = 0
    duration_s: float = 0.0
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state is SessionState.DONE

    @property
    def throughput_mbps(self) -> float:
        if self.duration_s <= 0:
            return 0.0
        return (self.bytes_transferred * 8 / 1_000_000) / self.duration_s


class PeerBinding:
    """Where a session's packets go, and which inbound datagrams belong to it.

    A server session knows its peer from the request and starts bound. A
    client session only knows the server's well-known address; it binds to
    whatever port the first reply comes from and never changes it again.
    """

    def __init__(self, initial: Address, bound: bool):
        self.initial = initial
        self.host = initial[0]
        self.port: Optional[int] = initial[1] if bound else None

    @classmethod
    def fixed(cls, peer: Address) -> "PeerBinding":
        return cls(peer, bound=True)

    @classmethod
    def learn(cls, server: Address) -> "PeerBinding":
        return cls(server, bound=False)

    @property
    def bound(self) -> bool:
        return self.port is not None

    @property
    def destination(self) -> Address:
        if self.port is None:
            return self.initial
        return self.host, self.port

    def accept(self, addr: Address) -> bool:
        if addr[0] != self.host:
            return False
        if self.port is None:
            self.port = addr[1]
            logger.debug("bound to peer %s:%d", self.host, self.port)
            return True
        return addr[1] == self.port


class TransferSession:
    """Stop-and-wait state machine driving one file transfer for one peer.

    ``opening`` is the first packet this side sends before any block moves:
    the request on the client, ACK 0 on a server handling a write. It is
    retransmitted on timeout like any other packet.
    """

    role: Role

    def __init__(
        self,
        endpoint: UdpEndpoint,
        binding: PeerBinding,
        path: PathLike,
        *,
        filename: Optional[str] = None,
        config: Optional[TransferConfig] = None,
        opening: Optional[Packet] = None,
    ):
        self.endpoint = endpoint
        self.binding = binding
        self.path = os.fspath(path)
        self.filename = filename or os.path.basename(self.path)
        self.config = config or TransferConfig()
        self.opening = opening
        self.state = SessionState.START

        self.bytes_transferred = 0
        self.blocks = 0
        self.timeouts = 0
        self.retransmits = 0
        self.message = ""
        self._last: Optional[Tuple[bytes, Address]] = None
        self._started = 0.0

    def __repr__(self) -> str:
        host, port = self.binding.destination
        return f"<{type(self).__name__} {self.filename!r} peer={host}:{port} state={self.state.value}>"

    def run(self) -> TransferResult:
        self._started = time.monotonic()
        logger.info("%s %r starting with %s:%d", self.role.value, self.filename, *self.binding.destination)
        try:
            self._transfer()
        except TransferFailed as exc:
            self._fail(exc)
        except OSError as exc:
            self._fail(TransferFailed(f"Network error: {exc}"))
        else:
            self.state = SessionState.DONE
            self.message = f"Transferred {self.bytes_transferred} bytes in {self.blocks} block(s)"
            logger.info("%s %r done: %s", self.role.value, self.filename, self.message)
        return self.result()

    def result(self) -> TransferResult:
        return TransferResult(
            role=self.role,
            filename=self.filename,
            state=self.state,
            bytes_transferred=self.bytes_transferred,
            blocks=self.blocks,
            timeouts=self.timeouts,
            retransmits=self.retransmits,
            duration_s=max(0.0, time.monotonic() - self._started) if self._started else 0.0,
            message=self.message,
        )

    def _transfer(self) -> None:
        raise NotImplementedError

    def _fail(self, exc: TransferFailed) -> None:
        self.state = SessionState.FAILED
        self.message = str(exc) or type(exc).__name__
        if exc.notify_peer and self.binding.bound:
            try:
                self._send(Error(self.message))
            except OSError as send_exc:
                logger.warning("could not report failure to peer: %s", send_exc)
        logger.warning("%s %r failed (%s): %s", self.role.value, self.filename, type(exc).__name__, self.message)

    def _send(self, packet: Packet) -> None:
        raw = encode(packet)
        dest = self.binding.destination
        self.endpoint.sendto(raw, dest)
        self._last = (raw, dest)

    def _retransmit(self) -> None:
        if self._last is None:
            return
        raw, dest = self._last
        self.retransmits += 1
        self.endpoint.sendto(raw, dest)

    def _reject(self, addr: Address) -> None:
        logger.warning("datagram from unknown transfer ID %s:%d; rejecting", *addr)
        self.endpoint.sendto(encode(Error("Unknown transfer ID")), addr)

    def _receive(self, deadline: float) -> Optional[Packet]:
        """Next packet from the bound peer, or None when ``deadline`` passes."""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self.endpoint.settimeout(remaining)
            try:
                raw, addr = self.endpoint.recvfrom()
            except TimeoutError:
                return None
            try:
                packet = decode(raw)
            except MalformedPacket as exc:
                logger.warning("ignoring malformed datagram from %s:%d: %s", addr[0], addr[1], exc)
                continue
            if not self.binding.accept(addr):
                self._reject(addr)
                continue
            return packet

    def _await(self, accept: Callable[[Packet], bool]) -> Packet:
        """Wait for a packet ``accept`` takes, resending the last packet on timeout.

        Packets ``accept`` declines do not push the deadline back; each
        attempt gets ``config.timeout_s`` in total.
        """
        attempts = 0
        deadline = time.monotonic() + self.config.timeout_s
        while True:
            packet = self._receive(deadline)
            if packet is None:
                self.timeouts += 1
                if attempts >= self.config.max_retries:
                    raise TransferTimeout(
                        f"Timed out waiting for peer after {attempts} retransmission(s)"
                    )
                attempts += 1
                logger.debug("%s %r timeout; retransmit %d/%d", self.role.value, self.filename, attempts, self.config.max_retries)
                self._retransmit()
                deadline = time.monotonic() + self.config.timeout_s
                continue
            if accept(packet):
                return packet

    def _raise_if_error(self, packet: Packet) -> None:
        if isinstance(packet, Error):
            raise RemoteError(packet.message or "Peer reported an error")


class Sender(TransferSession):
    """Reads the local file and sends it block by block.

    Serves a read request on the server, performs a write request on the
    client. With an ``opening`` write request the peer's ACK 0 has to arrive
    before block 1 is sent.
    """

    role = Role.SENDER

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.seq = BlockSequencer(current=0 if self.opening is not None else 1)

    def _open_source(self) -> BinaryIO:
        try:
            return open(self.path, "rb")
        except FileNotFoundError:
            raise FileNotFound(f"File not found: {self.filename}") from None
        except OSError as exc:
            raise AccessViolation(f"Access violation: {self.filename}: {exc.strerror}") from None

    def _transfer(self) -> None:
        with self._open_source() as f:
            if self.opening is not None:
                self._send(self.opening)
                self.state = SessionState.AWAIT_ACK
                self._await(self._accept_ack)
                self.seq.advance()

            while True:
                self.state = SessionState.SEND_BLOCK
                try:
                    chunk = f.read(BLOCK_SIZE)
                except OSError as exc:
                    raise AccessViolation(f"Cannot read {self.filename}: {exc.strerror}") from None
                packet = Data(self.seq.current, chunk)
                self._send(packet)

                self.state = SessionState.AWAIT_ACK
                self._await(self._accept_ack)
                self.blocks += 1
                self.bytes_transferred += len(chunk)
                if packet.is_final:
                    return
                self.seq.advance()

    def _accept_ack(self, packet: Packet) -> bool:
        self._raise_if_error(packet)
        if isinstance(packet, Ack):
            if self.seq.is_current(packet.block):
                return True
            if self.seq.is_duplicate(packet.block):
                # resending here is what causes Sorcerer's Apprentice Syndrome
                logger.debug("duplicate ACK %d ignored", packet.block)
                return False
            raise ProtocolMismatch(f"Expected ACK {self.seq.current}, got ACK {packet.block}")
        raise ProtocolMismatch(f"Expected ACK {self.seq.current}, got {packet.opcode.name}")


class Receiver(TransferSession):
    """Receives blocks from the peer and writes them to the local file.

    Performs a read request on the client, serves a write request on the
    server (where ``opening`` is ACK 0).

    Blocks land in a hidden ``.part`` file beside the destination, which is
    renamed onto it only once the final block is on disk. A session that
    fails never touches an existing file of the same name. With
    ``config.keep_partial`` a failed session that accepted at least one block
    moves what it has onto the destination instead.
    """

    role = Role.RECEIVER

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if isinstance(self.opening, Ack):
            self.seq = BlockSequencer(current=next_block(self.opening.block), previous=self.opening.block)
        else:
            self.seq = BlockSequencer()
        self._partial: Optional[str] = None

    def _open_destination(self) -> BinaryIO:
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, self._partial = tempfile.mkstemp(
                prefix=f".{os.path.basename(self.path)}.", suffix=".part", dir=directory
            )
        except OSError as exc:
            raise FileWriteFailure(f"Cannot create {self.filename}: {exc.strerror}") from None
        return os.fdopen(fd, "wb")

    def _commit(self, out: BinaryIO) -> None:
        assert self._partial is not None
        try:
            out.close()
            os.replace(self._partial, self.path)
        except OSError as exc:
            raise FileWriteFailure(f"Cannot store {self.filename}: {exc.strerror}") from None
        self._partial = None

    def _transfer(self) -> None:
        out = self._open_destination()
        try:
            if self.opening is not None:
                self._send(self.opening)

            while True:
                self.state = SessionState.AWAIT_DATA
                try:
                    packet = self._await(self._accept_data)
                except TransferTimeout as exc:
                    if self.blocks == 0:
                        raise EmptyTransfer(f"No data received: {exc}") from None
                    raise
                try:
                    out.write(packet.payload)
                except OSError as exc:
                    raise FileWriteFailure(f"Disk full or write error on {self.filename}: {exc.strerror}") from None
                self.blocks += 1
                self.bytes_transferred += len(packet.payload)
                if packet.is_final:
                    self._commit(out)
                self._send(Ack(packet.block))
                if packet.is_final:
                    break
                self.seq.advance()
        finally:
            out.close()

        if self.config.dally:
            self._dally(self.seq.current)

    def _accept_data(self, packet: Packet) -> bool:
        self._raise_if_error(packet)
        if isinstance(packet, Data):
            if self.seq.is_current(packet.block):
                return True
            if self.seq.is_duplicate(packet.block):
                logger.debug("duplicate DATA %d; re-acknowledging without writing", packet.block)
                self.retransmits += 1
                self._send(Ack(packet.block))
                return False
            raise ProtocolMismatch(f"Expected DATA {self.seq.current}, got DATA {packet.block}")
        raise ProtocolMismatch(f"Expected DATA {self.seq.current}, got {packet.opcode.name}")

    def _dally(self, final_block: int) -> None:
        # the final ACK may be lost; stay around long enough to answer a resend
        deadline = time.monotonic() + self.config.timeout_s * DALLY_TIMEOUTS
        try:
            while True:
                packet = self._receive(deadline)
                if packet is None:
                    return
                if isinstance(packet, Data) and packet.block == final_block:
                    logger.debug("final DATA %d repeated; re-acknowledging", final_block)
                    self.retransmits += 1
                    self._send(Ack(final_block))
        except OSError as exc:
            logger.debug("dally ended early: %s", exc)

    def _fail(self, exc: TransferFailed) -> None:
        super()._fail(exc)
        if self._partial is None:
            return
        partial, self._partial = self._partial, None
        try:
            if self.config.keep_partial and self.blocks > 0:
                os.replace(partial, self.path)
                logger.info("kept incomplete %s after %d block(s)", self.path, self.blocks)
            else:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(partial)
        except OSError as exc:
            logger.warning("could not clean up %s: %s", partial, exc)
