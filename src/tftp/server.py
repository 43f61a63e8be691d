from __future__ import annotations

import logging
import os
import threading
from collections import deque
from typing import Deque, List, Optional

from .config import TransferConfig
from .constants import DEFAULT_PORT, LISTEN_POLL_S, RECENT_RESULTS
from .errors import MalformedPacket
from .net import Address, Impairment, UdpEndpoint
from .packet import Ack, Error, ReadRequest, WriteRequest, decode, encode
from .session import PeerBinding, Receiver, Sender, TransferResult, TransferSession

logger = logging.getLogger(__name__)


class TftpServer:
    """Listens on the well-known port and hands each request to its own thread.

    The listener keeps no session table. Every session gets a fresh
    ephemeral endpoint, so once a transfer starts its packets never reach
    the well-known port again. Only the last ``RECENT_RESULTS`` finished
    transfers are kept in ``results``.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        root: str = ".",
        config: Optional[TransferConfig] = None,
        impairment: Impairment | None = None,
    ):
        self.host = host
        self.root = os.path.realpath(root)
        self.config = config or TransferConfig()
        self.impairment = impairment
        self.endpoint = UdpEndpoint.bound(host, port, timeout_s=LISTEN_POLL_S, impairment=impairment)
        self.sessions_started = 0
        self.results: Deque[TransferResult] = deque(maxlen=RECENT_RESULTS)
        self._threads: List[threading.Thread] = []
        self._stop = threading.Event()

    @property
    def address(self) -> Address:
        return self.endpoint.local_address

    def serve_forever(self) -> None:
        logger.info("listening on %s:%d, serving %s", *self.address, self.root)
        while not self._stop.is_set():
            try:
                raw, addr = self.endpoint.recvfrom()
            except TimeoutError:
                continue
            except OSError:
                if self._stop.is_set():
                    break
                raise
            self.handle_datagram(raw, addr)
        logger.info("listener stopped")

    def handle_datagram(self, raw: bytes, addr: Address) -> Optional[TransferSession]:
        try:
            packet = decode(raw)
        except MalformedPacket as exc:
            logger.warning("dropping malformed datagram from %s:%d: %s", addr[0], addr[1], exc)
            return None

        if not isinstance(packet, (ReadRequest, WriteRequest)):
            logger.warning("dropping %s from %s:%d at the listening port", packet.opcode.name, *addr)
            return None

        logger.info("%s %r from %s:%d", packet.opcode.name, packet.filename, *addr)
        try:
            endpoint = UdpEndpoint.ephemeral(self.host, impairment=self.impairment)
        except OSError as exc:
            logger.error("dropping %s %r from %s:%d: no session socket: %s", packet.opcode.name, packet.filename, addr[0], addr[1], exc)
            return None
        path = self.resolve(packet.filename)
        if path is None:
            logger.warning("refusing %r from %s:%d: outside %s", packet.filename, addr[0], addr[1], self.root)
            with endpoint:
                try:
                    endpoint.sendto(encode(Error(f"Access violation: {packet.filename}")), addr)
                except OSError as exc:
                    logger.warning("could not refuse %r to %s:%d: %s", packet.filename, addr[0], addr[1], exc)
            return None

        binding = PeerBinding.fixed(addr)
        session: TransferSession
        if isinstance(packet, ReadRequest):
            session = Sender(endpoint, binding, path, filename=packet.filename, config=self.config)
        else:
            session = Receiver(endpoint, binding, path, filename=packet.filename, config=self.config, opening=Ack(0))

        thread = threading.Thread(
            target=self._run_session,
            args=(session,),
            name=f"tftp-{addr[0]}:{addr[1]}",
            daemon=True,
        )
        self._threads = [t for t in self._threads if t.is_alive()]
        self._threads.append(thread)
        self.sessions_started += 1
        thread.start()
        return session

    def resolve(self, filename: str) -> Optional[str]:
        path = os.path.realpath(os.path.join(self.root, filename))
        if os.path.commonpath([self.root, path]) != self.root or path == self.root:
            return None
        return path

    def _run_session(self, session: TransferSession) -> None:
        try:
            result = session.run()
        finally:
            session.endpoint.close()
        self.results.append(result)

    def shutdown(self, wait: bool = False, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if wait:
            for thread in list(self._threads):
                thread.join(timeout)

    def close(self) -> None:
        self._stop.set()
        self.endpoint.close()

    def __enter__(self) -> "TftpServer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
