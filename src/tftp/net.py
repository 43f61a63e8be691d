from __future__ import annotations

import logging
import random
import socket
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .constants import MAX_PACKET

logger = logging.getLogger(__name__)

Address = Tuple[str, int]


@dataclass(frozen=True, slots=True)
class Impairment:
    loss_rate: float = 0.0
    delay_ms: int = 0
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def should_drop(self) -> bool:
        return self.loss_rate > 0 and self.rng.random() < self.loss_rate

    def sleep_if_needed(self) -> None:
        if self.delay_ms > 0:
            time.sleep(self.delay_ms / 1000.0)


class UdpEndpoint:
    def __init__(self, sock: socket.socket, impairment: Impairment | None = None):
        self.sock = sock
        self.impairment = impairment or Impairment()

    @classmethod
    def bound(
        cls,
        host: str,
        port: int,
        timeout_s: Optional[float] = None,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.bind((host, port))
        except OSError:
            sock.close()
            raise
        if timeout_s is not None:
            sock.settimeout(timeout_s)
        return cls(sock, impairment)

    @classmethod
    def ephemeral(
        cls,
        host: str = "0.0.0.0",
        timeout_s: Optional[float] = None,
        impairment: Impairment | None = None,
    ) -> "UdpEndpoint":
        return cls.bound(host, 0, timeout_s=timeout_s, impairment=impairment)

    @property
    def local_address(self) -> Address:
        host, port = self.sock.getsockname()[:2]
        return host, port

    def settimeout(self, timeout_s: Optional[float]) -> None:
        self.sock.settimeout(timeout_s)

    def sendto(self, data: bytes, addr: Address) -> None:
        if self.impairment.should_drop():
            logger.debug("dropped outbound %d bytes to %s:%d", len(data), *addr)
            return
        self.impairment.sleep_if_needed()
        self.sock.sendto(data, addr)

    def recvfrom(self, bufsize: int = MAX_PACKET + 1) -> Tuple[bytes, Address]:
        # one byte over the maximum so oversized datagrams are visible to the decoder
        while True:
            data, addr = self.sock.recvfrom(bufsize)
            if self.impairment.should_drop():
                logger.debug("dropped inbound %d bytes from %s:%d", len(data), *addr[:2])
                continue
            self.impairment.sleep_if_needed()
            return data, (addr[0], addr[1])

    def drain(self) -> int:
        """Discard every datagram already queued on the socket; returns how many."""
        previous = self.sock.gettimeout()
        self.sock.settimeout(0.0)
        discarded = 0
        try:
            while True:
                try:
                    self.sock.recvfrom(MAX_PACKET + 1)
                except (BlockingIOError, InterruptedError):
                    return discarded
                except ConnectionRefusedError:
                    # ICMP port unreachable left over from an earlier send
                    continue
                discarded += 1
        finally:
            self.sock.settimeout(previous)

    def close(self) -> None:
        self.sock.close()

    def __enter__(self) -> "UdpEndpoint":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
