from __future__ import annotations

import logging
import os
import socket
from typing import Optional

from .config import TransferConfig
from .constants import DEFAULT_PORT
from .net import Address, Impairment, UdpEndpoint
from .packet import ReadRequest, WriteRequest
from .session import PeerBinding, Receiver, Role, Sender, SessionState, TransferResult

logger = logging.getLogger(__name__)


class TftpClient:
    """Runs one transfer at a time against a server's well-known address.

    A single endpoint is reused for every transfer. Each transfer learns
    the server's per-session port from the first reply it gets, so anything
    still queued from an earlier transfer is discarded before the request
    goes out. Without an explicit ``config`` the client does not dally after
    a read.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        config: Optional[TransferConfig] = None,
        local_port: int = 0,
        impairment: Impairment | None = None,
    ):
        # raises socket.gaierror for names that do not resolve
        self.server: Address = (socket.gethostbyname(host), port)
        self.config = config or TransferConfig(dally=False)
        self.endpoint = UdpEndpoint.bound("0.0.0.0", local_port, impairment=impairment)

    def request_read(self, filename: str, local_path: Optional[str] = None) -> TransferResult:
        """Fetch ``filename`` from the server into ``local_path`` (default: same name)."""
        session = Receiver(
            self.endpoint,
            PeerBinding.learn(self.server),
            local_path or filename,
            filename=filename,
            config=self.config,
            opening=ReadRequest(filename),
        )
        self._discard_stale()
        return session.run()

    def request_write(self, filename: str, local_path: Optional[str] = None) -> TransferResult:
        """Send ``local_path`` (default: ``filename``) to the server as ``filename``."""
        source = local_path or filename
        if not os.path.isfile(source):
            logger.warning("not sending %r: %s does not exist", filename, source)
            return TransferResult(
                role=Role.SENDER,
                filename=filename,
                state=SessionState.FAILED,
                message=f"File does not exist: {source}",
            )
        session = Sender(
            self.endpoint,
            PeerBinding.learn(self.server),
            source,
            filename=filename,
            config=self.config,
            opening=WriteRequest(filename),
        )
        self._discard_stale()
        return session.run()

    def _discard_stale(self) -> None:
        stale = self.endpoint.drain()
        if stale:
            logger.debug("discarded %d stale datagram(s) before a new request", stale)

    def close(self) -> None:
        self.endpoint.close()

    def __enter__(self) -> "TftpClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
