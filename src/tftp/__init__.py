"""Trivial file transfer over UDP, octet mode only.

Packet framing lives in ``packet``, block numbering in ``sequencer`` and the
stop-and-wait state machines in ``session``. ``server`` and ``client`` wire
those sessions to sockets; ``cli`` is the operator-facing shell around them.
"""

from .client import TftpClient
from .config import TransferConfig
from .errors import MalformedPacket, TftpError, TransferFailed
from .server import TftpServer
from .session import TransferResult

__all__ = [
    "MalformedPacket",
    "TftpClient",
    "TftpError",
    "TftpServer",
    "TransferConfig",
    "TransferFailed",
    "TransferResult",
]
