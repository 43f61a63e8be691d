from __future__ import annotations


class TftpError(Exception):
    pass


class MalformedPacket(TftpError, ValueError):
    """Datagram that cannot be decoded into one of the five packet types."""


class TransferFailed(TftpError):
    """A session cannot continue.

    ``notify_peer`` tells the session whether the peer should be sent an
    Error packet carrying ``str(exc)`` before the session is torn down.
    """

    notify_peer = False


class FileNotFound(TransferFailed):
    notify_peer = True


class AccessViolation(TransferFailed):
    notify_peer = True


class FileWriteFailure(TransferFailed):
    notify_peer = True


class ProtocolMismatch(TransferFailed):
    notify_peer = True


class RemoteError(TransferFailed):
    pass


class TransferTimeout(TransferFailed):
    pass


class EmptyTransfer(TransferFailed):
    pass
