from __future__ import annotations

import threading
from collections import deque
from typing import Iterable, Optional, Tuple, Union

import pytest

from tftp.client import TftpClient
from tftp.config import TransferConfig
from tftp.packet import Packet, decode, encode
from tftp.server import TftpServer

Address = Tuple[str, int]
ScriptItem = Optional[Tuple[Union[Packet, bytes], Address]]


class ScriptedEndpoint:
    """Stands in for UdpEndpoint: replays a script, records what is sent.

    ``None`` in the script, or running out of script, is a receive timeout.
    """

    def __init__(self, script: Iterable[ScriptItem] = ()):
        self.script = deque(script)
        self.sent: list[tuple[Packet, Address]] = []
        self.closed = False

    def settimeout(self, timeout_s) -> None:
        pass

    def sendto(self, data: bytes, addr: Address) -> None:
        self.sent.append((decode(data), addr))

    def recvfrom(self, bufsize: int = 0):
        if not self.script:
            raise TimeoutError
        item = self.script.popleft()
        if item is None:
            raise TimeoutError
        packet, addr = item
        raw = packet if isinstance(packet, bytes) else encode(packet)
        return raw, addr

    def close(self) -> None:
        self.closed = True

    @property
    def packets(self) -> list:
        return [p for p, _ in self.sent]


@pytest.fixture
def config() -> TransferConfig:
    return TransferConfig(timeout_s=0.5, max_retries=3, dally=False)


@pytest.fixture
def server_root(tmp_path):
    root = tmp_path / "server"
    root.mkdir()
    return root


@pytest.fixture
def client_dir(tmp_path):
    d = tmp_path / "client"
    d.mkdir()
    return d


@pytest.fixture
def server(server_root, config):
    srv = TftpServer("127.0.0.1", 0, root=str(server_root), config=config)
    t = threading.Thread(target=srv.serve_forever, daemon=True)
    t.start()
    yield srv
    srv.shutdown(wait=True, timeout=10.0)
    t.join(timeout=5.0)
    srv.close()


@pytest.fixture
def client(server, config):
    with TftpClient("127.0.0.1", server.address[1], config=config) as c:
        yield c
