from __future__ import annotations

import errno
import os

import pytest

from conftest import ScriptedEndpoint
from tftp.constants import RECENT_RESULTS
from tftp.net import UdpEndpoint
from tftp.packet import Ack, Data, Error, ReadRequest, WriteRequest, encode
from tftp.server import TftpServer
from tftp.session import PeerBinding, Sender

CLIENT = ("127.0.0.1", 45678)


@pytest.fixture
def listener(server_root, config):
    with TftpServer("127.0.0.1", 0, root=str(server_root), config=config) as srv:
        yield srv


def test_resolve_stays_under_root(listener, server_root):
    assert listener.resolve("a.txt") == os.path.join(os.path.realpath(server_root), "a.txt")
    assert listener.resolve("sub/b.txt") == os.path.join(os.path.realpath(server_root), "sub", "b.txt")
    assert listener.resolve("../a.txt") is None
    assert listener.resolve("/etc/passwd") is None
    assert listener.resolve(".") is None


@pytest.mark.parametrize(
    "raw",
    [b"\x00\x09x", b"\x00", encode(Ack(1)), encode(Data(1, b"x")), encode(Error("stray"))],
)
def test_non_requests_never_spawn_sessions(listener, raw):
    assert listener.handle_datagram(raw, CLIENT) is None
    assert listener.sessions_started == 0


def test_listener_address_is_ephemeral_when_port_zero(listener):
    host, port = listener.address
    assert host == "127.0.0.1"
    assert port != 0


def test_bind_conflict_raises(listener):
    with pytest.raises(OSError):
        TftpServer("127.0.0.1", listener.address[1])


@pytest.mark.parametrize("request_packet", [ReadRequest("a.txt"), WriteRequest("b.txt")])
def test_request_is_dropped_when_no_session_socket_is_available(listener, monkeypatch, request_packet):
    def exhausted(cls, *args, **kwargs):
        raise OSError(errno.EMFILE, "Too many open files")

    monkeypatch.setattr(UdpEndpoint, "ephemeral", classmethod(exhausted))
    assert listener.handle_datagram(encode(request_packet), CLIENT) is None
    assert listener.sessions_started == 0


def test_results_keep_only_recent_transfers(listener, server_root, config):
    for _ in range(RECENT_RESULTS + 5):
        session = Sender(ScriptedEndpoint(), PeerBinding.fixed(CLIENT), server_root / "missing.txt", config=config)
        listener._run_session(session)

    assert len(listener.results) == RECENT_RESULTS
    assert all(not r.ok for r in listener.results)
