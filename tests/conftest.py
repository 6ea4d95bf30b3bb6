from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from socket import AF_INET, SOCK_DGRAM, socket

import pytest

from ltftp_transfer import Session

# generous, so a slow test machine never triggers a retransmission
SOCKET_TIMEOUT = 5.0


def _udp_socket() -> socket:
    sock = socket(AF_INET, SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(SOCKET_TIMEOUT)
    return sock


class Link:
    """Two loopback sockets: 'local' runs the code under test in a worker
    thread, 'remote' is scripted by the test itself."""

    def __init__(self) -> None:
        self.local = _udp_socket()
        self.remote = _udp_socket()
        self.session = Session(self.local, peer=self.remote.getsockname(), timeout=SOCKET_TIMEOUT)
        self.pool = ThreadPoolExecutor(max_workers=1)

    def start(self, fn, *args) -> Future:
        return self.pool.submit(fn, *args)

    def recv(self) -> bytes:
        packet, _ = self.remote.recvfrom(65536)
        return packet

    def reply(self, packet: bytes) -> None:
        self.remote.sendto(packet, self.local.getsockname())

    def assert_silent(self, wait: float = 0.2) -> None:
        self.remote.settimeout(wait)
        try:
            with pytest.raises(TimeoutError):
                self.remote.recvfrom(65536)
        finally:
            self.remote.settimeout(SOCKET_TIMEOUT)

    def close(self) -> None:
        self.local.close()
        self.remote.close()
        self.pool.shutdown(wait=True)


@pytest.fixture
def link():
    lk = Link()
    try:
        yield lk
    finally:
        lk.close()
