import socket
import threading
from contextlib import closing

import pytest


def _pick_free_port() -> int:
    with closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as sock:
        sock.bind(("127.0.0.1", 0))
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return int(sock.getsockname()[1])


class MockPeer:
    """In-process stand-in for the BeanShell session port.

    Accepts a single connection and hands it to ``handler(conn, peer)``.
    Everything received is kept in ``received`` for inspection.
    """

    def __init__(self, handler):
        self.handler = handler
        self.received = bytearray()
        self.connections = 0
        self.done = threading.Event()
        self.srv = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.srv.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.srv.bind(("127.0.0.1", 0))
        self.srv.listen(1)
        self.port = self.srv.getsockname()[1]
        self.thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def base_port(self):
        # what a user would type on the command line
        return self.port - 1

    def start(self):
        self.thread.start()
        return self

    def _serve(self):
        try:
            conn, _ = self.srv.accept()
        except OSError:
            return  # listener closed before anyone connected
        self.connections += 1
        try:
            with conn:
                self.handler(conn, self)
        finally:
            self.done.set()

    def recv_until_eof(self, conn, echo=False):
        while True:
            try:
                data = conn.recv(4096)
            except ConnectionResetError:
                return
            if not data:
                return
            self.received.extend(data)
            if echo:
                try:
                    conn.sendall(data)
                except (BrokenPipeError, ConnectionResetError):
                    echo = False  # client stopped reading; keep draining

    def stop(self):
        self.srv.close()
        self.thread.join(timeout=5)


def echo_handler(conn, peer):
    peer.recv_until_eof(conn, echo=True)


def silent_handler(conn, peer):
    peer.recv_until_eof(conn)


@pytest.fixture
def make_peer():
    peers = []

    def _make(handler=echo_handler):
        peer = MockPeer(handler).start()
        peers.append(peer)
        return peer

    yield _make
    for peer in peers:
        peer.stop()


@pytest.fixture
def echo_peer(make_peer):
    return make_peer(echo_handler)


@pytest.fixture
def silent_peer(make_peer):
    return make_peer(silent_handler)


@pytest.fixture
def free_port():
    return _pick_free_port()


@pytest.fixture
def script_file(tmp_path):
    path = tmp_path / "remote.bsh"
    path.write_bytes(b'print("hello");\r\nfor (a : args) print(a);\n\xc3\xa9\x00\xff')
    return path
