"""Shared pytest fixtures: a fake four-letter-word server."""

import socket
import socketserver
import threading
import time

import pytest
import trustme


HANG = object()

MNTR_RESPONSE = (
    "zk_version\t3.4.10-39d3a4f269333c922ed3db283be479f9deacaa0f, built on 03/23/2017 10:13 GMT\n"
    "zk_avg_latency\t0\n"
    "zk_max_latency\t12\n"
    "zk_min_latency\t0\n"
    "zk_packets_received\t1041\n"
    "zk_packets_sent\t1040\n"
    "zk_num_alive_connections\t2\n"
    "zk_outstanding_requests\t0\n"
    "zk_server_state\tfollower\n"
    "zk_znode_count\t25\n"
    "zk_watch_count\t0\n"
    "zk_ephemerals_count\t0\n"
    "zk_approximate_data_size\t886\n"
    "zk_open_file_descriptor_count\t31\n"
    "zk_max_file_descriptor_count\t1048576\n"
    "zk_fsync_threshold_exceed_count\t0\n"
)


class _FourLetterHandler(socketserver.BaseRequestHandler):
    def handle(self):
        data = b""
        while len(data) < 4:
            chunk = self.request.recv(4 - len(data))
            if not chunk:
                break
            data += chunk
        command = data.decode("ascii", errors="replace")
        self.server.commands.append(command)

        reply = self.server.responses.get(command, "")
        if reply is HANG:
            time.sleep(self.server.hang_seconds)
            return
        self.request.sendall(reply.encode("utf-8"))


class FakeZooKeeper(socketserver.ThreadingTCPServer):
    daemon_threads = True
    block_on_close = False
    allow_reuse_address = True

    def __init__(self, responses, hang_seconds=1.0):
        self.responses = responses
        self.hang_seconds = hang_seconds
        self.commands = []
        super().__init__(("127.0.0.1", 0), _FourLetterHandler)

    @property
    def address(self):
        return f"127.0.0.1:{self.server_address[1]}"


@pytest.fixture
def zk_server():
    """Start fake ZooKeeper servers answering commands from a dict."""
    servers = []

    def start(responses, hang_seconds=1.0):
        server = FakeZooKeeper(responses, hang_seconds=hang_seconds)
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return server

    yield start

    for server in servers:
        server.shutdown()
        server.server_close()


@pytest.fixture
def closed_address():
    """An address on localhost where nothing listens."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return f"127.0.0.1:{port}"


@pytest.fixture
def healthy_responses():
    return {"mntr": MNTR_RESPONSE, "ruok": "imok"}


@pytest.fixture
def tls_ca():
    return trustme.CA()


@pytest.fixture
def client_keypair(tls_ca, tmp_path):
    """Client certificate and key files issued by ``tls_ca``."""
    issued = tls_ca.issue_cert("zk-exporter@example.org")
    cert, key = tmp_path / "client.crt", tmp_path / "client.key"
    issued.cert_chain_pems[0].write_to_path(str(cert))
    issued.private_key_pem.write_to_path(str(key))
    return str(cert), str(key)


@pytest.fixture
def tls_server():
    """Start one-shot TLS listeners that answer every command with ``imok``.

    The server closes the TCP connection without sending close_notify,
    the way a ZooKeeper secure client port does.
    """
    started = []

    def start(context):
        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        listener.settimeout(5)

        def serve():
            try:
                conn, _addr = listener.accept()
            except OSError:
                return
            try:
                tls = context.wrap_socket(conn, server_side=True)
                tls.recv(4)
                tls.sendall(b"imok")
                tls.close()
            except OSError:
                pass
            finally:
                conn.close()

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        started.append((listener, thread))
        return f"127.0.0.1:{listener.getsockname()[1]}"

    yield start

    for listener, thread in started:
        thread.join(5)
        listener.close()
