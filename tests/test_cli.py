import contextlib
import socket
import threading

import pytest

from handynet.cli import (
    connect_codec_client,
    main,
    start_chat_server,
    start_codec_server,
    start_echo_server,
)
from handynet.codec import LengthCodec
from handynet.conn import TcpServer
from handynet.event_base import EventBase


@contextlib.contextmanager
def serving(start):
    with EventBase() as base:
        server = start(base, "127.0.0.1", 0)
        thread = threading.Thread(target=base.loop, daemon=True)
        thread.start()
        try:
            yield server.addr[1]
        finally:
            base.exit()
            thread.join(5)


def connect(port):
    return socket.create_connection(("127.0.0.1", port), timeout=5)


def recv_exactly(sock, size):
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def read_welcome(reader):
    lines = []
    while True:
        line = reader.readline()
        assert line, "connection closed before welcome"
        lines.append(line)
        if line.startswith(b"hello"):
            return lines


def test_echo_server_returns_data():
    with serving(start_echo_server) as port, connect(port) as sock:
        sock.sendall(b"hello")
        assert recv_exactly(sock, 5) == b"hello"
        sock.sendall(b"again and again")
        assert recv_exactly(sock, 15) == b"again and again"


def test_codec_server_echoes_framed_message():
    codec = LengthCodec()
    frame = codec.encode(b"ping")
    with serving(start_codec_server) as port, connect(port) as sock:
        sock.sendall(frame)
        data = recv_exactly(sock, len(frame))
    assert data == frame
    decoded = codec.try_decode(data)
    assert decoded.msg == b"ping"
    assert decoded.consumed == len(frame)


def test_codec_server_closes_on_bad_frame():
    with serving(start_codec_server) as port, connect(port) as sock:
        sock.sendall(b"XXXX\x00\x00\x00\x01a")
        assert sock.recv(16) == b""


def test_chat_server_routes_messages():
    with serving(start_chat_server) as port, connect(port) as c1, connect(port) as c2:
        f1 = c1.makefile("rb")
        w1 = read_welcome(f1)
        f2 = c2.makefile("rb")
        w2 = read_welcome(f2)
        assert w1[0] == b"<id> <msg>: send msg to <id>\n"
        assert w1[-1] == b"hello 1\r\n"
        assert w2[-1] == b"hello 2\r\n"

        c1.sendall(b"hello all\r\n")
        assert f2.readline() == b"1# hello all\r\n"
        assert f1.readline() == b"#sended to 1 users\r\n"

        c2.sendall(b"1 hi there\n")
        assert f1.readline() == b"2# hi there\r\n"
        assert f2.readline() == b"#sended to 1 users\r\n"

        c2.sendall(b"\r\n7 nobody\n")
        assert f2.readline() == b"#sended to 0 users\r\n"


def test_codec_client_sends_hello():
    received = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)

        def on_msg(con, msg):
            received.append(bytes(msg))
            base.exit()

        server.on_conn_msg(LengthCodec(), on_msg)
        con = connect_codec_client(base, "127.0.0.1", server.addr[1])
        base.run_after(3000, base.exit)
        base.loop()
    assert received == [b"hello"]
    assert con.is_client()


def test_main_requires_command():
    with pytest.raises(SystemExit) as excinfo:
        main([])
    assert excinfo.value.code == 2


def test_main_bad_daemon_command(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        main(["daemon", "bogus", "--program", str(tmp_path / "prog")])
    assert excinfo.value.code == 1


def test_main_echo_bind_failure():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
        busy.bind(("127.0.0.1", 0))
        busy.listen(1)
        port = busy.getsockname()[1]
        with pytest.raises(SystemExit) as excinfo:
            main(["echo", "--host", "127.0.0.1", "--port", str(port)])
    assert "start tcp server failed" in str(excinfo.value.code)