import socket

import pytest

from handynet.codec import LengthCodec, LineCodec
from handynet.conn import HSHA, TcpConn, TcpServer, TcpState
from handynet.event_base import EventBase


def _run(base, ms=3000):
    base.run_after(ms, base.exit)
    base.loop()


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def test_echo_round_trip():
    received = bytearray()
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)

        def echo(con):
            data = bytes(con.input)
            con.input.clear()
            con.send(data)

        server.on_conn_read(echo)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_state(c):
            if c.state is TcpState.CONNECTED:
                c.send(b"hello")

        def on_read(c):
            received.extend(c.input)
            c.input.clear()
            if len(received) >= 5:
                base.exit()

        con.on_state(on_state)
        con.on_read(on_read)
        _run(base)
        assert base.exited() is True
        assert con.is_client() is True
        server.close()
    assert bytes(received) == b"hello"


def test_line_messages_both_ways():
    got = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_msg(LineCodec(), lambda c, m: c.send_msg(m.upper()))
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_msg(c, msg):
            got.append(msg)
            base.exit()

        con.on_msg(LineCodec(), on_msg)
        con.on_state(lambda c: c.send_msg("ping") if c.state is TcpState.CONNECTED else None)
        _run(base)
        assert con.is_client() is True
        server.close()
    assert got == [b"PING"]


def test_several_lines_in_one_write_are_split():
    got = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)

        def on_msg(c, msg):
            got.append(msg)
            if len(got) == 3:
                base.exit()

        server.on_conn_msg(LineCodec(), on_msg)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])
        con.on_state(lambda c: c.send(b"a\nb\r\nc\n") if c.state is TcpState.CONNECTED else None)
        _run(base)
        assert con.is_client() is True
        server.close()
    assert got == [b"a", b"b", b"c"]


def test_length_codec_messages_in_order():
    got = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_msg(LengthCodec(), lambda c, m: c.send_msg(m))
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_msg(c, msg):
            got.append(msg)
            if len(got) == 2:
                base.exit()

        def on_state(c):
            if c.state is TcpState.CONNECTED:
                c.send_msg(b"first")
                c.send_msg(b"second\nline")

        con.on_msg(LengthCodec(), on_msg)
        con.on_state(on_state)
        _run(base)
        assert con.is_client() is True
        server.close()
    assert got == [b"first", b"second\nline"]


def test_bad_frame_makes_server_close():
    states = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_msg(LengthCodec(), lambda c, m: None)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_state(c):
            states.append(c.state)
            if c.state is TcpState.CONNECTED:
                c.send(b"XXXXYYYYZZZZ")
            else:
                base.exit()

        con.on_state(on_state)
        _run(base)
        server.close()
    assert con.state is TcpState.CLOSED
    assert states == [TcpState.CONNECTED, TcpState.CLOSED]


def test_connect_refused_fails():
    states = []
    port = _free_port()
    with EventBase() as base:
        con = TcpConn.create_connection(base, "127.0.0.1", port)

        def on_state(c):
            states.append(c.state)
            base.exit()

        con.on_state(on_state)
        _run(base)
    assert states == [TcpState.FAILED]
    assert con.channel is None


def test_server_close_is_seen_by_client():
    states = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_state(lambda c: c.close() if c.state is TcpState.CONNECTED else None)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_state(c):
            states.append(c.state)
            if c.state is TcpState.CLOSED:
                base.exit()

        con.on_state(on_state)
        _run(base)
        server.close()
    assert states == [TcpState.CONNECTED, TcpState.CLOSED]
    assert con.state is TcpState.CLOSED


def test_reconnect_after_close():
    states = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_state(lambda c: c.close() if c.state is TcpState.CONNECTED else None)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])
        con.set_reconnect_interval(50)

        def on_state(c):
            states.append(c.state)
            if states.count(TcpState.CONNECTED) >= 2:
                base.exit()

        con.on_state(on_state)
        _run(base)
        assert con.is_client() is True
        server.close()
    assert states.count(TcpState.CONNECTED) >= 2
    assert states[:2] == [TcpState.CONNECTED, TcpState.CLOSED]


def test_idle_callback_closes_connection():
    idled = []
    states = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)

        def on_idle(c):
            idled.append(c.state)
            c.close()

        server.on_conn_state(lambda c: c.add_idle_cb(1, on_idle) if c.state is TcpState.CONNECTED else None)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_state(c):
            states.append(c.state)
            if c.state is TcpState.CLOSED:
                base.exit()

        con.on_state(on_state)
        _run(base, 5000)
        server.close()
    assert con.state is TcpState.CLOSED
    assert idled == [TcpState.CONNECTED]
    assert states == [TcpState.CONNECTED, TcpState.CLOSED]


def test_large_write_is_buffered_and_delivered():
    payload = bytes(range(256)) * 4096
    received = bytearray()
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_state(lambda c: c.send(payload) if c.state is TcpState.CONNECTED else None)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])

        def on_read(c):
            received.extend(c.input)
            c.input.clear()
            if len(received) >= len(payload):
                base.exit()

        con.on_read(on_read)
        _run(base, 5000)
        server.close()
    assert bytes(received) == payload


def test_custom_connection_factory_is_used():
    class Tagged(TcpConn):
        pass

    created = []
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        server.on_conn_create(Tagged)

        def on_state(c):
            if c.state is TcpState.CONNECTED:
                created.append(type(c))
                base.exit()

        server.on_conn_state(on_state)
        client = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])
        _run(base)
        server.close()
    assert created == [Tagged]
    assert client.is_client()


def test_hsha_replies_from_worker():
    got = []
    with EventBase() as base:
        hsha = HSHA.start_server(base, "127.0.0.1", 0, 2)
        hsha.on_msg(LineCodec(), lambda c, m: m + b" done")
        con = TcpConn.create_connection(base, "127.0.0.1", hsha.server.addr[1])

        def on_msg(c, msg):
            got.append(msg)
            base.exit()

        con.on_msg(LineCodec(), on_msg)
        con.on_state(lambda c: c.send_msg("job") if c.state is TcpState.CONNECTED else None)
        _run(base)
        assert con.is_client() is True
        assert hsha.server.addr[1] > 0
        hsha.exit()
        hsha.server.close()
    assert got == [b"job done"]


def test_bind_to_used_port_raises():
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        with pytest.raises(OSError):
            TcpServer.start_server(base, "127.0.0.1", server.addr[1])
        server.close()


def test_connect_while_handshaking_raises_and_close_now_fails():
    with EventBase() as base:
        server = TcpServer.start_server(base, "127.0.0.1", 0)
        con = TcpConn.create_connection(base, "127.0.0.1", server.addr[1])
        with pytest.raises(RuntimeError):
            con.connect(base, "127.0.0.1", server.addr[1])
        con.close_now()
        server.close()
    assert con.state is TcpState.FAILED
    assert con.channel is None


def test_read_callback_conflicts():
    con = TcpConn()
    con.on_read(lambda c: None)
    with pytest.raises(RuntimeError):
        con.on_read(lambda c: None)
    with pytest.raises(RuntimeError):
        con.on_msg(LineCodec(), lambda c, m: None)


def test_server_read_and_msg_callbacks_conflict():
    with EventBase() as base:
        server = TcpServer(base)
        server.on_conn_read(lambda c: None)
        with pytest.raises(RuntimeError):
            server.on_conn_msg(LineCodec(), lambda c, m: None)


def test_send_without_connection_is_dropped():
    con = TcpConn()
    con.send(b"data")
    assert con.output == bytearray()
    assert con.state is TcpState.INVALID
    assert not con.is_client()


def test_send_msg_without_codec_raises():
    con = TcpConn()
    with pytest.raises(RuntimeError):
        con.send_msg(b"data")