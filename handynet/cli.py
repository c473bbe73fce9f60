"""Command-line demos: echo, chat, codec, timer, daemon and other servers."""

from __future__ import annotations

import argparse
import contextlib
import logging
import logging.handlers
import random
import re
import signal
import sys
import threading
import time
from typing import Iterator, Optional, Sequence

from .codec import LengthCodec, LineCodec
from .conf import Conf, ConfError
from .conn import HSHA, TcpConn, TcpServer, TcpState
from .daemon import daemon_process, set_signal
from .event_base import EventBase

logger = logging.getLogger(__name__)

DEFAULT_PORT = 2099
WELCOME = "<id> <msg>: send msg to <id>\n<msg>: send msg to all\n\nhello {}"
_LEADING_ID = re.compile(rb"\s*([+-]?\d+)")
_LEVELS = {
    "FATAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "TRACE": logging.DEBUG,
    "ALL": logging.NOTSET,
}


def _echo_input(con: TcpConn) -> None:
    data = bytes(con.input)
    con.input.clear()
    con.send(data)


def start_echo_server(base, host: str, port: int) -> TcpServer:
    """A server that writes back whatever it reads."""
    server = TcpServer.start_server(base, host, port)
    server.on_conn_read(_echo_input)
    return server


def _parse_target(msg: bytes) -> tuple[int, bytes]:
    """Leading user id (0 if none) and the text after it, minus one space."""
    match = _LEADING_ID.match(msg)
    if match:
        target, rest = int(match.group(1)), msg[match.end():]
    else:
        target, rest = 0, msg
    if rest.startswith(b" "):
        rest = rest[1:]
    return target, rest


class _ChatRoom:
    def __init__(self) -> None:
        self.users: dict[int, TcpConn] = {}
        self.next_id = 1

    def on_state(self, con: TcpConn) -> None:
        if con.state == TcpState.CONNECTED:
            con.context = self.next_id
            con.send_msg(WELCOME.format(self.next_id))
            self.users[self.next_id] = con
            self.next_id += 1
        elif con.state == TcpState.CLOSED:
            self.users.pop(con.context, None)

    def on_msg(self, con: TcpConn, msg: bytes) -> None:
        if not msg:
            return
        cid = con.context
        target, text = _parse_target(bytes(msg))
        resp = f"{cid}# ".encode() + text
        if target == 0:
            receivers = [user for uid, user in self.users.items() if uid != cid]
        else:
            receivers = [self.users[target]] if target in self.users else []
        for user in receivers:
            user.send_msg(resp)
        con.send_msg(f"#sended to {len(receivers)} users")


def start_chat_server(base, host: str, port: int) -> TcpServer:
    """Line-based chat: ``<id> <msg>`` to one user, ``<msg>`` to all others."""
    room = _ChatRoom()
    server = TcpServer.start_server(base, host, port)
    server.on_conn_state(room.on_state)
    server.on_conn_msg(LineCodec(), room.on_msg)
    return server


def _echo_msg(con: TcpConn, msg: bytes) -> None:
    logger.info("recv msg: %s", bytes(msg).decode(errors="replace"))
    con.send_msg(msg)


def start_codec_server(base, host: str, port: int) -> TcpServer:
    """A server that echoes length-framed messages."""
    server = TcpServer.start_server(base, host, port)
    server.on_conn_msg(LengthCodec(), _echo_msg)
    return server


def _log_msg(con: TcpConn, msg: bytes) -> None:
    logger.info("recv msg: %s", bytes(msg).decode(errors="replace"))


def _say_hello(con: TcpConn) -> None:
    logger.info("onState called state: %d", con.state)
    if con.state == TcpState.CONNECTED:
        con.send_msg("hello")


def connect_codec_client(base, host: str, port: int) -> TcpConn:
    """A reconnecting client that sends a framed ``hello`` on each connect."""
    con = TcpConn.create_connection(base, host, port, 3000)
    con.set_reconnect_interval(3000)
    con.on_msg(LengthCodec(), _log_msg)
    con.on_state(_say_hello)
    return con


@contextlib.contextmanager
def _fatal_on_os_error(what: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        raise SystemExit(f"{what} failed: {exc}") from exc


def _client_host(args: argparse.Namespace) -> str:
    return args.host or "localhost"


def _serve(args: argparse.Namespace, start) -> int:
    with EventBase() as base:
        with _fatal_on_os_error("start tcp server"):
            start(base, args.host, args.port)
        set_signal(signal.SIGINT, base.exit)
        base.loop()
    logger.info("program exited")
    return 0


def _cmd_echo(args: argparse.Namespace) -> int:
    return _serve(args, start_echo_server)


def _cmd_chat(args: argparse.Namespace) -> int:
    return _serve(args, start_chat_server)


def _cmd_codec_server(args: argparse.Namespace) -> int:
    return _serve(args, start_codec_server)


def _cmd_codec_client(args: argparse.Namespace) -> int:
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        connect_codec_client(base, args.host or "127.0.0.1", args.port)
        base.loop()
    logger.info("program exited")
    return 0


def _cmd_timer(args: argparse.Namespace) -> int:
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        logger.info("program begin")
        base.run_after(200, lambda: logger.info("a task in runAfter 200ms"))
        base.run_after(100, lambda: logger.info("a task in runAfter 100ms interval 1000ms"), 1000)
        timer_id = base.run_at(
            int(time.time()) * 1000 + 300,
            lambda: logger.info("a task in runAt now+300 interval 500ms"),
            500,
        )

        def cancel() -> None:
            logger.info("cancel task of interval 500ms")
            base.cancel(timer_id)

        base.run_after(2000, cancel)
        base.run_after(3000, base.exit)
        base.loop()
    return 0


def _cmd_daemon(args: argparse.Namespace) -> int:
    program = args.program
    pidfile = program + ".pid"
    conffile = program + ".conf"
    daemon_process(args.action, pidfile)
    conf = Conf()
    try:
        conf.parse(conffile)
    except (OSError, ConfError) as exc:
        raise SystemExit(f"config file parse failed {conffile}") from exc
    logfile = conf.get("", "logfile", program + ".log")
    loglevel = conf.get("", "loglevel", "INFO")
    rotate = conf.get_integer("", "log_rotate_interval", 86400)
    print(f"conf: file: {logfile} level: {loglevel} interval: {rotate}", file=sys.stderr)
    handler = logging.handlers.TimedRotatingFileHandler(logfile, when="S", interval=max(rotate, 1))
    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(_LEVELS.get(loglevel.upper(), logging.INFO))
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        with _fatal_on_os_error("start tcp server"):
            start_echo_server(base, args.host, args.port)
        base.run_after(1000, lambda: logger.info("log"), 1000)
        base.loop()
    logger.info("program exited")
    return 0


def _cmd_hsha(args: argparse.Namespace) -> int:
    with EventBase() as base:
        with _fatal_on_os_error("bind"):
            hsha = HSHA.start_server(base, args.host, args.port, 4)

        def stop() -> None:
            base.exit()
            hsha.exit()

        def on_sigint() -> None:
            stop()
            signal.signal(signal.SIGINT, signal.SIG_DFL)

        set_signal(signal.SIGINT, on_sigint)

        def process(con: TcpConn, msg: bytes) -> str:
            ms = random.randrange(1000)
            logger.info("processing a msg")
            time.sleep(ms / 1000)
            return f"{msg.decode(errors='replace')} used {ms} ms"

        hsha.on_msg(LineCodec(), process)

        def on_reply(con: TcpConn, msg: bytes) -> None:
            logger.info("%s recved", bytes(msg).decode(errors="replace"))
            con.close()

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                con.send_msg("hello")

        for _ in range(5):
            con = TcpConn.create_connection(base, _client_host(args), args.port)
            con.on_msg(LineCodec(), on_reply)
            con.on_state(on_state)
        base.run_after(1000, stop)
        base.loop()
    logger.info("program exited")
    return 0


def _cmd_idle_close(args: argparse.Namespace) -> int:
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        with _fatal_on_os_error("start tcp server"):
            server = TcpServer.start_server(base, args.host, args.port)

        def close_idle(con: TcpConn) -> None:
            logger.info("idle for 2 seconds, close connection")
            con.close()

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                con.add_idle_cb(2, close_idle)

        server.on_conn_state(on_state)
        TcpConn.create_connection(base, _client_host(args), args.port)
        base.run_after(3000, base.exit)
        base.loop()
    return 0


def _cmd_reconnect(args: argparse.Namespace) -> int:
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        with _fatal_on_os_error("start tcp server"):
            server = TcpServer.start_server(base, args.host, args.port)

        def close_later(con: TcpConn) -> None:
            logger.info("close con after 200ms")
            con.close()

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                base.run_after(200, lambda: close_later(con))

        server.on_conn_state(on_state)
        con = TcpConn.create_connection(base, _client_host(args), args.port)
        con.set_reconnect_interval(300)
        base.run_after(600, base.exit)
        base.loop()
    return 0


def _cmd_safe_close(args: argparse.Namespace) -> int:
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        with _fatal_on_os_error("start tcp server"):
            TcpServer.start_server(base, args.host, args.port)
        con = TcpConn.create_connection(base, _client_host(args), args.port)

        def closer() -> None:
            time.sleep(1)
            logger.info("thread want to close an connection")
            # other threads hand connection work to the loop's thread
            base.safe_call(con.close)

        thread = threading.Thread(target=closer)
        thread.start()
        base.run_after(1500, base.exit)
        base.loop()
        thread.join()
    return 0


def _cmd_write_on_empty(args: argparse.Namespace) -> int:
    chunk = b"a" * (20 * 1024 * 1024)
    total = 1054768 * 100
    sent = 0
    with EventBase() as base:
        set_signal(signal.SIGINT, base.exit)
        server = TcpServer(base)
        with _fatal_on_os_error("bind"):
            server.bind(args.host, args.port)

        def send_more(con: TcpConn) -> None:
            nonlocal sent
            while not con.output and sent < total:
                con.send(chunk)
                sent += len(chunk)
                logger.info("%d bytes sended output size: %d", sent, len(con.output))
            if sent >= total:
                con.close()
                base.exit()

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                con.on_writable(send_more)
            send_more(con)

        def create() -> TcpConn:
            con = TcpConn()
            con.on_state(on_state)
            return con

        server.on_conn_create(create)

        def reader() -> None:
            with EventBase() as base2:
                con = TcpConn.create_connection(base2, args.host or "127.0.0.1", args.port)

                def on_read(c: TcpConn) -> None:
                    logger.info("recv %d bytes", len(c.input))
                    c.input.clear()
                    time.sleep(1)

                def on_client_state(c: TcpConn) -> None:
                    if c.state in (TcpState.CLOSED, TcpState.FAILED):
                        base2.exit()

                con.on_read(on_read)
                con.on_state(on_client_state)
                base2.loop()

        thread = threading.Thread(target=reader)
        thread.start()
        base.loop()
        thread.join()
    logger.info("program exited")
    return 0


_COMMANDS = {
    "echo": (_cmd_echo, "echo server", logging.INFO),
    "chat": (_cmd_chat, "line-based chat server", logging.DEBUG),
    "codec-svr": (_cmd_codec_server, "length-framed echo server", logging.DEBUG),
    "codec-cli": (_cmd_codec_client, "length-framed client", logging.DEBUG),
    "timer": (_cmd_timer, "timer demo", logging.INFO),
    "daemon": (_cmd_daemon, "echo server run as a daemon", logging.INFO),
    "hsha": (_cmd_hsha, "half-sync/half-async server demo", logging.DEBUG),
    "idle-close": (_cmd_idle_close, "close idle connections", logging.DEBUG),
    "reconnect": (_cmd_reconnect, "client reconnect demo", logging.DEBUG),
    "safe-close": (_cmd_safe_close, "close a connection from another thread", logging.INFO),
    "write-on-empty": (_cmd_write_on_empty, "write when the output buffer drains", logging.DEBUG),
}


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--host", default="", help="address to listen on or connect to")
    common.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser = argparse.ArgumentParser(prog="handynet")
    sub = parser.add_subparsers(dest="command", required=True)
    for name, (_, help_text, _) in _COMMANDS.items():
        cmd = sub.add_parser(name, parents=[common], help=help_text)
        if name == "daemon":
            cmd.add_argument("action", help="start, stop or restart")
            cmd.add_argument("--program", default="handynet",
                             help="prefix of the .pid, .conf and .log files")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    handler, _, level = _COMMANDS[args.command]
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())