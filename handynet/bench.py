"""Connection-count benchmark: a forking client and a forking echo server.

Each side forks worker processes. The workers report their counters once in
a while over a line-framed management connection to the parent process. The
parent prints a table of the latest report from every worker.
"""

from __future__ import annotations

import logging
import math
import os
import re
import signal
import sys
import time
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from .codec import LengthCodec, LineCodec
from .conn import TcpConn, TcpServer, TcpState
from .daemon import set_signal
from .event_base import EventBase
from .slice import split

logger = logging.getLogger(__name__)

_LEADING_INT = re.compile(rb"\s*([+-]?\d+)")
_CLIENT_FIELDS = 9
_SERVER_FIELDS = 7
_MANAGEMENT_HOST = "127.0.0.1"

Line = Union[bytes, bytearray, memoryview, str]


@dataclass
class ClientReport:
    """Counters of one client worker."""

    connected: int = 0
    retry: int = 0
    sended: int = 0
    recved: int = 0


@dataclass
class ServerReport:
    """Counters of one server worker."""

    connected: int = 0
    closed: int = 0
    recved: int = 0


def _atoi(field: bytes) -> int:
    match = _LEADING_INT.match(field)
    return int(match.group(1)) if match else 0


def _fields(line: Line, expected: int) -> list[int]:
    data = line.encode() if isinstance(line, str) else bytes(line)
    parts = split(data, b" ")
    if len(parts) != expected:
        raise ValueError(f"number of fields is {len(parts)} expected {expected}")
    return [_atoi(part) for part in parts]


def parse_client_report(line: Line) -> tuple[int, ClientReport]:
    """Parse ``<pid> connected: N retry: N send: N recved: N`` into ``(pid, report)``."""
    f = _fields(line, _CLIENT_FIELDS)
    return f[0], ClientReport(connected=f[2], retry=f[4], sended=f[6], recved=f[8])


def parse_server_report(line: Line) -> tuple[int, ServerReport]:
    """Parse ``<pid> connected: N closed: N recved: N`` into ``(pid, report)``."""
    f = _fields(line, _SERVER_FIELDS)
    return f[0], ServerReport(connected=f[2], closed=f[4], recved=f[6])


def _client_line(pid: int, report: ClientReport) -> str:
    return (f"{pid} connected: {report.connected} retry: {report.retry} "
            f"send: {report.sended} recved: {report.recved}")


def _server_line(pid: int, report: ServerReport) -> str:
    return f"{pid} connected: {report.connected} closed: {report.closed} recved: {report.recved}"


def _record_client_report(subs: dict[int, ClientReport], line: Line) -> None:
    try:
        pid, report = parse_client_report(line)
    except ValueError as exc:
        logger.error("%s", exc)
        return
    subs[pid] = report


def _record_server_report(subs: dict[int, ServerReport], line: Line) -> None:
    try:
        pid, report = parse_server_report(line)
    except ValueError as exc:
        logger.error("%s", exc)
        return
    subs[pid] = report


def _client_table(subs: dict[int, ClientReport]) -> list[str]:
    return [
        f"pid: {pid:6d} connected {r.connected:6d} retry {r.retry:6d} "
        f"sended {r.sended:6d} recved {r.recved:6d}"
        for pid, r in sorted(subs.items())
    ]


def _server_table(subs: dict[int, ServerReport]) -> list[str]:
    return [
        f"pid: {pid:6d} connected {r.connected:6d} closed: {r.closed:6d} recved {r.recved:6d}"
        for pid, r in sorted(subs.items())
    ]


def _print_table(lines: list[str]) -> None:
    for line in lines:
        print(line)
    print(flush=True)


def _fork_workers(processes: int, pause: float) -> bool:
    """Fork ``processes`` children; True in a child, False in the parent."""
    for _ in range(processes):
        if os.fork() == 0:
            time.sleep(pause)
            return True
    return False


def _connect_reporter(base: EventBase, port: int) -> TcpConn:
    """Management connection; an ``exit`` line or a close ends the loop."""
    report = TcpConn.create_connection(base, _MANAGEMENT_HOST, port, 3000)

    def on_msg(con: TcpConn, msg: bytes) -> None:
        if bytes(msg) == b"exit":
            logger.info("recv exit msg from master, so exit")
            base.exit()

    def on_state(con: TcpConn) -> None:
        if con.state == TcpState.CLOSED:
            base.exit()

    report.on_msg(LineCodec(), on_msg)
    report.on_state(on_state)
    return report


@dataclass
class _ClientArgs:
    host: str
    begin_port: int
    end_port: int
    conn_count: int
    create_seconds: float
    processes: int
    heartbeat_interval: int
    send_size: int
    man_port: int


def _program() -> str:
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "bench"


def _parse_client_args(argv: Sequence[str]) -> Optional[_ClientArgs]:
    if len(argv) < 9:
        print(f"usage {_program()} <host> <begin port> <end port> <conn count> <create seconds> "
              "<subprocesses> <hearbeat interval> <send size> <management port>")
        return None
    try:
        create_seconds = float(argv[4])
    except ValueError:
        create_seconds = 0.0
    ints = [_atoi(arg.encode()) for arg in argv]
    return _ClientArgs(
        host=argv[0], begin_port=ints[1], end_port=ints[2], conn_count=ints[3],
        create_seconds=create_seconds, processes=ints[5], heartbeat_interval=ints[6],
        send_size=ints[7], man_port=ints[8],
    )


def _check_ports(begin_port: int, end_port: int, processes: int) -> Optional[str]:
    if processes < 1:
        return "number of subprocesses must be positive"
    if end_port <= begin_port:
        return "end port must be greater than begin port"
    return None


def _run_client_worker(args: _ClientArgs, conn_count: int) -> None:
    with EventBase() as base:
        msg = bytes(max(args.send_size, 0))
        counts = ClientReport()
        all_conns: list[TcpConn] = []
        hb = args.heartbeat_interval
        span = args.end_port - args.begin_port

        def on_msg(con: TcpConn, data: bytes) -> None:
            if hb == 0:  # echo the message when there is no heartbeat
                con.send_msg(data)
                counts.sended += 1
            counts.recved += 1

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                counts.connected += 1
            elif con.state in (TcpState.FAILED, TcpState.CLOSED):
                if con.state == TcpState.CLOSED:
                    counts.connected -= 1
                counts.retry += 1

        def create_batch() -> None:
            batch = int(conn_count / args.create_seconds / 10)
            for i in range(batch):
                port = args.begin_port + i % span
                con = TcpConn.create_connection(base, args.host, port, 20 * 1000)
                all_conns.append(con)
                con.set_reconnect_interval(20 * 1000)
                con.on_msg(LengthCodec(), on_msg)
                con.on_state(on_state)

        logger.info("creating %d connections", conn_count)
        for k in range(math.ceil(args.create_seconds * 10)):
            base.run_after(100 * k, create_batch)

        def beat(slot: int) -> None:
            block = len(all_conns) // hb // 10
            for con in all_conns[slot * block:(slot + 1) * block]:
                if con.state == TcpState.CONNECTED:
                    con.send_msg(msg)
                    counts.sended += 1

        def heartbeat_round() -> None:
            for slot in range(hb * 10):
                base.run_after(slot * 100, lambda slot=slot: beat(slot))

        if hb:
            base.run_after(hb * 1000, heartbeat_round, hb * 1000)

        report = _connect_reporter(base, args.man_port)
        base.run_after(2000, lambda: report.send_msg(_client_line(os.getpid(), counts)), 100)
        base.loop()


def _reap_child() -> None:
    try:
        pid, status = os.wait()
    except ChildProcessError:
        return
    logger.error("wait result: status: %d is signaled: %d signal: %d", status,
                 int(os.WIFSIGNALED(status)), os.WTERMSIG(status) if os.WIFSIGNALED(status) else 0)


def _run_client_master(man_port: int) -> None:
    with EventBase() as base:
        subs: dict[int, ClientReport] = {}
        master = TcpServer.start_server(base, _MANAGEMENT_HOST, man_port)
        master.on_conn_msg(LineCodec(), lambda con, line: _record_client_report(subs, line))
        base.run_after(3000, lambda: _print_table(_client_table(subs)), 3000)
        set_signal(signal.SIGCHLD, _reap_child)
        base.loop()


def client_main(argv: Optional[Sequence[str]] = None) -> int:
    """Open many connections from forked workers and report their counters."""
    args = _parse_client_args(list(sys.argv[1:] if argv is None else argv))
    if args is None:
        return 1
    problem = _check_ports(args.begin_port, args.end_port, args.processes)
    if problem:
        print(problem, file=sys.stderr)
        return 1
    if args.create_seconds <= 0:
        print("create seconds must be positive", file=sys.stderr)
        return 1
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    conn_count = args.conn_count // args.processes
    child = _fork_workers(args.processes, 1.0)
    signal.signal(signal.SIGPIPE, signal.SIG_IGN)
    if child:
        _run_client_worker(args, conn_count)
    else:
        _run_client_master(args.man_port)
    logger.info("program exited")
    return 0


def _run_server_worker(begin_port: int, end_port: int, man_port: int) -> None:
    with EventBase() as base:
        counts = ServerReport()

        def on_state(con: TcpConn) -> None:
            if con.state == TcpState.CONNECTED:
                counts.connected += 1
            elif con.state in (TcpState.CLOSED, TcpState.FAILED):
                counts.closed += 1
                counts.connected -= 1

        def on_msg(con: TcpConn, msg: bytes) -> None:
            counts.recved += 1
            con.send_msg(msg)

        def create() -> TcpConn:
            con = TcpConn()
            con.on_state(on_state)
            con.on_msg(LengthCodec(), on_msg)
            return con

        servers = []
        for port in range(begin_port, end_port):
            server = TcpServer.start_server(base, "", port, True)
            server.on_conn_create(create)
            servers.append(server)

        report = _connect_reporter(base, man_port)
        base.run_after(100, lambda: report.send_msg(_server_line(os.getpid(), counts)), 100)
        base.loop()


def _run_server_master(man_port: int) -> None:
    with EventBase() as base:
        subs: dict[int, ServerReport] = {}
        master = TcpServer.start_server(base, _MANAGEMENT_HOST, man_port)
        master.on_conn_msg(LineCodec(), lambda con, line: _record_server_report(subs, line))
        base.run_after(3000, lambda: _print_table(_server_table(subs)), 3000)
        base.loop()


def server_main(argv: Optional[Sequence[str]] = None) -> int:
    """Listen on a port range from forked workers, echo messages and report counters."""
    args = list(sys.argv[1:] if argv is None else argv)
    if len(args) < 4:
        print(f"usage: {_program()} <begin port> <end port> <subprocesses> <management port>")
        return 1
    begin_port, end_port, processes, man_port = (_atoi(a.encode()) for a in args[:4])
    problem = _check_ports(begin_port, end_port, processes)
    if problem:
        print(problem, file=sys.stderr)
        return 1
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    if _fork_workers(processes, 0.0):
        time.sleep(0.1)  # let the parent listen on the management port
        _run_server_worker(begin_port, end_port, man_port)
    else:
        _run_server_master(man_port)
    logger.info("program exited")
    return 0