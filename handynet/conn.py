"""TCP connections, servers and a half-sync/half-async server."""

from __future__ import annotations

import enum
import errno
import functools
import logging
import socket
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional, Union

from .codec import CodecBase, CodecError
from .event_base import READ_EVENT, WRITE_EVENT, Channel, EventBase, TimerId, time_milli

logger = logging.getLogger(__name__)

Address = tuple[str, int]
TcpCallback = Callable[["TcpConn"], Any]
MsgCallback = Callable[["TcpConn", bytes], Any]
Data = Union[bytes, bytearray, memoryview, str]

_ANY_ADDR: Address = ("0.0.0.0", 0)
_READ_SIZE = 65536
_LISTEN_BACKLOG = 20


class TcpState(enum.IntEnum):
    """Life-cycle states of a TCP connection."""

    INVALID = 1
    HANDSHAKING = 2
    CONNECTED = 3
    CLOSED = 4
    FAILED = 5


def _resolve(host: str) -> str:
    return socket.gethostbyname(host) if host else "0.0.0.0"


def _fmt(addr: Address) -> str:
    return f"{addr[0]}:{addr[1]}"


def _to_bytes(data: Data) -> bytes:
    return data.encode() if isinstance(data, str) else bytes(data)


class TcpConn:
    """A non-blocking TCP connection driven by an :class:`EventBase`."""

    def __init__(self) -> None:
        self.base: Optional[EventBase] = None
        self.channel: Optional[Channel] = None
        self.input = bytearray()
        self.output = bytearray()
        self.local: Address = _ANY_ADDR
        self.peer: Address = _ANY_ADDR
        self.state = TcpState.INVALID
        self.context: Any = None
        self._readcb: Optional[TcpCallback] = None
        self._writablecb: Optional[TcpCallback] = None
        self._statecb: Optional[TcpCallback] = None
        self._idle_ids: list = []
        self._timeout_id: Optional[TimerId] = None
        self._dest_host = ""
        self._local_ip = ""
        self._dest_port = -1
        self._connect_timeout = 0
        self._reconnect_interval = -1
        self._connected_time = time_milli()
        self._connect_error = 0
        self._codec: Optional[CodecBase] = None

    def __str__(self) -> str:
        return _fmt(self.peer)

    @classmethod
    def create_connection(cls, base: EventBase, host: str, port: int,
                          timeout: int = 0, local_ip: str = "") -> "TcpConn":
        """Start connecting to ``host:port``; ``timeout`` in ms, 0 for none."""
        con = cls()
        con.connect(base, host, port, timeout, local_ip)
        return con

    def is_client(self) -> bool:
        return self._dest_port > 0

    # -- setup -----------------------------------------------------------

    def attach(self, base: EventBase, sock: socket.socket, local: Address, peer: Address) -> None:
        """Take over an already created socket."""
        if (self._dest_port <= 0 and self.state != TcpState.INVALID) or (
            self._dest_port >= 0 and self.state != TcpState.HANDSHAKING
        ):
            raise RuntimeError(f"use a new TcpConn to attach, state: {self.state.name}")
        self.base = base
        self.state = TcpState.HANDSHAKING
        self.local = local
        self.peer = peer
        old = self.channel
        if old is not None:
            old.on_read(lambda: None)
            old.on_write(lambda: None)
            old.close()
        self.channel = Channel(base, sock, WRITE_EVENT | READ_EVENT)
        logger.debug("tcp constructed %s - %s fd: %d", _fmt(local), _fmt(peer), self.channel.fd)
        self.channel.on_read(self._handle_read)
        self.channel.on_write(self._handle_write)

    def connect(self, base: EventBase, host: str, port: int, timeout: int = 0, local_ip: str = "") -> None:
        if self.state not in (TcpState.INVALID, TcpState.CLOSED, TcpState.FAILED):
            raise RuntimeError(f"bad state to connect: {self.state.name}")
        self._dest_host = host
        self._dest_port = port
        self._connect_timeout = timeout
        self._connected_time = time_milli()
        self._local_ip = local_ip
        self._connect_error = 0
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setblocking(False)
        try:
            addr: Address = (_resolve(host), port)
        except OSError as exc:
            logger.error("resolve %s failed: %s", host, exc)
            addr = (host, port)
            self._connect_error = errno.EHOSTUNREACH
        if local_ip and not self._connect_error:
            try:
                sock.bind((_resolve(local_ip), 0))
            except OSError as exc:
                logger.error("bind to %s failed %s", local_ip, exc)
                self._connect_error = exc.errno or errno.EADDRNOTAVAIL
        if not self._connect_error:
            result = sock.connect_ex(addr)
            if result not in (0, errno.EINPROGRESS, errno.EWOULDBLOCK):
                logger.error("connect to %s error %d %s", _fmt(addr), result, errno.errorcode.get(result, ""))
                self._connect_error = result
        try:
            local = sock.getsockname()[:2]
        except OSError:
            local = _ANY_ADDR
        self.state = TcpState.HANDSHAKING
        self.attach(base, sock, local, addr)
        if timeout:
            self._timeout_id = base.run_after(timeout, self._on_connect_timeout)

    def _on_connect_timeout(self) -> None:
        if self.state == TcpState.HANDSHAKING:
            self.close_now()

    # -- callbacks -------------------------------------------------------

    def on_read(self, cb: TcpCallback) -> None:
        """Call ``cb(con)`` when data arrives; exclusive with :meth:`on_msg`."""
        if self._readcb is not None:
            raise RuntimeError("read callback already set")
        self._readcb = cb

    def on_writable(self, cb: TcpCallback) -> None:
        self._writablecb = cb

    def on_state(self, cb: TcpCallback) -> None:
        self._statecb = cb

    def add_idle_cb(self, idle: int, cb: TcpCallback) -> None:
        """Call ``cb(con)`` whenever the connection has been quiet ``idle`` seconds."""
        if self.channel is not None:
            self._idle_ids.append(self.base.register_idle(idle, self, cb))

    def on_msg(self, codec: CodecBase, cb: MsgCallback) -> None:
        """Decode input with ``codec`` and call ``cb(con, msg)`` per message."""
        if self._readcb is not None:
            raise RuntimeError("read callback already set")
        self._codec = codec

        def decode(con: "TcpConn") -> None:
            while True:
                try:
                    decoded = con._codec.try_decode(con.input)
                except CodecError as exc:
                    logger.debug("decode error: %s", exc)
                    con.close_now()
                    break
                if decoded is None:
                    break
                logger.debug("a msg decoded. origin len %d msg len %d", decoded.consumed, len(decoded.msg))
                cb(con, decoded.msg)
                del con.input[:decoded.consumed]

        self._readcb = decode

    # -- sending ---------------------------------------------------------

    def send(self, data: Data) -> None:
        """Write ``data``; what cannot be written now is buffered."""
        payload = _to_bytes(data)
        if self.channel is None:
            logger.warning("connection %s - %s closed, but still writing %d bytes",
                           _fmt(self.local), _fmt(self.peer), len(payload))
            return
        if not self.output:
            payload = payload[self._isend(payload):]
        if payload:
            self.output += payload

    def send_output(self) -> None:
        """Flush the output buffer as far as the socket allows."""
        if self.channel is None:
            logger.warning("connection %s - %s closed, but still writing %d bytes",
                           _fmt(self.local), _fmt(self.peer), len(self.output))
            return
        if self.output:
            del self.output[:self._isend(self.output)]
        if self.output and self.channel is not None and not self.channel.write_enabled():
            self.channel.enable_write(True)

    def send_msg(self, msg: Data) -> None:
        """Frame ``msg`` with the codec given to :meth:`on_msg` and send it."""
        if self._codec is None:
            raise RuntimeError("no codec set, call on_msg first")
        self.output += self._codec.encode(msg)
        self.send_output()

    def _isend(self, data: Union[bytes, bytearray]) -> int:
        channel = self.channel
        if channel is None or channel.sock is None:
            return 0
        sent = 0
        with memoryview(data) as view:
            while sent < len(view):
                try:
                    written = channel.sock.send(view[sent:])
                except InterruptedError:
                    continue
                except BlockingIOError:
                    if not channel.write_enabled():
                        channel.enable_write(True)
                    break
                except OSError as exc:
                    logger.error("write error: channel %d fd %d %s", channel.id, channel.fd, exc)
                    break
                if written <= 0:
                    break
                sent += written
        return sent

    # -- closing ---------------------------------------------------------

    def close(self) -> None:
        """Close on the loop's next turn."""
        if self.channel is not None:
            self.base.safe_call(self._close_if_open)

    def _close_if_open(self) -> None:
        if self.channel is not None:
            self.channel.close()

    def close_now(self) -> None:
        """Close immediately, running state callbacks before returning."""
        if self.channel is not None:
            self.channel.close()

    def set_reconnect_interval(self, milli: int) -> None:
        """-1: never reconnect, 0: at once, otherwise wait ``milli`` ms."""
        self._reconnect_interval = milli

    # -- event handling --------------------------------------------------

    def _handle_read(self) -> None:
        if self.state == TcpState.HANDSHAKING and self._handle_handshake():
            return
        while self.state == TcpState.CONNECTED:
            channel = self.channel
            if channel is None or channel.sock is None:
                self._cleanup()
                break
            try:
                data = channel.sock.recv(_READ_SIZE)
            except InterruptedError:
                continue
            except BlockingIOError:
                for idle in self._idle_ids:
                    self.base.update_idle(idle)
                if self._readcb is not None and self.input:
                    self._readcb(self)
                break
            except OSError:
                self._cleanup()
                break
            if not data:
                self._cleanup()
                break
            logger.debug("channel %d fd %d read %d bytes", channel.id, channel.fd, len(data))
            self.input += data

    def _handle_handshake(self) -> bool:
        """Finish connecting; True when the connection failed."""
        sock = self.channel.sock if self.channel is not None else None
        connected = False
        if sock is not None and not self._connect_error:
            try:
                connected = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR) == 0
                sock.getpeername()
            except OSError:
                connected = False
        if not connected:
            logger.debug("handshake failed %s - %s", _fmt(self.local), _fmt(self.peer))
            self._cleanup()
            return True
        self.channel.enable_read_write(True, False)
        self.state = TcpState.CONNECTED
        self._connected_time = time_milli()
        logger.debug("tcp connected %s - %s fd %d", _fmt(self.local), _fmt(self.peer), self.channel.fd)
        if self._statecb is not None:
            self._statecb(self)
        return False

    def _handle_write(self) -> None:
        if self.state == TcpState.HANDSHAKING:
            self._handle_handshake()
        elif self.state == TcpState.CONNECTED:
            del self.output[:self._isend(self.output)]
            if not self.output and self._writablecb is not None:
                self._writablecb(self)
            channel = self.channel
            if not self.output and channel is not None and channel.write_enabled():
                channel.enable_write(False)
        else:
            logger.error("handle write unexpected")

    def _cleanup(self) -> None:
        if self._readcb is not None and self.input:
            self._readcb(self)
        self.state = TcpState.FAILED if self.state == TcpState.HANDSHAKING else TcpState.CLOSED
        logger.debug("tcp closing %s - %s", _fmt(self.local), _fmt(self.peer))
        self.base.cancel(self._timeout_id)
        if self._statecb is not None:
            self._statecb(self)
        if self._reconnect_interval >= 0 and not self.base.exited():
            self._reconnect()
            return
        for idle in self._idle_ids:
            self.base.unregister_idle(idle)
        self._idle_ids.clear()
        self._readcb = self._writablecb = self._statecb = None
        self._drop_channel()

    def _drop_channel(self) -> None:
        channel, self.channel = self.channel, None
        if channel is not None and channel.fd >= 0:
            channel.close()

    def _reconnect(self) -> None:
        base = self.base
        base._add_reconnect(self, self._cleanup)
        interval = max(0, self._reconnect_interval - (time_milli() - self._connected_time))
        logger.info("reconnect interval: %d will reconnect after %d ms", self._reconnect_interval, interval)

        def again() -> None:
            base._discard_reconnect(self)
            self.connect(base, self._dest_host, self._dest_port, self._connect_timeout, self._local_ip)

        base.run_after(interval, again)
        self._drop_channel()


class TcpServer:
    """Listening socket that hands accepted connections to event bases."""

    def __init__(self, bases) -> None:
        self._bases = bases
        self.base: EventBase = bases.alloc_base()
        self.addr: Address = _ANY_ADDR
        self._listen_channel: Optional[Channel] = None
        self._statecb: Optional[TcpCallback] = None
        self._readcb: Optional[TcpCallback] = None
        self._msgcb: Optional[MsgCallback] = None
        self._codec: Optional[CodecBase] = None
        self._createcb: Callable[[], TcpConn] = TcpConn

    def bind(self, host: str, port: int, reuse_port: bool = False) -> None:
        """Listen on ``host:port``; raises OSError on failure."""
        addr = (_resolve(host), port)
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            if reuse_port:
                if not hasattr(socket, "SO_REUSEPORT"):
                    raise OSError(errno.ENOPROTOOPT, "SO_REUSEPORT not supported")
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            sock.bind(addr)
            sock.listen(_LISTEN_BACKLOG)
        except OSError as exc:
            sock.close()
            logger.error("bind to %s failed %s", _fmt(addr), exc)
            raise
        self.addr = sock.getsockname()[:2]
        channel = Channel(self.base, sock, READ_EVENT)
        channel.on_read(functools.partial(self._handle_accept, channel))
        self._listen_channel = channel
        logger.info("fd %d listening at %s", channel.fd, _fmt(self.addr))

    @classmethod
    def start_server(cls, bases, host: str, port: int, reuse_port: bool = False) -> "TcpServer":
        server = cls(bases)
        server.bind(host, port, reuse_port)
        return server

    def close(self) -> None:
        """Stop listening."""
        channel, self._listen_channel = self._listen_channel, None
        if channel is not None:
            channel.close()

    def on_conn_create(self, cb: Callable[[], TcpConn]) -> None:
        self._createcb = cb

    def on_conn_state(self, cb: TcpCallback) -> None:
        self._statecb = cb

    def on_conn_read(self, cb: TcpCallback) -> None:
        if self._msgcb is not None:
            raise RuntimeError("message callback already set")
        self._readcb = cb

    def on_conn_msg(self, codec: CodecBase, cb: MsgCallback) -> None:
        """Each accepted connection decodes with a clone of ``codec``."""
        if self._readcb is not None:
            raise RuntimeError("read callback already set")
        self._codec = codec
        self._msgcb = cb

    def _handle_accept(self, channel: Channel) -> None:
        while channel.sock is not None:
            try:
                csock, _ = channel.sock.accept()
            except (BlockingIOError, InterruptedError):
                break
            except OSError as exc:
                logger.warning("accept failed %s", exc)
                break
            try:
                peer = csock.getpeername()[:2]
                local = csock.getsockname()[:2]
            except OSError as exc:
                logger.error("get socket names failed %s", exc)
                csock.close()
                continue
            base = self._bases.alloc_base()
            add = functools.partial(self._add_conn, base, csock, local, peer)
            if base is self.base:
                add()
            else:
                base.safe_call(add)

    def _add_conn(self, base: EventBase, sock: socket.socket, local: Address, peer: Address) -> None:
        con = self._createcb()
        con.attach(base, sock, local, peer)
        if self._statecb is not None:
            con.on_state(self._statecb)
        if self._readcb is not None:
            con.on_read(self._readcb)
        if self._msgcb is not None:
            con.on_msg(self._codec.clone(), self._msgcb)


RetMsgCallback = Callable[[TcpConn, bytes], Optional[Data]]


class HSHA:
    """Server whose message handlers run on a thread pool; replies go back via the loop."""

    def __init__(self, threads: int) -> None:
        self._pool = ThreadPoolExecutor(max_workers=threads)
        self.server: Optional[TcpServer] = None

    @classmethod
    def start_server(cls, base: EventBase, host: str, port: int, threads: int) -> "HSHA":
        hsha = cls(threads)
        try:
            hsha.server = TcpServer.start_server(base, host, port)
        except OSError:
            hsha.exit()
            raise
        return hsha

    def on_msg(self, codec: CodecBase, cb: RetMsgCallback) -> None:
        """``cb(con, msg)`` runs in a worker; a non-empty result is sent back."""

        def dispatch(con: TcpConn, msg: bytes) -> None:
            self._pool.submit(self._process, cb, con, bytes(msg))

        self.server.on_conn_msg(codec, dispatch)

    def _process(self, cb: RetMsgCallback, con: TcpConn, msg: bytes) -> None:
        try:
            output = cb(con, msg)
        except Exception:
            logger.exception("message handler failed")
            return

        def deliver() -> None:
            if output:
                con.send_msg(output)

        try:
            self.server.base.safe_call(deliver)
        except OSError as exc:
            logger.warning("cannot hand reply to event loop: %s", exc)

    def exit(self) -> None:
        """Stop the worker threads, waiting for running tasks."""
        self._pool.shutdown(wait=True)