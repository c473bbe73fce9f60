"""Event loop with timers, cross-thread tasks, idle tracking and I/O channels."""

from __future__ import annotations

import heapq
import itertools
import os
import queue
import selectors
import socket
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

READ_EVENT = selectors.EVENT_READ
WRITE_EVENT = selectors.EVENT_WRITE

_NEVER = 1 << 30
_SEQ_LIMIT = 1 << 62

Task = Callable[[], Any]
TimerId = tuple[int, int]
SockLike = Union[socket.socket, int, Any]


def time_milli() -> int:
    """Wall-clock time in milliseconds."""
    return time.time_ns() // 1_000_000


def _noop() -> None:
    pass


@dataclass
class _Repeat:
    at: int
    interval: int
    timer_id: TimerId
    cb: Task


@dataclass(eq=False)
class IdleId:
    """Handle for a connection registered for idle notification."""

    idle: int
    con: Any
    cb: Callable[[Any], Any]
    updated: int


class EventBase:
    """Single-threaded dispatcher for I/O channels, timers and posted tasks."""

    def __init__(self, task_capacity: int = 0):
        self._selector = selectors.DefaultSelector()
        self._exit = threading.Event()
        self._released = False
        self._tasks: queue.Queue = queue.Queue(maxsize=max(task_capacity, 0))
        self._timers: dict[TimerId, Task] = {}
        self._heap: list[TimerId] = []
        self._repeats: dict[TimerId, _Repeat] = {}
        self._seq = itertools.count(1)
        self._next_timeout = _NEVER
        self._idle_conns: dict[int, OrderedDict] = {}
        self._idle_enabled = False
        self._reconnect_conns: dict[Any, Task] = {}
        self._wake_r, self._wake_w = socket.socketpair()
        self._wake_w.setblocking(False)
        self._wake_channel = Channel(self, self._wake_r, READ_EVENT)
        self._wake_channel.on_read(self._handle_wakeup)

    # -- lifecycle -------------------------------------------------------

    def __enter__(self) -> "EventBase":
        return self

    def __exit__(self, *exc_info) -> None:
        self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        self._wake_channel.close()
        self._wake_w.close()
        self._selector.close()

    # -- loop ------------------------------------------------------------

    def loop_once(self, wait_ms: int) -> None:
        """Wait up to ``wait_ms`` (or the nearest timer) for events, then run due timers."""
        self._poll(min(wait_ms, self._next_timeout))
        self._handle_timeouts()

    def loop(self) -> None:
        """Run until :meth:`exit` is called."""
        while not self._exit.is_set():
            self.loop_once(10000)
        self._timers.clear()
        self._heap.clear()
        self._repeats.clear()
        self._idle_conns.clear()
        cleanups = list(self._reconnect_conns.values())
        self._reconnect_conns.clear()
        for cleanup in cleanups:
            cleanup()
        self.loop_once(0)

    def _poll(self, wait_ms: int) -> None:
        for key, mask in self._selector.select(max(wait_ms, 0) / 1000):
            channel: Channel = key.data
            if channel.fd < 0:
                continue
            if mask & READ_EVENT:
                channel.handle_read()
            if mask & WRITE_EVENT and channel.fd >= 0 and channel.write_enabled():
                channel.handle_write()

    # -- timers ----------------------------------------------------------

    def _add_timer(self, key: TimerId, task: Task) -> None:
        self._timers[key] = task
        heapq.heappush(self._heap, key)
        self._refresh_nearest()

    def _drop_stale(self) -> None:
        while self._heap and self._heap[0] not in self._timers:
            heapq.heappop(self._heap)

    def _refresh_nearest(self) -> None:
        self._drop_stale()
        if not self._heap:
            self._next_timeout = _NEVER
        else:
            self._next_timeout = max(0, self._heap[0][0] - time_milli())

    def _handle_timeouts(self) -> None:
        limit = (time_milli(), _SEQ_LIMIT)
        while True:
            self._drop_stale()
            if not self._heap or not self._heap[0] < limit:
                break
            key = heapq.heappop(self._heap)
            task = self._timers.pop(key)
            task()
        self._refresh_nearest()

    def _repeat_timeout(self, rep: _Repeat) -> None:
        rep.at += rep.interval
        rep.timer_id = (rep.at, next(self._seq))
        self._add_timer(rep.timer_id, lambda: self._repeat_timeout(rep))
        rep.cb()

    def run_at(self, milli: int, task: Task, interval: int = 0) -> Optional[TimerId]:
        """Run ``task`` at absolute time ``milli``; repeat every ``interval`` ms if non-zero.

        Returns a timer id, or ``None`` once the base has exited.
        """
        if self._exit.is_set():
            return None
        if interval:
            tid = (-milli, next(self._seq))
            rep = _Repeat(milli, interval, (milli, next(self._seq)), task)
            self._repeats[tid] = rep
            self._add_timer(rep.timer_id, lambda: self._repeat_timeout(rep))
            return tid
        tid = (milli, next(self._seq))
        self._add_timer(tid, task)
        return tid

    def run_after(self, milli: int, task: Task, interval: int = 0) -> Optional[TimerId]:
        """Run ``task`` after ``milli`` ms; repeat every ``interval`` ms if non-zero."""
        return self.run_at(time_milli() + milli, task, interval)

    def cancel(self, timer_id: Optional[TimerId]) -> bool:
        """Cancel a timer; returns False if it already ran or is unknown."""
        if timer_id is None:
            return False
        rep = self._repeats.pop(timer_id, None)
        if rep is not None:
            self._timers.pop(rep.timer_id, None)
            return True
        return self._timers.pop(timer_id, None) is not None

    # -- thread-safe operations -----------------------------------------

    def exit(self) -> "EventBase":
        """Ask the loop to stop."""
        self._exit.set()
        self.wakeup()
        return self

    def exited(self) -> bool:
        return self._exit.is_set()

    def wakeup(self) -> None:
        """Interrupt a blocking wait in the loop."""
        try:
            self._wake_w.send(b"\0")
        except BlockingIOError:
            pass

    def safe_call(self, task: Task) -> None:
        """Queue ``task`` to run on the loop's thread."""
        self._tasks.put(task)
        self.wakeup()

    def alloc_base(self) -> "EventBase":
        return self

    def _handle_wakeup(self) -> None:
        channel = self._wake_channel
        if channel.fd < 0:
            return
        try:
            data = channel.sock.recv(1024)
        except (BlockingIOError, InterruptedError):
            return
        if not data:
            channel.close()
            return
        while True:
            try:
                task = self._tasks.get_nowait()
            except queue.Empty:
                break
            task()

    # -- idle connections -----------------------------------------------

    def register_idle(self, idle: int, con: Any, cb: Callable[[Any], Any]) -> IdleId:
        """Call ``cb(con)`` once ``con`` has been inactive for ``idle`` seconds."""
        if not self._idle_enabled:
            self.run_after(1000, self._call_idles, 1000)
            self._idle_enabled = True
        node = IdleId(idle, con, cb, time_milli() // 1000)
        self._idle_conns.setdefault(idle, OrderedDict())[node] = None
        return node

    def unregister_idle(self, idle_id: IdleId) -> None:
        nodes = self._idle_conns.get(idle_id.idle)
        if nodes is not None:
            nodes.pop(idle_id, None)

    def update_idle(self, idle_id: IdleId) -> None:
        """Mark the connection as active now."""
        idle_id.updated = time_milli() // 1000
        nodes = self._idle_conns.get(idle_id.idle)
        if nodes is not None and idle_id in nodes:
            nodes.move_to_end(idle_id)

    def _call_idles(self) -> None:
        now = time_milli() // 1000
        for idle, nodes in list(self._idle_conns.items()):
            for node in list(nodes):
                if node.updated + idle > now:
                    break
                if node not in nodes:
                    continue
                node.updated = now
                nodes.move_to_end(node)
                node.cb(node.con)

    # -- reconnect bookkeeping ------------------------------------------

    def _add_reconnect(self, con: Any, cleanup: Task) -> None:
        self._reconnect_conns[con] = cleanup

    def _discard_reconnect(self, con: Any) -> None:
        self._reconnect_conns.pop(con, None)

    # -- poller ----------------------------------------------------------

    def _sync_channel(self, channel: "Channel") -> None:
        events = channel.events & (READ_EVENT | WRITE_EVENT)
        key = self._selector.get_map().get(channel.fd)
        if key is None:
            if events:
                self._selector.register(channel.sock, events, channel)
        elif events:
            self._selector.modify(channel.sock, events, channel)
        else:
            self._selector.unregister(channel.sock)

    def _remove_channel(self, channel: "Channel") -> None:
        if self._released:
            return
        if channel.fd in self._selector.get_map():
            self._selector.unregister(channel.sock)


class MultiBase:
    """A set of event bases, each looping on its own thread."""

    def __init__(self, size: int):
        if size < 1:
            raise ValueError("MultiBase needs at least one base")
        self.bases = [EventBase() for _ in range(size)]
        self._next = itertools.count()

    def __enter__(self) -> "MultiBase":
        return self

    def __exit__(self, *exc_info) -> None:
        for base in self.bases:
            base._release()

    def alloc_base(self) -> EventBase:
        """Hand out the bases in round-robin order."""
        return self.bases[next(self._next) % len(self.bases)]

    def loop(self) -> None:
        threads = [threading.Thread(target=base.loop) for base in self.bases[:-1]]
        for thread in threads:
            thread.start()
        self.bases[-1].loop()
        for thread in threads:
            thread.join()

    def exit(self) -> "MultiBase":
        for base in self.bases:
            base.exit()
        return self


_channel_ids = itertools.count(1)


def _fileno(sock: SockLike) -> int:
    return sock if isinstance(sock, int) else sock.fileno()


class Channel:
    """A file descriptor watched by an event base for read and write readiness."""

    def __init__(self, base: EventBase, sock: SockLike, events: int):
        self.base = base
        self.sock: Optional[SockLike] = sock
        self.events = events
        self.id = next(_channel_ids)
        self._readcb: Task = _noop
        self._writecb: Task = _noop
        if isinstance(sock, int):
            os.set_blocking(sock, False)
        else:
            sock.setblocking(False)
        base._sync_channel(self)

    @property
    def fd(self) -> int:
        return -1 if self.sock is None else _fileno(self.sock)

    def on_read(self, cb: Task) -> None:
        self._readcb = cb

    def on_write(self, cb: Task) -> None:
        self._writecb = cb

    def close(self) -> None:
        """Stop watching, close the descriptor and run the read callback once more."""
        if self.sock is None:
            return
        self.base._remove_channel(self)
        sock, self.sock = self.sock, None
        if isinstance(sock, int):
            os.close(sock)
        else:
            sock.close()
        self.handle_read()

    def _set(self, flag: int, enable: bool) -> None:
        if enable:
            self.events |= flag
        else:
            self.events &= ~flag

    def _sync(self) -> None:
        if self.sock is not None:
            self.base._sync_channel(self)

    def enable_read(self, enable: bool) -> None:
        self._set(READ_EVENT, enable)
        self._sync()

    def enable_write(self, enable: bool) -> None:
        self._set(WRITE_EVENT, enable)
        self._sync()

    def enable_read_write(self, readable: bool, writable: bool) -> None:
        self._set(READ_EVENT, readable)
        self._set(WRITE_EVENT, writable)
        self._sync()

    def read_enabled(self) -> bool:
        return bool(self.events & READ_EVENT)

    def write_enabled(self) -> bool:
        return bool(self.events & WRITE_EVENT)

    def handle_read(self) -> None:
        self._readcb()

    def handle_write(self) -> None:
        self._writecb()