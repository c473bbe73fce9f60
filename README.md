# handynet

A small networking toolkit for POSIX systems, built on the standard library
alone. Each event loop runs on one thread; several loops can run side by side.

- `handynet.event_base`: `EventBase`, an event loop with one-shot and
  repeating timers, thread-safe task submission (`safe_call`) and
  idle-connection tracking; `MultiBase`, several loops each on its own thread,
  handed out round-robin by `alloc_base`; `Channel`, a watched socket or file
  descriptor.
- `handynet.conn`: `TcpConn` and `TcpServer`, with state callbacks
  (`TcpState`), buffered output, idle callbacks and automatic reconnection;
  `HSHA`, a server that runs each decoded message through a thread pool and
  sends back the returned reply.
- `handynet.codec`: `LineCodec` (lines ending in LF or CRLF) and
  `LengthCodec` (frames with a `mBdT` tag and a big-endian 32-bit length, at
  most 1 MiB); malformed input raises `CodecError`.
- `handynet.conf`: `Conf`, an INI-style configuration reader.
- `handynet.file`: file-system helpers that raise `StatusError` (from
  `handynet.status`) on failure.
- `handynet.daemon`: pid-file based start/stop/restart, `change_to` to
  re-exec the program after it exits, and `set_signal` for argument-less
  signal handlers.
- `handynet.slice`: small text and byte scanning helpers.

## Installation

```
pip install handynet
```

## A line-based echo server

```python
from handynet.codec import LineCodec
from handynet.conn import TcpServer
from handynet.event_base import EventBase

base = EventBase(0)
server = TcpServer.start_server(base, "", 2099, False)
server.on_conn_msg(LineCodec(), lambda con, msg: con.send_msg(msg))
base.run_after(60_000, base.exit, 0)  # stop after a minute
base.loop()
```

Timers take milliseconds. A non-zero `interval` makes a timer repeat; the id
returned by `run_at` / `run_after` can be passed to `cancel`. Work coming from
other threads must go through `safe_call`, which runs it on the loop's thread.
`TcpServer.bind` and `start_server` raise `OSError` when the address cannot be
bound.

## Connecting as a client

```python
from handynet.codec import LengthCodec
from handynet.conn import TcpConn, TcpState
from handynet.event_base import EventBase

base = EventBase(0)
con = TcpConn.create_connection(base, "127.0.0.1", 2099, 3000, "")
con.set_reconnect_interval(3000)

def on_state(c):
    if c.state is TcpState.CONNECTED:
        c.send_msg(b"hello")

con.on_state(on_state)
con.on_msg(LengthCodec(), lambda c, msg: print("received", msg))
base.loop()
```

`on_read` and `on_msg` are exclusive: set one or the other. Received bytes
collect in `con.input`; unsent bytes wait in `con.output`.

## Configuration files

```python
from handynet.conf import Conf

conf = Conf()
conf.parse("server.conf")
logfile = conf.get("", "logfile", "server.log")
interval = conf.get_integer("", "log_rotate_interval", 86400)
verbose = conf.get_boolean("", "verbose", False)
```

Section and key names are case-insensitive. Keys use `=` or `:`; an indented
line adds another value to the previous key, and `get_strings` returns them
all. Integers accept decimal, octal and `0x` hexadecimal; booleans accept
`true/yes/on/1` and `false/no/off/0`. An unreadable file raises `OSError`, a
syntax error raises `ConfError` carrying the line number.

## Command line

The `handynet` command runs demonstration programs, each chosen by a
sub-command: `echo`, `chat`, `codec-svr`, `codec-cli`, `timer`, `daemon`,
`hsha`, `idle-close`, `reconnect`, `safe-close` and `write-on-empty`. All take
`--host` and `--port` (default 2099):

```
handynet --help
handynet chat --port 2099
handynet daemon start --program myserver
```

`daemon` takes `start`, `stop` or `restart` and uses `<program>.pid`,
`<program>.conf` (keys `logfile`, `loglevel`, `log_rotate_interval`) and
`<program>.log`.

Two load-testing commands open and hold very large numbers of connections,
spread over several forked worker processes that report to a management port:

```
handynet-10m-svr <begin port> <end port> <subprocesses> <management port>
handynet-10m-cli <host> <begin port> <end port> <conn count> <create seconds> <subprocesses> <heartbeat interval> <send size> <management port>
```

Each prints per-process connection, retry and message counts every three
seconds.

## What it does not do

The package handles TCP only: it has no UDP sockets, no HTTP server or client
and no status-page server. It relies on `fork`, `fcntl` and POSIX signals, so it
does not run on Windows.