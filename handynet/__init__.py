"""Event-driven TCP networking: event loops, timers, connections, codecs, config files and daemon helpers."""

__version__ = "0.1.0"