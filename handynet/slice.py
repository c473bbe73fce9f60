"""Small helpers for scanning text and byte strings."""

from __future__ import annotations

from typing import AnyStr, Optional

_STR_WS = " \t\n\v\f\r"
_BYTES_WS = b" \t\n\v\f\r"


def _whitespace(data: AnyStr) -> AnyStr:
    return _BYTES_WS if isinstance(data, (bytes, bytearray)) else _STR_WS


def _first_index(data: AnyStr, chars: AnyStr) -> int:
    """Index of the first element of ``data`` found in ``chars``, or len(data)."""
    return next((i for i, c in enumerate(data) if c in chars), len(data))


def _coerce_sep(data: AnyStr, sep) -> AnyStr:
    if isinstance(data, (bytes, bytearray)) and isinstance(sep, str):
        return sep.encode()
    if isinstance(data, str) and isinstance(sep, (bytes, bytearray)):
        return sep.decode()
    return sep


def eat_word(data: AnyStr) -> tuple[AnyStr, AnyStr]:
    """Skip leading whitespace and split off the next word.

    Returns ``(word, rest)`` where ``rest`` starts right after the word.
    """
    stripped = data.lstrip(_whitespace(data))
    end = _first_index(stripped, _whitespace(data))
    return stripped[:end], stripped[end:]


def eat_line(data: AnyStr) -> tuple[AnyStr, AnyStr]:
    """Split off everything before the first CR or LF.

    The line terminator stays at the start of ``rest``.
    """
    terminators = b"\r\n" if isinstance(data, (bytes, bytearray)) else "\r\n"
    end = _first_index(data, terminators)
    return data[:end], data[end:]


def trim_space(data: AnyStr) -> AnyStr:
    """Strip C-locale whitespace from both ends."""
    return data.strip(_whitespace(data))


def split(data: AnyStr, sep) -> list:
    """Split on a separator; an empty input yields an empty list."""
    if not data:
        return []
    return data.split(_coerce_sep(data, sep))


def _optional_len(value: Optional[AnyStr]) -> int:
    return 0 if value is None else len(value)