"""INI-style configuration file reader."""

from __future__ import annotations

import os
import re
from typing import Optional

_WS = " \t\n\v\f\r"
_LONG_MAX = 2**63 - 1
_LONG_MIN = -(2**63)

_INTEGER = re.compile(r"([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")
_REAL = re.compile(
    r"[+-]?(?:"
    r"(?P<hex>0x(?:[0-9a-f]+\.?[0-9a-f]*|\.[0-9a-f]+)(?:p[+-]?\d+)?)"
    r"|(?:\d+\.?\d*|\.\d+)(?:e[+-]?\d+)?"
    r"|inf(?:inity)?|nan)",
    re.IGNORECASE,
)
_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


class ConfError(ValueError):
    """Raised for a syntax error in a configuration file."""

    def __init__(self, filename: str, lineno: int):
        super().__init__(f"{filename}:{lineno}: parse error")
        self.filename = filename
        self.lineno = lineno


def _make_key(section: str, name: str) -> str:
    return f"{section}.{name}".lower()


def _first_token(text: str) -> str:
    """The first whitespace-delimited word, stopping at a comment."""
    text = text.lstrip(_WS)
    text = re.split(r"[;#]", text, maxsplit=1)[0]
    end = next((i for i, c in enumerate(text) if c in _WS), len(text))
    return text[:end]


class Conf:
    """Values read from INI files, keyed case-insensitively by section and name."""

    def __init__(self) -> None:
        self.values: dict[str, list[str]] = {}
        self.filename: Optional[str] = None

    def parse(self, filename) -> None:
        """Read ``filename``; raises OSError if unreadable, ConfError on bad syntax."""
        self.filename = os.fspath(filename)
        section = key = ""
        with open(filename, encoding="utf-8", errors="surrogateescape", newline="") as fh:
            for lineno, line in enumerate(fh, 1):
                body = line.lstrip(_WS)
                first = body[:1]
                if first in ("", ";", "#"):
                    continue
                if first == "[":
                    inner = body[1:].lstrip(_WS)
                    end = inner.find("]")
                    if end < 0:
                        raise ConfError(self.filename, lineno)
                    section = inner[:end].rstrip(_WS)
                    key = ""
                elif line[0] in _WS:
                    # an indented line continues the previous name's value
                    if not key:
                        raise ConfError(self.filename, lineno)
                    self._add(section, key, body.rstrip(_WS))
                else:
                    pos = body.find("=")
                    if pos < 0:
                        pos = body.find(":")
                    if pos < 0:
                        raise ConfError(self.filename, lineno)
                    key = body[:pos].rstrip(_WS)
                    self._add(section, key, _first_token(body[pos + 1:]))

    def _add(self, section: str, name: str, value: str) -> None:
        self.values.setdefault(_make_key(section, name), []).append(value)

    def get(self, section: str, name: str, default: str = "") -> str:
        """The last value given for the name, or ``default``."""
        found = self.values.get(_make_key(section, name))
        return found[-1] if found else default

    def get_strings(self, section: str, name: str) -> list[str]:
        """Every value given for the name, in file order."""
        return list(self.values.get(_make_key(section, name), []))

    def get_integer(self, section: str, name: str, default: int = 0) -> int:
        """Integer value, decimal, octal or 0x-hex; ``default`` if none parses."""
        match = _INTEGER.match(self.get(section, name, "").lstrip(_WS))
        if not match:
            return default
        sign, digits = match.groups()
        number = int(digits, 0) if not re.fullmatch(r"0[0-7]+", digits) else int(digits, 8)
        if sign == "-":
            number = -number
        return max(_LONG_MIN, min(_LONG_MAX, number))

    def get_real(self, section: str, name: str, default: float = 0.0) -> float:
        """Floating-point value; ``default`` if none parses."""
        match = _REAL.match(self.get(section, name, "").lstrip(_WS))
        if not match:
            return default
        text = match.group(0)
        if match.group("hex"):
            return float.fromhex(text)
        return float(text)

    def get_boolean(self, section: str, name: str, default: bool = False) -> bool:
        """true/yes/on/1 or false/no/off/0, case-insensitive; else ``default``."""
        value = self.get(section, name, "").lower()
        if value in _TRUE:
            return True
        if value in _FALSE:
            return False
        return default