"""Message framing codecs."""

from __future__ import annotations

import abc
from typing import NamedTuple, Optional, Union

BytesLike = Union[bytes, bytearray, memoryview, str]

LENGTH_MAGIC = b"mBdT"
MAX_LENGTH = 1024 * 1024
_EOT = b"\x04"


class CodecError(ValueError):
    """Raised when input cannot be decoded into a message."""


class Decoded(NamedTuple):
    consumed: int
    msg: bytes


def _to_bytes(data: BytesLike) -> bytes:
    if isinstance(data, str):
        return data.encode()
    return bytes(data)


class CodecBase(abc.ABC):
    """Splits a byte stream into messages and frames messages for sending."""

    @abc.abstractmethod
    def try_decode(self, data: BytesLike) -> Optional[Decoded]:
        """Decode one message from the front of ``data``.

        Returns ``None`` when more data is needed, a :class:`Decoded` with the
        number of bytes consumed otherwise, and raises :class:`CodecError`
        on malformed input.
        """

    @abc.abstractmethod
    def encode(self, msg: BytesLike) -> bytes:
        """Frame ``msg`` for sending."""

    @abc.abstractmethod
    def clone(self) -> "CodecBase":
        """A fresh codec of the same kind."""


class LineCodec(CodecBase):
    """Messages terminated by LF or CRLF; a lone EOT byte is a message too."""

    def try_decode(self, data: BytesLike) -> Optional[Decoded]:
        data = _to_bytes(data)
        if data == _EOT:
            return Decoded(1, data)
        pos = data.find(b"\n")
        if pos < 0:
            return None
        end = pos - 1 if pos > 0 and data[pos - 1:pos] == b"\r" else pos
        return Decoded(pos + 1, data[:end])

    def encode(self, msg: BytesLike) -> bytes:
        return _to_bytes(msg) + b"\r\n"

    def clone(self) -> "LineCodec":
        return LineCodec()


class LengthCodec(CodecBase):
    """Messages prefixed by a magic tag and a big-endian 32-bit length."""

    def try_decode(self, data: BytesLike) -> Optional[Decoded]:
        data = _to_bytes(data)
        if len(data) < 8:
            return None
        length = int.from_bytes(data[4:8], "big", signed=True)
        if length > MAX_LENGTH or length < 0 or data[:4] != LENGTH_MAGIC:
            raise CodecError(f"bad length frame: magic {data[:4]!r} length {length}")
        if len(data) >= length + 8:
            return Decoded(length + 8, data[8:8 + length])
        return None

    def encode(self, msg: BytesLike) -> bytes:
        body = _to_bytes(msg)
        return LENGTH_MAGIC + len(body).to_bytes(4, "big", signed=True) + body

    def clone(self) -> "LengthCodec":
        return LengthCodec()