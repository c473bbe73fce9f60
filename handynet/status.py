"""Result status carrying an error code and message."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class Status:
    """An error code with a message; code 0 means success."""

    code: int = 0
    msg: str = ""

    @classmethod
    def from_system(cls, err: int) -> "Status":
        """Status for an operating-system error number."""
        return cls(err, os.strerror(err))

    @classmethod
    def io_error(cls, op: str, name: str, err: int) -> "Status":
        """Status describing a failed I/O operation on ``name``."""
        return cls(err, f"{op} {name} {os.strerror(err)}")

    def ok(self) -> bool:
        return self.code == 0

    def __str__(self) -> str:
        return f"{self.code} {self.msg}"


class StatusError(OSError):
    """Raised where an operation produces a failed :class:`Status`."""

    def __init__(self, status: Status):
        super().__init__(status.code, status.msg)
        self.status = status

    def __str__(self) -> str:
        return str(self.status)