"""File-system helpers that raise StatusError on failure."""

from __future__ import annotations

import contextlib
import errno
import os
from typing import Iterator, Union

from .status import Status, StatusError


@contextlib.contextmanager
def _io(op: str, name: str) -> Iterator[None]:
    try:
        yield
    except OSError as exc:
        code = exc.errno if exc.errno is not None else errno.EIO
        raise StatusError(Status.io_error(op, name, code)) from exc


def get_content(filename: str) -> bytes:
    """Whole content of a file."""
    with _io("open", filename):
        fh = open(filename, "rb")
    with fh, _io("read", filename):
        return fh.read()


def write_content(filename: str, content: Union[bytes, str]) -> None:
    """Create or truncate ``filename`` (mode 0600) and write ``content``."""
    data = content.encode() if isinstance(content, str) else bytes(content)
    with _io("open", filename):
        fd = os.open(filename, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as fh, _io("write", filename):
        fh.write(data)


def rename_save(name: str, tmp_name: str, content: Union[bytes, str]) -> None:
    """Write ``content`` to ``tmp_name``, then move it over ``name``."""
    write_content(tmp_name, content)
    with contextlib.suppress(OSError):
        os.unlink(name)
    rename_file(tmp_name, name)


def get_children(directory: str) -> list[str]:
    """Directory entries, including ``.`` and ``..``."""
    with _io("opendir", directory):
        return [".", ".."] + os.listdir(directory)


def delete_file(fname: str) -> None:
    with _io("unlink", fname):
        os.unlink(fname)


def create_dir(name: str) -> None:
    with _io("mkdir", name):
        os.mkdir(name, 0o755)


def delete_dir(name: str) -> None:
    with _io("rmdir", name):
        os.rmdir(name)


def get_file_size(fname: str) -> int:
    with _io("stat", fname):
        return os.stat(fname).st_size


def rename_file(src: str, target: str) -> None:
    with _io("rename", f"{src} {target}"):
        os.rename(src, target)


def file_exists(fname: str) -> bool:
    return os.access(fname, os.F_OK)