"""Terminal line-discipline handling for the invoking terminal."""

from __future__ import annotations

import fcntl
import logging
import os
import struct
import termios
from typing import Any

logger = logging.getLogger(__name__)

# Index of the local-mode word in a termios.tcgetattr() list.
LFLAG = 3

_WINSIZE = struct.Struct("HHHH")


class RawModeGuard:
    """Scoped change of the local-mode flags on a terminal descriptor.

    Acquiring saves the current attributes, clears ``clear_flags`` and sets
    ``set_flags`` (by default: canonical input off, so bytes reach the relay
    one at a time). Releasing puts the saved attributes back. Use it as a
    context manager, or call ``acquire()``/``release()`` explicitly with the
    release in a ``finally``.

    On a descriptor that is not a terminal both operations do nothing.
    """

    def __init__(self, fd: int, clear_flags: int = termios.ICANON, set_flags: int = 0) -> None:
        self.fd = fd
        self.clear_flags = clear_flags
        self.set_flags = set_flags
        self._saved: list[Any] | None = None
        self._applied: list[Any] | None = None

    @property
    def active(self) -> bool:
        """True while modified attributes are in effect."""
        return self._saved is not None

    @property
    def saved(self) -> list[Any] | None:
        return self._saved

    @property
    def applied(self) -> list[Any] | None:
        return self._applied

    def acquire(self) -> RawModeGuard:
        if self._saved is not None:
            return self
        if not os.isatty(self.fd):
            logger.debug("fd %d is not a terminal, leaving line discipline alone", self.fd)
            return self

        try:
            saved = termios.tcgetattr(self.fd)
        except termios.error as e:
            logger.warning("tcgetattr(%d) failed: %s", self.fd, e)
            return self

        new = list(saved)
        new[LFLAG] = (new[LFLAG] & ~self.clear_flags) | self.set_flags
        try:
            termios.tcsetattr(self.fd, termios.TCSANOW, new)
        except termios.error as e:
            logger.warning("tcsetattr(%d) failed: %s", self.fd, e)
            return self

        self._saved = saved
        self._applied = new
        return self

    def release(self) -> None:
        if self._saved is None:
            return
        saved, self._saved = self._saved, None
        self._applied = None
        try:
            termios.tcsetattr(self.fd, termios.TCSANOW, saved)
        except termios.error as e:
            logger.warning("Restoring terminal attributes on fd %d failed: %s", self.fd, e)

    def __enter__(self) -> RawModeGuard:
        return self.acquire()

    def __exit__(self, *exc_info: object) -> None:
        self.release()


def get_window_size(fd: int) -> tuple[int, int] | None:
    """Return (rows, cols) of the terminal on ``fd``, or None if not a terminal."""
    if not os.isatty(fd):
        return None
    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\x00" * _WINSIZE.size)
    except OSError:
        return None
    rows, cols, _, _ = _WINSIZE.unpack(packed)
    return rows, cols


def set_window_size(fd: int, rows: int, cols: int) -> None:
    fcntl.ioctl(fd, termios.TIOCSWINSZ, _WINSIZE.pack(rows, cols, 0, 0))


def copy_window_size(src_fd: int, dst_fd: int) -> bool:
    """Copy the terminal size of ``src_fd`` onto ``dst_fd``.

    Returns False when ``src_fd`` is not a terminal or the size could not
    be applied.
    """
    size = get_window_size(src_fd)
    if size is None:
        return False
    try:
        set_window_size(dst_fd, *size)
    except OSError as e:
        logger.debug("TIOCSWINSZ on fd %d failed: %s", dst_fd, e)
        return False
    return True
