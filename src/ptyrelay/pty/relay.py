"""Relay engine — one worker thread per direction, first completion wins.

Each ``RelayLink`` copies bytes from one descriptor to another on its own
thread. All links of a session share one ``CompletionLatch``; whichever link
stops first (EOF or error) releases the controller. The remaining links are
then cancelled through a shared wake-up pipe and joined before the session
closes any descriptor they use.
"""

from __future__ import annotations

import enum
import errno
import logging
import os
import select
import stat
import threading
import time
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 4096

_POLL_IN = select.POLLIN | select.POLLPRI


class LinkResult(enum.Enum):
    """Why a relay link stopped."""

    EOF = "eof"
    ERROR = "error"
    CANCELLED = "cancelled"


class CompletionLatch:
    """Single-use "some link finished" signal.

    ``set()`` may be called any number of times from any thread; only the
    first call has an effect. ``wait()`` blocks until the latch is set.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._done = False
        self._first: str | None = None

    def set(self, label: str | None = None) -> None:
        with self._cond:
            if self._done:
                return
            self._done = True
            self._first = label
            self._cond.notify_all()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until set. Returns False only if ``timeout`` expired."""
        with self._cond:
            return self._cond.wait_for(lambda: self._done, timeout)

    @property
    def is_set(self) -> bool:
        with self._cond:
            return self._done

    @property
    def first(self) -> str | None:
        """Label of the link that set the latch."""
        with self._cond:
            return self._first


def is_pipe(fd: int) -> bool:
    """True if ``fd`` refers to a FIFO or pipe."""
    try:
        return stat.S_ISFIFO(os.fstat(fd).st_mode)
    except OSError:
        return False


def splice_available() -> bool:
    return hasattr(os, "splice")


@dataclass
class RelayLink:
    """One direction of the relay: ``in_fd`` -> ``out_fd``."""

    in_fd: int
    out_fd: int
    label: str = ""
    buffer_size: int = DEFAULT_BUFFER_SIZE
    use_splice: bool = True

    bytes_moved: int = field(default=0, init=False)
    result: LinkResult | None = field(default=None, init=False)
    spliced: bool = field(default=False, init=False)
    _thread: threading.Thread | None = field(default=None, init=False, repr=False)
    _in_is_tty: bool = field(default=False, init=False, repr=False)

    def start(self, latch: CompletionLatch, cancel_fd: int | None = None) -> None:
        """Start the worker thread for this link."""
        self._thread = threading.Thread(
            target=self.run,
            args=(latch, cancel_fd),
            name=f"relay-{self.label or self.in_fd}",
            daemon=True,
        )
        self._thread.start()

    def run(self, latch: CompletionLatch, cancel_fd: int | None = None) -> LinkResult:
        """Copy until EOF, error, or cancellation, then set ``latch``."""
        try:
            self._in_is_tty = os.isatty(self.in_fd)
            poller = select.poll()
            poller.register(self.in_fd, _POLL_IN)
            if cancel_fd is not None:
                poller.register(cancel_fd, select.POLLIN)

            result = None
            if self.use_splice and splice_available() and (
                is_pipe(self.in_fd) or is_pipe(self.out_fd)
            ):
                result = self._splice_loop(poller, cancel_fd)
            if result is None:
                result = self._copy_loop(poller, cancel_fd)
            self.result = result
            logger.debug(
                "%s link stopped (%s) after %d bytes", self.label, result.value, self.bytes_moved
            )
            return result
        finally:
            if self.result is None:
                self.result = LinkResult.ERROR
            latch.set(self.label)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker to exit. Returns True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _wait_readable(self, poller: select.poll, cancel_fd: int | None) -> bool:
        """Block until ``in_fd`` has something to report. False if cancelled."""
        events = poller.poll()
        if cancel_fd is not None and any(fd == cancel_fd for fd, _ in events):
            return False
        return True

    def _read_failed(self, e: OSError, call: str) -> LinkResult:
        if e.errno == errno.EIO and self._in_is_tty:
            # The other side of the PTY hung up.
            logger.debug("%s %s(%d): terminal hung up", self.label, call, self.in_fd)
            return LinkResult.EOF
        logger.error("%s %s(%d) error: %d (%s)", self.label, call, self.in_fd, e.errno, e.strerror)
        return LinkResult.ERROR

    def _copy_loop(self, poller: select.poll, cancel_fd: int | None) -> LinkResult:
        while True:
            if not self._wait_readable(poller, cancel_fd):
                return LinkResult.CANCELLED
            try:
                data = os.read(self.in_fd, self.buffer_size)
            except OSError as e:
                return self._read_failed(e, "read")
            if not data:
                return LinkResult.EOF

            try:
                written = os.write(self.out_fd, data)
            except OSError as e:
                logger.error(
                    "%s write(%d) error: %d (%s)", self.label, self.out_fd, e.errno, e.strerror
                )
                return LinkResult.ERROR
            self.bytes_moved += written
            if written != len(data):
                logger.error(
                    "%s write(%d) short write: %d of %d bytes",
                    self.label,
                    self.out_fd,
                    written,
                    len(data),
                )
                return LinkResult.ERROR

    def _splice_loop(self, poller: select.poll, cancel_fd: int | None) -> LinkResult | None:
        """Move bytes in the kernel. Returns None if splice is unusable here."""
        flags = os.SPLICE_F_MOVE | os.SPLICE_F_MORE
        self.spliced = True
        while True:
            if not self._wait_readable(poller, cancel_fd):
                return LinkResult.CANCELLED
            try:
                moved = os.splice(self.in_fd, self.out_fd, self.buffer_size, flags=flags)
            except OSError as e:
                if e.errno == errno.EINVAL and self.bytes_moved == 0:
                    logger.debug(
                        "%s splice(%d, %d) unsupported, using read/write",
                        self.label,
                        self.in_fd,
                        self.out_fd,
                    )
                    self.spliced = False
                    return None
                if e.errno == errno.EIO and self._in_is_tty:
                    logger.debug("%s splice(%d): terminal hung up", self.label, self.in_fd)
                    return LinkResult.EOF
                logger.error(
                    "%s splice(%d, %d) error: %d (%s)",
                    self.label,
                    self.in_fd,
                    self.out_fd,
                    e.errno,
                    e.strerror,
                )
                return LinkResult.ERROR
            if moved == 0:
                return LinkResult.EOF
            self.bytes_moved += moved


class RelayEngine:
    """Runs a set of relay links and shuts them down together.

    Usage:
        engine = RelayEngine(buffer_size=4096)
        engine.add(stdin_fd, master_fd, "up")
        engine.add(master_fd, stdout_fd, "down")
        with engine:
            engine.wait_any()

    Leaving the ``with`` block (or calling ``shutdown()``) cancels the links
    still running and joins them.
    """

    def __init__(
        self,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        use_splice: bool = True,
        latch: CompletionLatch | None = None,
    ) -> None:
        self.buffer_size = buffer_size
        self.use_splice = use_splice
        self.latch = latch or CompletionLatch()
        self.links: list[RelayLink] = []
        self._cancel_r = -1
        self._cancel_w = -1
        self._started = False

    def add(self, in_fd: int, out_fd: int, label: str) -> RelayLink:
        if self._started:
            raise RuntimeError("Cannot add links to a running relay")
        link = RelayLink(
            in_fd=in_fd,
            out_fd=out_fd,
            label=label,
            buffer_size=self.buffer_size,
            use_splice=self.use_splice,
        )
        self.links.append(link)
        return link

    def start(self) -> CompletionLatch:
        """Start every link's worker and return the shared latch."""
        if self._started:
            return self.latch
        self._cancel_r, self._cancel_w = os.pipe()
        self._started = True
        for link in self.links:
            link.start(self.latch, self._cancel_r)
        logger.debug("Relay started: %s", ", ".join(link.label for link in self.links))
        return self.latch

    def wait_any(self, timeout: float | None = None) -> bool:
        """Block until the first link finishes."""
        return self.latch.wait(timeout)

    def cancel(self) -> None:
        """Wake every worker so it stops at its next poll."""
        if self._cancel_w < 0:
            return
        try:
            os.write(self._cancel_w, b"x")
        except OSError as e:
            logger.debug("cancel pipe write failed: %s", e)

    def shutdown(self, drain_timeout: float = 0.0, join_timeout: float = 1.0) -> list[RelayLink]:
        """Stop the remaining links and wait for them.

        With ``drain_timeout`` > 0 the links get that long to finish on
        their own before being cancelled.

        Returns the links whose workers did not exit within ``join_timeout``.
        """
        if not self._started:
            return []

        if drain_timeout > 0:
            deadline = time.monotonic() + drain_timeout
            for link in self.links:
                link.join(max(0.0, deadline - time.monotonic()))

        self.cancel()

        stragglers = []
        for link in self.links:
            if not link.join(join_timeout):
                logger.warning("%s link did not stop within %.1fs", link.label, join_timeout)
                stragglers.append(link)

        if not stragglers:
            self._close_cancel_pipe()
        self._started = False
        return stragglers

    def _close_cancel_pipe(self) -> None:
        for fd in (self._cancel_r, self._cancel_w):
            if fd >= 0:
                os.close(fd)
        self._cancel_r = self._cancel_w = -1

    def __enter__(self) -> RelayEngine:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
