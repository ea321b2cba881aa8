"""PTY allocation — master/slave pair plus the slave's device path."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


class PtyAllocationError(OSError):
    """A pseudo-terminal could not be opened, granted, unlocked or named."""

    def __init__(self, step: str, cause: OSError | None = None) -> None:
        errno_ = cause.errno if cause is not None else None
        detail = cause.strerror if cause is not None else "failed"
        super().__init__(errno_, f"{step}: {detail}")
        self.step = step


@dataclass
class PtySession:
    """One pseudo-terminal pair for one child.

    The parent owns ``master_fd`` until the session ends. ``slave_fd`` is a
    handle the parent keeps on the slave so the master does not report a
    hang-up before the child has attached; the controller drops it once the
    child has exec'd (see ``release_slave``).
    """

    master_fd: int
    slave_path: str
    slave_fd: int = -1
    pid: int = 0
    _closed: bool = field(default=False, init=False, repr=False)

    def release_slave(self) -> None:
        """Close the parent's handle on the slave side, if still held."""
        if self.slave_fd >= 0:
            try:
                os.close(self.slave_fd)
            except OSError:
                logger.debug("slave fd %d already closed", self.slave_fd)
            self.slave_fd = -1

    def close(self) -> None:
        """Close the master and any parent-held slave handle. Idempotent."""
        self.release_slave()
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self.master_fd)
        except OSError:
            logger.debug("master fd %d already closed", self.master_fd)

    @property
    def closed(self) -> bool:
        return self._closed


def open_session() -> PtySession:
    """Allocate a new PTY pair.

    Raises:
        PtyAllocationError: if no PTY is available, access is denied, the
            slave cannot be granted/unlocked, or its path cannot be resolved.
    """
    if hasattr(os, "posix_openpt"):
        master_fd, slave_path = _open_posix()
    else:
        master_fd, slave_path = _open_pair()

    try:
        slave_fd = os.open(slave_path, os.O_RDWR | os.O_NOCTTY)
    except OSError as e:
        os.close(master_fd)
        raise PtyAllocationError(f"open({slave_path})", e) from e

    session = PtySession(master_fd=master_fd, slave_path=slave_path, slave_fd=slave_fd)
    logger.debug("Allocated PTY master=%d slave=%s", master_fd, slave_path)
    return session


def _open_posix() -> tuple[int, str]:
    try:
        master_fd = os.posix_openpt(os.O_RDWR | os.O_NOCTTY)
    except OSError as e:
        raise PtyAllocationError("posix_openpt", e) from e

    step = "grantpt"
    try:
        os.grantpt(master_fd)
        step = "unlockpt"
        os.unlockpt(master_fd)
        step = "ptsname"
        slave_path = os.ptsname(master_fd)
    except OSError as e:
        os.close(master_fd)
        raise PtyAllocationError(step, e) from e

    if not slave_path:
        os.close(master_fd)
        raise PtyAllocationError("ptsname")
    return master_fd, slave_path


def _open_pair() -> tuple[int, str]:
    """Allocate through os.openpty() on interpreters without posix_openpt."""
    try:
        master_fd, slave_fd = os.openpty()
    except OSError as e:
        raise PtyAllocationError("openpty", e) from e

    try:
        slave_path = os.ttyname(slave_fd)
    except OSError as e:
        os.close(master_fd)
        raise PtyAllocationError("ttyname", e) from e
    finally:
        os.close(slave_fd)

    if not slave_path:
        os.close(master_fd)
        raise PtyAllocationError("ttyname")
    return master_fd, slave_path
