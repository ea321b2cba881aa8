"""Child side of the fork: attach to the PTY slave and exec the target."""

from __future__ import annotations

import fcntl
import logging
import os
import termios
from typing import NoReturn

from ptyrelay.pty.session import PtySession

logger = logging.getLogger(__name__)

# Exit code of a child that failed before (or at) exec.
LAUNCH_FAILURE_EXIT = 255


class LaunchError(OSError):
    """One step of attaching the child to its terminal failed."""

    def __init__(self, step: str, cause: OSError | None = None) -> None:
        errno_ = cause.errno if cause is not None else None
        detail = cause.strerror if cause is not None else "failed"
        super().__init__(errno_, f"{step}: {detail}")
        self.step = step
        self.detail = detail


def launch(
    session: PtySession,
    argv: list[str],
    err_fd: int | None = None,
    status_fd: int | None = None,
) -> NoReturn:
    """Turn the forked child into ``argv`` running on the session's slave.

    Never returns: either the process image is replaced, or the failure is
    logged (and reported on ``status_fd`` if given) and the child exits with
    ``LAUNCH_FAILURE_EXIT``.

    Args:
        session: The PTY allocated before the fork.
        argv: Program and its arguments.
        err_fd: Write end of the stderr pipe, or None to send stderr to the PTY.
        status_fd: Close-on-exec pipe used to report launch failures to the parent.
    """
    try:
        attach(session, err_fd)
        exec_target(argv)
    except LaunchError as e:
        logger.error("child launch failed at %s", e)
        if status_fd is not None:
            report_failure(status_fd, e)
    except BaseException as e:
        logger.exception("child launch failed")
        if status_fd is not None:
            report_failure(status_fd, LaunchError(type(e).__name__))
    finally:
        # Skip interpreter teardown; buffered stdio belongs to the parent.
        os._exit(LAUNCH_FAILURE_EXIT)


def attach(session: PtySession, err_fd: int | None = None) -> None:
    """Make the session's slave this process's controlling terminal and stdio."""
    slave_path = session.slave_path
    if not slave_path:
        raise LaunchError("ptsname")

    try:
        os.close(session.master_fd)
    except OSError as e:
        raise LaunchError("close(master)", e) from e
    if session.slave_fd >= 0:
        os.close(session.slave_fd)

    try:
        os.setsid()
    except OSError as e:
        raise LaunchError("setsid", e) from e

    try:
        slave_fd = os.open(slave_path, os.O_RDWR | os.O_NOCTTY)
    except OSError as e:
        raise LaunchError(f"open({slave_path})", e) from e

    try:
        fcntl.ioctl(slave_fd, termios.TIOCSCTTY, 0)
    except OSError as e:
        raise LaunchError("ioctl(TIOCSCTTY)", e) from e

    try:
        os.dup2(slave_fd, 0)
        os.dup2(slave_fd, 1)
        os.dup2(err_fd if err_fd is not None else slave_fd, 2)
    except OSError as e:
        raise LaunchError("dup2", e) from e

    if slave_fd > 2:
        os.close(slave_fd)
    if err_fd is not None and err_fd > 2:
        os.close(err_fd)


def exec_target(argv: list[str]) -> NoReturn:
    if not argv:
        raise LaunchError("execvp: empty argument vector")
    try:
        os.execvp(argv[0], argv)
    except OSError as e:
        raise LaunchError(f"execvp({argv[0]})", e) from e


def report_failure(status_fd: int, error: LaunchError) -> None:
    """Write ``step:errno:message`` for the parent to pick up."""
    detail = error.detail.replace(":", " ")
    record = f"{error.step}:{error.errno or 0}:{detail}\n"
    try:
        os.write(status_fd, record.encode("utf-8", errors="replace"))
    except OSError as e:
        logger.debug("could not report launch failure: %s", e)


def parse_failure(record: bytes) -> tuple[str, int, str] | None:
    """Inverse of ``report_failure``. None if ``record`` is empty."""
    text = record.decode("utf-8", errors="replace").strip()
    if not text:
        return None
    # The step may contain ':' (paths); errno and message are the last two fields.
    head, _, message = text.rpartition(":")
    step, _, errno_text = head.rpartition(":")
    try:
        errno_ = int(errno_text)
    except ValueError:
        return text, 0, ""
    return step, errno_, message

