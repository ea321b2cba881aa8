"""Session controller — PTY, fork, relay, wait, exit status."""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import threading
import time
from typing import Callable, Iterator

from ptyrelay.config import RelayConfig
from ptyrelay.pty.launcher import launch, parse_failure
from ptyrelay.pty.relay import CompletionLatch, LinkResult, RelayEngine, RelayLink
from ptyrelay.pty.session import PtyAllocationError, PtySession, open_session
from ptyrelay.pty.terminal import RawModeGuard, copy_window_size

logger = logging.getLogger(__name__)

# Returned when no child exit status exists (allocation, pipe or fork failure).
SETUP_FAILURE_EXIT = 255


def exit_code_from_status(status: int) -> int:
    """Translate a ``waitpid`` status into a shell-style exit code."""
    if os.WIFEXITED(status):
        return os.WEXITSTATUS(status)
    if os.WIFSIGNALED(status):
        return 128 + os.WTERMSIG(status)
    if os.WIFSTOPPED(status):
        return 128 + os.WSTOPSIG(status)
    return 1


def run_session(
    argv: list[str],
    config: RelayConfig | None = None,
    stdin_fd: int = 0,
    stdout_fd: int = 1,
    stderr_fd: int = 2,
    on_spawn: Callable[[PtySession], None] | None = None,
) -> int:
    """Run ``argv`` on a fresh PTY and relay it to the given descriptors.

    Returns the child's translated exit code, or ``SETUP_FAILURE_EXIT``
    when the child could not be created.

    Args:
        argv: Program and its arguments.
        config: Relay settings (defaults if None).
        stdin_fd, stdout_fd, stderr_fd: The caller's side of the relay.
        on_spawn: Called in the parent once the child has been forked and
            the PTY is attached (used for the startup banner).
    """
    config = config or RelayConfig()

    try:
        session = open_session()
    except PtyAllocationError as e:
        logger.error("PTY allocation failed: %s", e)
        return SETUP_FAILURE_EXIT

    pipes: list[int] = []
    try:
        try:
            err_r, err_w = os.pipe() if config.separate_stderr else (-1, -1)
            pipes += [fd for fd in (err_r, err_w) if fd >= 0]
            status_r, status_w = os.pipe()
            pipes += [status_r, status_w]
            pid = os.fork()
        except OSError as e:
            logger.error("Could not start child: %s", e)
            return SETUP_FAILURE_EXIT

        if pid == 0:
            os.close(status_r)
            if err_r >= 0:
                os.close(err_r)
            launch(
                session,
                argv,
                err_fd=err_w if err_w >= 0 else None,
                status_fd=status_w,
            )

        session.pid = pid
        logger.debug("Forked child %d for %s", pid, argv[0] if argv else "")
        for fd in (status_w, err_w):
            if fd >= 0:
                os.close(fd)
                pipes.remove(fd)

        failure = _read_launch_status(status_r)
        session.release_slave()

        if failure is not None:
            step, errno_, message = failure
            logger.error(
                "Failed to launch %s at %s: %s (errno %d)",
                argv[0] if argv else "<empty>",
                step,
                message,
                errno_,
            )
            if err_r >= 0:
                RelayLink(err_r, stderr_fd, "down err", use_splice=False).run(CompletionLatch())
            return _wait_child(pid)

        if on_spawn is not None:
            try:
                on_spawn(session)
            except BaseException:
                session.close()
                _reap_after_hangup(pid, config.join_timeout)
                raise

        return _relay(session, config, stdin_fd, stdout_fd, stderr_fd, err_r)
    finally:
        session.close()
        for fd in pipes:
            os.close(fd)


def _relay(
    session: PtySession,
    config: RelayConfig,
    stdin_fd: int,
    stdout_fd: int,
    stderr_fd: int,
    err_r: int,
) -> int:
    engine = RelayEngine(buffer_size=config.buffer_size, use_splice=config.use_splice)
    engine.add(stdin_fd, session.master_fd, "up")
    engine.add(session.master_fd, stdout_fd, "down")
    if err_r >= 0:
        engine.add(err_r, stderr_fd, "down err")

    interrupted = False
    guard = RawModeGuard(stdin_fd, config.clear_mask, config.set_mask)
    with guard, _window_size_forwarding(stdin_fd, session.master_fd, config.sync_window_size):
        engine.start()
        try:
            # Wake periodically so SIGINT is handled on the main thread.
            while not engine.wait_any(timeout=0.5):
                pass
            logger.debug("%s link finished first", engine.latch.first)
            code = _wait_child(session.pid)
        except KeyboardInterrupt:
            interrupted = True
        finally:
            engine.shutdown(config.drain_timeout, config.join_timeout)

    if interrupted:
        logger.info("Interrupted, hanging up %s", session.slave_path)
        session.close()
        _reap_after_hangup(session.pid, config.join_timeout)
        return 128 + signal.SIGINT
    return code


def _wait_child(pid: int) -> int:
    _, status = os.waitpid(pid, 0)
    code = exit_code_from_status(status)
    logger.info("Child %d finished: status=%#x exit code=%d", pid, status, code)
    return code


def _reap_after_hangup(pid: int, timeout: float) -> int:
    """Reap a child whose terminal was just hung up; SIGKILL it after ``timeout``."""
    deadline = time.monotonic() + timeout
    while True:
        done, status = os.waitpid(pid, os.WNOHANG)
        if done:
            return status
        if time.monotonic() >= deadline:
            logger.warning("Child %d ignored the hangup, killing it", pid)
            os.kill(pid, signal.SIGKILL)
            return os.waitpid(pid, 0)[1]
        time.sleep(0.05)


def _read_launch_status(status_r: int) -> tuple[str, int, str] | None:
    """Block until the child execs (EOF) or reports a failure record."""
    chunks = []
    while True:
        chunk = os.read(status_r, 1024)
        if not chunk:
            break
        chunks.append(chunk)
    return parse_failure(b"".join(chunks))


@contextlib.contextmanager
def _window_size_forwarding(tty_fd: int, master_fd: int, enabled: bool) -> Iterator[None]:
    """Copy the terminal size now and on every SIGWINCH while in scope."""
    if not enabled or not copy_window_size(tty_fd, master_fd):
        yield
        return
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _on_resize(signum: int, frame: object) -> None:
        copy_window_size(tty_fd, master_fd)

    previous = signal.signal(signal.SIGWINCH, _on_resize)
    try:
        yield
    finally:
        signal.signal(signal.SIGWINCH, previous)


def listen_session(
    config: RelayConfig | None = None,
    stdout_fd: int = 1,
    on_open: Callable[[PtySession], None] | None = None,
) -> int:
    """Open a PTY without a child and copy whatever is written to it to ``stdout_fd``.

    Other processes can write to the announced slave device. The session
    ends on EOF, a write error on ``stdout_fd``, or Ctrl-C (exit code 0).
    """
    config = config or RelayConfig()

    try:
        session = open_session()
    except PtyAllocationError as e:
        logger.error("PTY allocation failed: %s", e)
        return SETUP_FAILURE_EXIT

    engine = RelayEngine(buffer_size=config.buffer_size, use_splice=config.use_splice)
    link = engine.add(session.master_fd, stdout_fd, "down")
    try:
        if on_open is not None:
            on_open(session)
        with engine:
            while not engine.wait_any(timeout=0.5):
                pass
    except KeyboardInterrupt:
        logger.info("Interrupted, closing %s", session.slave_path)
        return 0
    finally:
        session.close()
    return 0 if link.result in (LinkResult.EOF, LinkResult.CANCELLED) else 1
