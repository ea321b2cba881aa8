"""PTY layer — allocation, child launch, raw-mode handling and byte relay.

The controller forks once per session: the child attaches to the PTY slave
and execs the target, the parent puts its own terminal in raw mode and
relays bytes between its stdio and the PTY master.
"""

from ptyrelay.pty.launcher import LAUNCH_FAILURE_EXIT, LaunchError, launch
from ptyrelay.pty.relay import CompletionLatch, LinkResult, RelayEngine, RelayLink
from ptyrelay.pty.session import PtyAllocationError, PtySession, open_session
from ptyrelay.pty.terminal import RawModeGuard, copy_window_size

__all__ = [
    "LAUNCH_FAILURE_EXIT",
    "CompletionLatch",
    "LaunchError",
    "LinkResult",
    "PtyAllocationError",
    "PtySession",
    "RawModeGuard",
    "RelayEngine",
    "RelayLink",
    "copy_window_size",
    "launch",
    "open_session",
]
