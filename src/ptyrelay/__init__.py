"""ptyrelay — run a program on a pseudo-terminal and relay its bytes."""

from ptyrelay.config import RelayConfig
from ptyrelay.controller import (
    SETUP_FAILURE_EXIT,
    exit_code_from_status,
    listen_session,
    run_session,
)

__all__ = [
    "SETUP_FAILURE_EXIT",
    "RelayConfig",
    "exit_code_from_status",
    "listen_session",
    "run_session",
]

__version__ = "0.1.0"
