"""Configuration — Pydantic models for ptyrelay settings."""

from __future__ import annotations

import json
import os
import termios
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

_BOOL_TRUE = {"1", "true", "yes", "on"}


class RelayConfig(BaseModel):
    """Relay session configuration.

    Defaults reproduce the plain ``ptyrelay <program>`` behaviour: 4 KiB
    chunks, a separate relay for the child's stderr, no draining of the
    remaining directions once the first one finishes.
    """

    buffer_size: int = Field(default=4096, gt=0, description="Bytes per read/splice")
    separate_stderr: bool = Field(
        default=True,
        description="Relay the child's stderr through its own pipe instead of the PTY",
    )
    use_splice: bool = Field(
        default=True,
        description="Use os.splice when one end of a link is a pipe",
    )
    raw_clear_flags: list[str] = Field(
        default_factory=lambda: ["ICANON"],
        description="termios local-mode flags cleared on stdin while relaying",
    )
    raw_set_flags: list[str] = Field(
        default_factory=list,
        description="termios local-mode flags set on stdin while relaying",
    )
    drain_timeout: float = Field(
        default=0.0,
        ge=0.0,
        description=(
            "Seconds to let the other directions finish on their own after the "
            "first one completes. 0 ends the session on the first EOF."
        ),
    )
    join_timeout: float = Field(
        default=1.0,
        gt=0.0,
        description="Seconds to wait for each cancelled relay worker to exit",
    )
    sync_window_size: bool = Field(
        default=True,
        description="Copy the invoking terminal's size to the PTY (and on SIGWINCH)",
    )

    @field_validator("raw_clear_flags", "raw_set_flags")
    @classmethod
    def _known_flags(cls, value: list[str]) -> list[str]:
        names = [name.strip().upper() for name in value if name.strip()]
        for name in names:
            if not isinstance(getattr(termios, name, None), int):
                raise ValueError(f"Unknown termios flag: {name}")
        return names

    @property
    def clear_mask(self) -> int:
        return flag_mask(self.raw_clear_flags)

    @property
    def set_mask(self) -> int:
        return flag_mask(self.raw_set_flags)

    @classmethod
    def load(cls, config_path: str | None = None) -> RelayConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            PTYRELAY_BUFFER_SIZE       - Bytes per read/splice
            PTYRELAY_SEPARATE_STDERR   - "1"/"0": relay stderr through its own pipe
            PTYRELAY_USE_SPLICE        - "1"/"0": allow the splice fast path
            PTYRELAY_RAW_CLEAR_FLAGS   - Comma-separated termios flags to clear
            PTYRELAY_RAW_SET_FLAGS     - Comma-separated termios flags to set
            PTYRELAY_DRAIN_TIMEOUT     - Seconds to drain after the first EOF
            PTYRELAY_JOIN_TIMEOUT      - Seconds to wait for cancelled workers
            PTYRELAY_SYNC_WINDOW_SIZE  - "1"/"0": forward terminal size
        """
        load_dotenv()

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        env_buffer_size = os.environ.get("PTYRELAY_BUFFER_SIZE")
        if env_buffer_size:
            config_data["buffer_size"] = int(env_buffer_size)

        for key in ("separate_stderr", "use_splice", "sync_window_size"):
            env_value = os.environ.get(f"PTYRELAY_{key.upper()}")
            if env_value:
                config_data[key] = env_value.strip().lower() in _BOOL_TRUE

        for key in ("raw_clear_flags", "raw_set_flags"):
            env_value = os.environ.get(f"PTYRELAY_{key.upper()}")
            if env_value is not None:
                config_data[key] = env_value.split(",")

        for key in ("drain_timeout", "join_timeout"):
            env_value = os.environ.get(f"PTYRELAY_{key.upper()}")
            if env_value:
                config_data[key] = float(env_value)

        return cls.model_validate(config_data)


def flag_mask(names: list[str]) -> int:
    """OR together the termios flags named in ``names``."""
    mask = 0
    for name in names:
        mask |= getattr(termios, name)
    return mask
