"""Shared fixtures for the ptyrelay tests."""

from __future__ import annotations

import os

import pytest


class Pipes:
    """Creates pipes and closes whatever the test left open."""

    def __init__(self) -> None:
        self._open: set[int] = set()

    def __call__(self) -> tuple[int, int]:
        r, w = os.pipe()
        self._open.update((r, w))
        return r, w

    def close(self, fd: int) -> None:
        self._open.discard(fd)
        os.close(fd)

    def close_all(self) -> None:
        for fd in self._open:
            os.close(fd)
        self._open.clear()


@pytest.fixture
def pipes():
    p = Pipes()
    yield p
    p.close_all()


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith("PTYRELAY_"):
            monkeypatch.delenv(key)
