"""Tests for ptyrelay.pty.relay (CompletionLatch, RelayLink, RelayEngine)."""

from __future__ import annotations

import os
import threading

import pytest

from ptyrelay.pty.relay import (
    CompletionLatch,
    LinkResult,
    RelayEngine,
    RelayLink,
    is_pipe,
    splice_available,
)


def _read_all(fd: int) -> bytes:
    chunks = []
    while True:
        chunk = os.read(fd, 65536)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


# ---------------------------------------------------------------------------
# CompletionLatch
# ---------------------------------------------------------------------------


class TestCompletionLatch:
    def test_initially_unset(self) -> None:
        latch = CompletionLatch()
        assert latch.is_set is False
        assert latch.first is None

    def test_wait_times_out(self) -> None:
        latch = CompletionLatch()
        assert latch.wait(timeout=0.01) is False

    def test_set_releases_waiter(self) -> None:
        latch = CompletionLatch()
        released = threading.Event()

        def waiter() -> None:
            latch.wait()
            released.set()

        t = threading.Thread(target=waiter)
        t.start()
        latch.set("down")
        t.join(timeout=5)
        assert released.is_set()
        assert latch.first == "down"

    def test_redundant_sets_keep_first(self) -> None:
        latch = CompletionLatch()
        latch.set("up")
        latch.set("down")
        latch.set("down err")
        assert latch.is_set is True
        assert latch.first == "up"
        assert latch.wait(timeout=0) is True


# ---------------------------------------------------------------------------
# RelayLink
# ---------------------------------------------------------------------------


class TestRelayLinkCopy:
    def test_copies_bytes_in_order(self, pipes) -> None:
        in_r, in_w = pipes()
        out_r, out_w = pipes()
        payload = bytes(range(256)) * 20
        os.write(in_w, payload)
        pipes.close(in_w)

        latch = CompletionLatch()
        link = RelayLink(in_r, out_w, "up", buffer_size=100, use_splice=False)
        result = link.run(latch)
        pipes.close(out_w)

        assert result is LinkResult.EOF
        assert link.bytes_moved == len(payload)
        assert _read_all(out_r) == payload
        assert latch.first == "up"

    def test_empty_input_is_eof(self, pipes) -> None:
        in_r, in_w = pipes()
        out_r, out_w = pipes()
        pipes.close(in_w)
        link = RelayLink(in_r, out_w, "up", use_splice=False)
        assert link.run(CompletionLatch()) is LinkResult.EOF
        assert link.bytes_moved == 0

    def test_write_error_stops_link(self, pipes) -> None:
        in_r, in_w = pipes()
        out_r, out_w = pipes()
        pipes.close(out_r)
        os.write(in_w, b"nobody is listening")
        latch = CompletionLatch()
        link = RelayLink(in_r, out_w, "down", use_splice=False)
        assert link.run(latch) is LinkResult.ERROR
        assert latch.is_set

    def test_pty_hangup_is_eof(self, pipes) -> None:
        out_r, out_w = pipes()
        master, slave = os.openpty()
        os.write(slave, b"last words\n")
        os.close(slave)
        try:
            link = RelayLink(master, out_w, "down", use_splice=False)
            assert link.run(CompletionLatch()) is LinkResult.EOF
        finally:
            os.close(master)
        pipes.close(out_w)
        assert b"last words" in _read_all(out_r)

    @pytest.mark.skipif(not splice_available(), reason="os.splice not available")
    def test_splice_matches_copy(self, pipes) -> None:
        payload = os.urandom(50_000)
        outputs = []
        for use_splice in (False, True):
            in_r, in_w = pipes()
            out_r, out_w = pipes()
            writer = threading.Thread(target=lambda: (os.write(in_w, payload), pipes.close(in_w)))
            collected: list[bytes] = []
            reader = threading.Thread(target=lambda: collected.append(_read_all(out_r)))
            writer.start()
            reader.start()
            link = RelayLink(in_r, out_w, "up", use_splice=use_splice)
            assert link.run(CompletionLatch()) is LinkResult.EOF
            pipes.close(out_w)
            writer.join(timeout=5)
            reader.join(timeout=5)
            outputs.append(collected[0])
            if use_splice:
                assert link.spliced is True
        assert outputs[0] == outputs[1] == payload


class TestIsPipe:
    def test_pipe(self, pipes) -> None:
        r, w = pipes()
        assert is_pipe(r) and is_pipe(w)

    def test_tty_is_not_pipe(self) -> None:
        master, slave = os.openpty()
        try:
            assert not is_pipe(master)
            assert not is_pipe(slave)
        finally:
            os.close(master)
            os.close(slave)

    def test_bad_fd(self) -> None:
        r, w = os.pipe()
        os.close(r)
        os.close(w)
        assert is_pipe(r) is False


# ---------------------------------------------------------------------------
# RelayEngine
# ---------------------------------------------------------------------------


class TestRelayEngine:
    def test_first_completion_wins(self, pipes) -> None:
        a_r, a_w = pipes()
        b_r, b_w = pipes()
        sink_r, sink_w = pipes()
        sink2_r, sink2_w = pipes()

        engine = RelayEngine(use_splice=False)
        quick = engine.add(a_r, sink_w, "quick")
        idle = engine.add(b_r, sink2_w, "idle")

        latch = engine.start()
        pipes.close(a_w)
        assert engine.wait_any(timeout=5) is True
        assert latch.first == "quick"
        assert idle.alive

        stragglers = engine.shutdown(join_timeout=5)
        assert stragglers == []
        assert quick.result is LinkResult.EOF
        assert idle.result is LinkResult.CANCELLED
        assert not idle.alive

    def test_drain_lets_links_finish(self, pipes) -> None:
        a_r, a_w = pipes()
        b_r, b_w = pipes()
        sink_r, sink_w = pipes()
        sink2_r, sink2_w = pipes()

        engine = RelayEngine(use_splice=False)
        engine.add(a_r, sink_w, "first")
        second = engine.add(b_r, sink2_w, "second")
        engine.start()
        pipes.close(a_w)
        engine.wait_any(timeout=5)

        os.write(b_w, b"late")
        pipes.close(b_w)
        engine.shutdown(drain_timeout=5, join_timeout=5)
        assert second.result is LinkResult.EOF
        assert os.read(sink2_r, 100) == b"late"

    def test_context_manager_cancels(self, pipes) -> None:
        r, w = pipes()
        sink_r, sink_w = pipes()
        engine = RelayEngine(use_splice=False)
        link = engine.add(r, sink_w, "idle")
        with engine:
            assert engine.wait_any(timeout=0.05) is False
        assert link.result is LinkResult.CANCELLED
        assert not link.alive

    def test_cannot_add_while_running(self, pipes) -> None:
        r, w = pipes()
        sink_r, sink_w = pipes()
        engine = RelayEngine(use_splice=False)
        engine.add(r, sink_w, "idle")
        with engine:
            with pytest.raises(RuntimeError):
                engine.add(r, sink_w, "again")

    def test_shutdown_before_start(self) -> None:
        assert RelayEngine().shutdown() == []
