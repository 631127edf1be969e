from __future__ import annotations

import asyncio
import socket

import pytest

from nirgendwo.lib.watchdog import sd_notify, watchdog_loop


@pytest.fixture
def notify_socket(tmp_path, monkeypatch):
    path = str(tmp_path / "notify.sock")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM)
    sock.bind(path)
    sock.setblocking(False)
    monkeypatch.setenv("NOTIFY_SOCKET", path)
    yield sock
    sock.close()


def _received(sock: socket.socket) -> list[str]:
    messages = []
    while True:
        try:
            messages.append(sock.recv(1024).decode())
        except BlockingIOError:
            return messages


def test_sd_notify_without_socket_is_a_noop(monkeypatch):
    monkeypatch.delenv("NOTIFY_SOCKET", raising=False)
    assert sd_notify("WATCHDOG=1") is False


def test_sd_notify_sends_datagram(notify_socket):
    assert sd_notify("READY=1") is True
    assert _received(notify_socket) == ["READY=1"]


@pytest.mark.asyncio
async def test_status_line_is_sent_only_when_it_changes(notify_socket):
    status = ["player 127.0.0.1:33333 unreachable, 0 client(s)"]
    task = asyncio.create_task(watchdog_loop(interval=0.01, status=lambda: status[0]))
    await asyncio.sleep(0.05)
    status[0] = "player 127.0.0.1:33333 connected, 1 client(s)"
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    messages = _received(notify_socket)
    assert messages[0] == "READY=1"
    beats = messages[1:]
    assert len(beats) > 2
    assert all(m.startswith("WATCHDOG=1") for m in beats)
    statuses = [m.split("STATUS=", 1)[1] for m in beats if "STATUS=" in m]
    assert statuses == [
        "player 127.0.0.1:33333 unreachable, 0 client(s)",
        "player 127.0.0.1:33333 connected, 1 client(s)",
    ]
