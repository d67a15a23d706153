"""
tests/test_queues.py — 通道：FIFO、关闭语义、消费方退出后的发送。
"""
from __future__ import annotations

import threading
import time

import pytest

from coffeeline.domain import PipelineMessage, Size
from coffeeline.queues import ChannelClosed, ChannelDisconnected, channel


def test_fifo_within_single_producer():
    tx, rx = channel("t")
    for i in range(5):
        tx.send(PipelineMessage(i, Size.SMALL))
    assert [rx.recv().order_id for _ in range(5)] == [0, 1, 2, 3, 4]


def test_iteration_drains_then_stops_after_close():
    tx, rx = channel("t")
    tx.send(PipelineMessage(1))
    tx.send(PipelineMessage(2))
    tx.close()
    assert [m.order_id for m in rx] == [1, 2]
    with pytest.raises(ChannelClosed):
        rx.recv()


def test_closing_with_nothing_sent_ends_iteration():
    tx, rx = channel("t")
    tx.close()
    assert list(rx) == []


def test_open_empty_channel_non_blocking_returns_none():
    tx, rx = channel("t")
    assert rx.recv(block=False) is None
    assert rx.recv(timeout=0.01) is None
    tx.close()


def test_channel_stays_open_until_every_sender_closed():
    tx, rx = channel("t")
    tx2 = tx.clone()
    tx.close()
    tx2.send(PipelineMessage(7))
    assert rx.recv().order_id == 7
    assert rx.snapshot()["closed"] is False
    tx2.close()
    assert rx.snapshot()["closed"] is True


def test_close_is_idempotent():
    tx, rx = channel("t")
    tx.close()
    tx.close()
    assert rx.snapshot()["senders"] == 0


def test_send_on_closed_sender_raises_value_error():
    tx, _ = channel("t")
    tx.close()
    with pytest.raises(ValueError):
        tx.send(PipelineMessage(1))


def test_send_after_receiver_dropped_reports_disconnect():
    tx, rx = channel("water")
    tx.send(PipelineMessage(1))
    assert rx.close() == [PipelineMessage(1)]
    with pytest.raises(ChannelDisconnected) as exc_info:
        tx.send(PipelineMessage(2))
    assert exc_info.value.channel == "water"
    assert exc_info.value.message == PipelineMessage(2)


def test_blocked_receiver_wakes_on_send():
    tx, rx = channel("t")
    got = []

    def consume():
        for msg in rx:
            got.append(msg.order_id)

    t = threading.Thread(target=consume)
    t.start()
    time.sleep(0.02)
    tx.send(PipelineMessage(3))
    tx.close()
    t.join(timeout=2)
    assert not t.is_alive()
    assert got == [3]


def test_sender_context_manager_closes():
    tx, rx = channel("t")
    with tx:
        tx.send(PipelineMessage(1))
    assert [m.order_id for m in rx] == [1]
