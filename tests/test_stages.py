"""
tests/test_stages.py — 单个阶段：转发、丢弃、排空。
"""
from __future__ import annotations

import logging

import pytest

from coffeeline.barrier import CompletionBarrier
from coffeeline.components import Subsystem
from coffeeline.domain import FailureKind, Ingredient, PipelineMessage, Size
from coffeeline.queues import ChannelDisconnected, channel
from coffeeline.stages import StageWorker

from .conftest import fixed, sequence


def _make(config, kind, latency, with_outbox=True, **kwargs):
    barrier = CompletionBarrier()
    tx, rx = channel("in")
    out_tx, out_rx = channel("out") if with_outbox else (None, None)
    events = []
    worker = StageWorker(
        name=kind,
        subsystem=Subsystem(config.subsystem(kind), config.probe, latency),
        inbox=rx,
        handle=barrier.register(kind),
        success_template="Did %s!",
        timeout_ms=101,
        outbox=out_tx,
        on_event=events.append,
        **kwargs,
    )
    return worker, barrier, tx, out_rx, events


def test_relay_forwards_and_logs_after_send(fast_config, caplog):
    caplog.set_level(logging.INFO)
    worker, barrier, tx, out_rx, events = _make(fast_config, "hopper", fixed(5))
    worker.start()
    tx.send(PipelineMessage(0, Size.MEDIUM))
    tx.send(PipelineMessage(1, Size.SMALL))
    tx.close()
    assert barrier.wait(timeout=5)
    assert list(out_rx) == [PipelineMessage(0, Size.MEDIUM), PipelineMessage(1, Size.SMALL)]
    assert [e.order_id for e in events if e.kind == "done"] == [0, 1]
    assert "Did 0!" in caplog.messages
    assert worker.state == "DRAINED"


def test_forward_without_size(fast_config):
    worker, barrier, tx, out_rx, _ = _make(fast_config, "water", fixed(5), forward_size=False)
    worker.start()
    tx.send(PipelineMessage(4, Size.MEDIUM))
    tx.close()
    assert barrier.wait(timeout=5)
    assert list(out_rx) == [PipelineMessage(4, None)]


def test_sink_emits_ingredient(fast_config):
    worker, barrier, tx, _, events = _make(fast_config, "press", fixed(5), with_outbox=False)
    assert worker.is_sink
    worker.start()
    tx.send(PipelineMessage(2))
    tx.close()
    assert barrier.wait(timeout=5)
    assert events[0].kind == "done"
    assert events[0].ingredient is Ingredient.ESPRESSO


def test_failed_recheck_drops_and_keeps_running(fast_config, caplog):
    caplog.set_level(logging.WARNING)
    worker, barrier, tx, out_rx, events = _make(fast_config, "hopper", sequence([500, 5]))
    worker.start()
    tx.send(PipelineMessage(0, Size.MEDIUM))
    tx.send(PipelineMessage(1, Size.MEDIUM))
    tx.close()
    assert barrier.wait(timeout=5)
    assert [m.order_id for m in out_rx] == [1]
    dropped = [e for e in events if e.kind == "dropped"]
    assert [e.order_id for e in dropped] == [0]
    assert dropped[0].failure.kind is FailureKind.LIVENESS
    assert "CoffeeHopper Component Not Responding" in caplog.messages
    assert worker.status()["dropped"] == 1
    assert worker.status()["processed"] == 1


def test_capacity_recheck_failure_drops(fast_config):
    config = fast_config.with_level("milk", 3.0)
    worker, barrier, tx, out_rx, events = _make(config, "milk", fixed(5))
    worker.start()
    tx.send(PipelineMessage(0, Size.SMALL))
    tx.close()
    assert barrier.wait(timeout=5)
    assert list(out_rx) == []
    assert events[0].failure.cause == "Not enough milk in MilkTank"


def test_zero_messages_drains_without_blocking(fast_config):
    worker, barrier, tx, out_rx, events = _make(fast_config, "hopper", fixed(5))
    worker.start()
    tx.close()
    assert barrier.wait(timeout=5)
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert events == []
    # 下游发送端随之关闭
    assert list(out_rx) == []


def test_transport_failure_is_local(fast_config, caplog):
    caplog.set_level(logging.ERROR)
    worker, barrier, tx, out_rx, events = _make(fast_config, "hopper", fixed(5))
    out_rx.close()
    worker.start()
    tx.send(PipelineMessage(0, Size.MEDIUM))
    tx.send(PipelineMessage(1, Size.MEDIUM))
    tx.close()
    assert barrier.wait(timeout=5)
    assert [e.kind for e in events] == ["dropped", "dropped"]
    assert all(e.failure.kind is FailureKind.TRANSPORT for e in events)
    assert any("disconnected" in m for m in caplog.messages)


def test_callback_errors_do_not_kill_worker(fast_config):
    barrier = CompletionBarrier()
    tx, rx = channel("in")

    def boom(event):
        raise RuntimeError("observer failed")

    worker = StageWorker(
        "froth",
        Subsystem(fast_config.subsystem("frother"), fast_config.probe, fixed(5)),
        rx,
        barrier.register("froth"),
        "Milk frothed for Client %s!",
        101,
        on_event=boom,
    )
    worker.start()
    tx.send(PipelineMessage(0))
    tx.send(PipelineMessage(1))
    tx.close()
    assert barrier.wait(timeout=5)
    assert worker.status()["processed"] == 2


def test_crashed_stage_reports_every_queued_order(fast_config, caplog):
    caplog.set_level(logging.ERROR)

    def broken_sensor():
        raise RuntimeError("sensor bus fault")

    worker, barrier, tx, out_rx, events = _make(fast_config, "hopper", broken_sensor)
    for oid in range(3):
        tx.send(PipelineMessage(oid, Size.MEDIUM))
    worker.start()
    assert barrier.wait(timeout=5)

    dropped = [e for e in events if e.kind == "dropped"]
    assert sorted(e.order_id for e in dropped) == [0, 1, 2]
    assert all(e.failure.kind is FailureKind.LIVENESS for e in dropped)
    assert "Stage hopper stopped: client 2 not processed" in caplog.messages
    assert worker.state == "DRAINED"
    # 入站已断开，上游后续发送就地失败
    with pytest.raises(ChannelDisconnected):
        tx.send(PipelineMessage(3, Size.MEDIUM))
    assert list(out_rx) == []


def test_abandon_releases_handle_and_disconnects_inbox(fast_config):
    worker, barrier, tx, out_rx, _ = _make(fast_config, "water", fixed(5))
    worker.abandon()
    assert barrier.wait(timeout=0.1)
    assert worker.state == "DRAINED"
    with pytest.raises(ChannelDisconnected):
        tx.send(PipelineMessage(0, Size.MEDIUM))
    assert list(out_rx) == []
