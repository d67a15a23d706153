"""
Stages: 单个流水线阶段的线程执行体

职责：
- 从入站通道拉取消息（阻塞），一次处理一单
- 处理时复检本部件（探测 + 容量），失败则丢弃该单并上报 dropped 事件，继续处理下一单
- relay 阶段成功后转发到下游通道；sink 阶段只消费
- 入站通道关闭且取空后进入 DRAINED：关闭下游发送端（级联关闭）、释放屏障句柄、线程退出
- 提供状态快照（RUNNING/PROCESSING/FORWARDING/DRAINED 与当前订单）
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Optional
import logging
import threading

from .barrier import BarrierHandle
from .components import Subsystem
from .domain import Failure, FailureKind, Ingredient, PipelineMessage
from .queues import ChannelDisconnected, Receiver, Sender

logger = logging.getLogger(__name__)

StageState = Literal["RUNNING", "PROCESSING", "FORWARDING", "DRAINED"]
EventKind = Literal["done", "dropped"]


@dataclass(frozen=True)
class StageEvent:
    """阶段事件：done 表示本阶段对该单处理成功，dropped 表示该单在本阶段被丢弃。"""

    kind: EventKind
    stage: str
    order_id: int
    failure: Optional[Failure] = None
    ingredient: Optional[Ingredient] = None


StageCallback = Callable[[StageEvent], None]


class StageWorker:
    """通用阶段执行体。relay = 有 outbox；sink = 无 outbox。

    参数：
    - name: 阶段名（线程名为 Stage-<name>）
    - subsystem: 本阶段绑定的部件
    - inbox: 入站接收端
    - handle: 完成屏障句柄
    - success_template: 成功日志模板，%s 为订单 id
    - timeout_ms: 复检探测超时
    - outbox: 下游发送端；None 表示 sink
    - forward_size: 转发时是否携带杯型（下游不做容量复检时为 False）
    - on_event: 事件回调（done / dropped）
    """

    def __init__(
        self,
        name: str,
        subsystem: Subsystem,
        inbox: Receiver[PipelineMessage],
        handle: BarrierHandle,
        success_template: str,
        timeout_ms: int,
        outbox: Optional[Sender[PipelineMessage]] = None,
        forward_size: bool = True,
        on_event: Optional[StageCallback] = None,
    ) -> None:
        self.name = name
        self.subsystem = subsystem
        self.inbox = inbox
        self.outbox = outbox
        self.handle = handle
        self.success_template = success_template
        self.timeout_ms = timeout_ms
        self.forward_size = forward_size
        self._on_event = on_event

        self._state: StageState = "RUNNING"
        self._current_order: Optional[int] = None
        self._processed = 0
        self._dropped = 0
        self._lock = threading.RLock()
        self._thread = threading.Thread(target=self._run, name=f"Stage-{name}", daemon=True)

    @property
    def is_sink(self) -> bool:
        return self.outbox is None

    @property
    def state(self) -> StageState:
        with self._lock:
            return self._state

    def start(self) -> None:
        """启动工作线程。线程无法启动时抛出 RuntimeError，由编排方处理。"""
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def abandon(self) -> None:
        """线程未能启动时调用：关闭入站（上游发送将得到 ChannelDisconnected）、关闭下游、释放句柄。"""
        self.inbox.close()
        self._finish()

    def status(self) -> Dict[str, Any]:
        """返回状态快照：{stage, state, current_order_id, processed, dropped}。"""
        with self._lock:
            return {
                "stage": self.name,
                "state": self._state,
                "current_order_id": self._current_order,
                "processed": self._processed,
                "dropped": self._dropped,
            }

    # -------------------- 内部逻辑 --------------------

    def _run(self) -> None:
        """工作线程主体：循环收单直到通道关闭。"""
        try:
            for msg in self.inbox:
                with self._lock:
                    self._state = "PROCESSING"
                    self._current_order = msg.order_id
                self._process(msg)
                with self._lock:
                    self._state = "RUNNING"
                    self._current_order = None
        except Exception:
            logger.exception("Stage %s stopped unexpectedly", self.name)
            self._report_lost()
        finally:
            self._finish()

    def _report_lost(self) -> None:
        """线程异常退出：断开入站，把当前订单与未消费订单逐一上报为 dropped。"""
        with self._lock:
            current = self._current_order
        pending = self.inbox.close()
        lost = ([current] if current is not None else []) + [m.order_id for m in pending]
        for order_id in lost:
            failure = Failure(
                FailureKind.LIVENESS,
                self.subsystem.name,
                f"Stage {self.name} stopped: client {order_id} not processed",
            )
            logger.error("%s", failure)
            self._drop(order_id, failure)

    def _process(self, msg: PipelineMessage) -> None:
        result = self.subsystem.exec_job(self.timeout_ms, msg.size)
        if not result.ok:
            logger.warning("%s", result.failure)
            self._drop(msg.order_id, result.failure)
            return

        if self.outbox is not None:
            with self._lock:
                self._state = "FORWARDING"
            out = PipelineMessage(msg.order_id, msg.size if self.forward_size else None)
            try:
                self.outbox.send(out)
            except ChannelDisconnected as exc:
                failure = Failure(
                    FailureKind.TRANSPORT,
                    self.subsystem.name,
                    f"Channel {exc.channel} disconnected: client {msg.order_id} not delivered",
                )
                logger.error("%s", failure)
                self._drop(msg.order_id, failure)
                return

        logger.info(self.success_template, msg.order_id)
        with self._lock:
            self._processed += 1
        self._emit(StageEvent("done", self.name, msg.order_id, ingredient=self.subsystem.product))

    def _drop(self, order_id: int, failure: Optional[Failure]) -> None:
        with self._lock:
            self._dropped += 1
        self._emit(StageEvent("dropped", self.name, order_id, failure=failure))

    def _emit(self, event: StageEvent) -> None:
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            # 回调异常不应导致线程崩溃
            logger.exception("Stage %s event callback failed", self.name)

    def _finish(self) -> None:
        with self._lock:
            self._state = "DRAINED"
            self._current_order = None
        if self.outbox is not None:
            self.outbox.close()
        self.handle.release()
