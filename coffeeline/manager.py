"""
Manager: 产线编排

职责：
- 构建流水线：创建通道、为五个阶段登记屏障句柄并启动线程
- 对批次中的每一单执行准入检查；通过则同时送入两个入口（磨豆入口、热奶入口），否则记录拒绝
- 关闭两个入口发送端，等待完成屏障（所有阶段排空）后返回批次报告
- 阶段事件（done / dropped）在此汇总：累积每杯配料，记录中途丢弃的订单
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional
import logging
import threading

from .admission import AdmissionController
from .barrier import CompletionBarrier
from .components import LatencySource, Sleeper, Subsystem, SubsystemKind, build_subsystems
from .config import LineConfig, OrderConfig
from .domain import Failure, FailureKind, Order, PipelineMessage
from .queues import ChannelDisconnected, Sender, channel
from .stages import StageCallback, StageEvent, StageWorker

logger = logging.getLogger(__name__)


class StageSpec(NamedTuple):
    name: str
    kind: SubsystemKind
    success_template: str
    downstream: Optional[str] = None


# 流水线拓扑：grind -> water -> press；milk -> froth
STAGES = (
    StageSpec("grind", SubsystemKind.HOPPER, "Coffee Ground for Client %s!", "water"),
    StageSpec("water", SubsystemKind.WATER, "Water Dispensed for Client %s!", "press"),
    StageSpec("press", SubsystemKind.PRESS, "Espresso Pressed for Client %s!"),
    StageSpec("milk", SubsystemKind.MILK, "Milk heated for Client %s!", "froth"),
    StageSpec("froth", SubsystemKind.FROTHER, "Milk frothed for Client %s!"),
)
ENTRY_STAGES = ("grind", "milk")
SINK_STAGES = tuple(s.name for s in STAGES if s.downstream is None)


@dataclass
class BatchReport:
    """一次批次运行的结果。"""

    orders: List[Order] = field(default_factory=list)
    admitted: List[int] = field(default_factory=list)
    rejected: Dict[int, List[str]] = field(default_factory=dict)
    completed: Dict[str, List[int]] = field(default_factory=lambda: {s.name: [] for s in STAGES})
    dropped: List[StageEvent] = field(default_factory=list)

    def order(self, order_id: int) -> Order:
        for o in self.orders:
            if o.id == order_id:
                return o
        raise KeyError(order_id)

    @property
    def finished(self) -> List[int]:
        """两个终点阶段都完成的订单 id。"""
        done = set(self.completed[SINK_STAGES[0]])
        for name in SINK_STAGES[1:]:
            done &= set(self.completed[name])
        return [oid for oid in self.admitted if oid in done]

    def cup_summary(self, order_id: int) -> str:
        return self.order(order_id).describe()


@dataclass
class Pipeline:
    entries: Dict[str, Sender[PipelineMessage]]
    workers: Dict[str, StageWorker]
    barrier: CompletionBarrier

    def close_entries(self) -> None:
        for sender in self.entries.values():
            sender.close()


class Manager:
    """产线编排者。

    - config: LineConfig；部件物料量、探测参数与默认批次都来自这里
    - on_event: 可选的阶段事件观察者（done / dropped）
    - latency_source / sleep: 注入到所有部件，测试时用于得到确定的探测延迟
    """

    def __init__(
        self,
        config: Optional[LineConfig] = None,
        on_event: Optional[StageCallback] = None,
        latency_source: Optional[LatencySource] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.config = config or LineConfig()
        self.subsystems: Dict[SubsystemKind, Subsystem] = build_subsystems(
            self.config, latency_source, sleep
        )
        self.timeout_ms = self.config.probe.timeout_ms
        self.admission = AdmissionController(self.subsystems, self.timeout_ms)
        self._on_event = on_event
        self._lock = threading.Lock()
        self._report = BatchReport()
        self._pipeline: Optional[Pipeline] = None

    # -------------------- 构建 --------------------

    def new_orders(self, batch: Iterable[OrderConfig]) -> List[Order]:
        """按批次顺序生成订单，id 从 0 开始。"""
        return [Order(id=i, client=o.client, size=o.size) for i, o in enumerate(batch)]

    def build_pipeline(self) -> Pipeline:
        """创建通道与阶段（未启动）。每个阶段在此时登记屏障句柄。"""
        barrier = CompletionBarrier()
        links = {spec.name: channel(spec.name) for spec in STAGES}
        kinds = {spec.name: spec.kind for spec in STAGES}
        workers: Dict[str, StageWorker] = {}
        for spec in STAGES:
            _, inbox = links[spec.name]
            outbox = links[spec.downstream][0] if spec.downstream else None
            forward_size = (
                spec.downstream is not None and self.subsystems[kinds[spec.downstream]].consumable
            )
            workers[spec.name] = StageWorker(
                name=spec.name,
                subsystem=self.subsystems[spec.kind],
                inbox=inbox,
                handle=barrier.register(spec.name),
                success_template=spec.success_template,
                timeout_ms=self.timeout_ms,
                outbox=outbox,
                forward_size=forward_size,
                on_event=self._on_stage_event,
            )
        entries = {name: links[name][0] for name in ENTRY_STAGES}
        return Pipeline(entries=entries, workers=workers, barrier=barrier)

    def start_pipeline(self, pipeline: Pipeline) -> None:
        """启动所有阶段线程。某个阶段启动失败只记录，不中止批次。"""
        for worker in pipeline.workers.values():
            try:
                worker.start()
            except RuntimeError as exc:
                logger.error("Error starting thread: %s", exc)
                worker.abandon()

    # -------------------- 运行 --------------------

    def run(self, batch: Optional[Iterable[OrderConfig]] = None) -> BatchReport:
        """运行一个批次，所有阶段排空后返回报告。"""
        orders = self.new_orders(self.config.orders if batch is None else batch)
        self._report = BatchReport(orders=orders)
        pipeline = self.build_pipeline()
        self._pipeline = pipeline
        self.start_pipeline(pipeline)

        try:
            for order in orders:
                decision = self.admission.evaluate(order)
                if decision.admitted:
                    with self._lock:
                        self._report.admitted.append(order.id)
                    self.start_order(pipeline, order)
                else:
                    with self._lock:
                        self._report.rejected[order.id] = [f.cause for f in decision.failures]
                    logger.warning("Cannot make %s's Coffee!", order.client)
        finally:
            pipeline.close_entries()

        pipeline.barrier.wait()
        logger.debug("All stages drained: %s", [w.status() for w in pipeline.workers.values()])
        return self._report

    def start_order(self, pipeline: Pipeline, order: Order) -> None:
        """把已准入的订单送入两个入口。"""
        if self.timeout_ms < self.config.probe.start_warn_ms:
            logger.warning("Client %s Start Coffee Timeout!", order.id)
        self._send_entry(pipeline, "grind", order, "Coffee Beans")
        self._send_entry(pipeline, "milk", order, "Milk")

    def _send_entry(self, pipeline: Pipeline, stage: str, order: Order, label: str) -> None:
        try:
            pipeline.entries[stage].send(order.message())
        except ChannelDisconnected as exc:
            logger.error("Error Starting Client %s %s!\n%s", order.id, label, exc)
            failure = Failure(
                FailureKind.TRANSPORT,
                "Orchestrator",
                f"Channel {exc.channel} disconnected: client {order.id} not delivered",
            )
            self._on_stage_event(StageEvent("dropped", stage, order.id, failure=failure))
        else:
            logger.info("Client %s %s Started!", order.id, label)

    def status(self) -> Dict[str, Any]:
        """返回系统快照：各阶段状态、入口通道与报告摘要。"""
        pipeline = self._pipeline
        with self._lock:
            summary = {
                "admitted": list(self._report.admitted),
                "rejected": sorted(self._report.rejected),
                "dropped": len(self._report.dropped),
            }
        if pipeline is None:
            return {"stages": [], **summary}
        return {
            "stages": [w.status() for w in pipeline.workers.values()],
            "entries": [s.name for s in pipeline.entries.values() if not s.closed],
            **summary,
        }

    # -------------------- 回调 --------------------

    def _on_stage_event(self, event: StageEvent) -> None:
        """阶段线程回调：汇总结果并转发给外部观察者。"""
        with self._lock:
            if event.kind == "done":
                self._report.completed[event.stage].append(event.order_id)
                if event.ingredient is not None:
                    self._report.order(event.order_id).add_ingredient(event.ingredient)
            else:
                self._report.dropped.append(event)
        if self._on_event is None:
            return
        try:
            self._on_event(event)
        except Exception:
            # 观察者异常不应打断编排或阶段线程
            logger.exception("Event observer failed for %s event of client %s", event.kind, event.order_id)


def run_batch(config: Optional[LineConfig] = None, **kwargs: Any) -> BatchReport:
    return Manager(config, **kwargs).run()
