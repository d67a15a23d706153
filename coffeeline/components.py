"""
Components: 物理部件的统一能力集（探测 / 容量检查 / 执行工序）

五个部件（豆仓、水箱、萃取压头、奶箱、打泡器）共用一个 Subsystem 类，
由 SubsystemKind 区分，不再为每个部件复制一份探测逻辑。

- probe(timeout_ms): 从 [min, max) 均匀抽取整数毫秒延迟，阻塞该时长；延迟 > timeout 即判定无响应
- check_capacity(size): 纯函数，比较该杯型的消耗量与恒定物料量（物料量在一次运行中不递减）
- exec_job(timeout_ms, size): 工序执行时的复检：先探测，再做容量检查（仅消耗型部件）
"""
from __future__ import annotations

import logging
import random
import time
from enum import Enum
from typing import Callable, Dict, Optional

from .config import LineConfig, ProbeConfig, SubsystemConfig
from .domain import FailureKind, Ingredient, ProbeResult, Size

logger = logging.getLogger(__name__)

LatencySource = Callable[[], int]
Sleeper = Callable[[float], None]


class SubsystemKind(Enum):
    HOPPER = "hopper"
    WATER = "water"
    PRESS = "press"
    MILK = "milk"
    FROTHER = "frother"


# 固定检查顺序
CHECK_ORDER = (
    SubsystemKind.HOPPER,
    SubsystemKind.WATER,
    SubsystemKind.PRESS,
    SubsystemKind.MILK,
    SubsystemKind.FROTHER,
)

# 产出配料的部件
PRODUCES: Dict[SubsystemKind, Ingredient] = {
    SubsystemKind.PRESS: Ingredient.ESPRESSO,
    SubsystemKind.FROTHER: Ingredient.MILK,
}


def uniform_latency(min_ms: int, max_ms: int, rng: Optional[random.Random] = None) -> LatencySource:
    """返回延迟源：每次调用从 [min_ms, max_ms) 抽取一个整数。"""
    r = rng or random.Random()
    return lambda: r.randrange(min_ms, max_ms)


class Subsystem:
    """单个物理部件。实例在运行期间只读，可被多个线程共享。"""

    def __init__(
        self,
        descriptor: SubsystemConfig,
        probe_config: Optional[ProbeConfig] = None,
        latency_source: Optional[LatencySource] = None,
        sleep: Optional[Sleeper] = None,
    ) -> None:
        self.descriptor = descriptor
        self.kind = SubsystemKind(descriptor.kind)
        self.probe_config = probe_config or ProbeConfig()
        self._latency = latency_source or uniform_latency(
            self.probe_config.min_latency_ms, self.probe_config.max_latency_ms
        )
        self._sleep = sleep or time.sleep

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def consumable(self) -> bool:
        return self.descriptor.consumable

    @property
    def product(self) -> Optional[Ingredient]:
        return PRODUCES.get(self.kind)

    def __repr__(self) -> str:
        return f"Subsystem({self.name!r}, kind={self.kind.value})"

    def probe(self, timeout_ms: int) -> ProbeResult:
        latency = self._latency()
        scale = self.probe_config.time_scale
        if scale > 0:
            self._sleep(latency * scale / 1000.0)
        if latency > timeout_ms:
            logger.debug("%s probe latency %dms exceeded timeout %dms", self.name, latency, timeout_ms)
            return ProbeResult.fail(
                FailureKind.LIVENESS, self.name, f"{self.name} Component Not Responding"
            )
        return ProbeResult.success(self.name)

    def check_capacity(self, size: Size) -> ProbeResult:
        if not self.consumable:
            return ProbeResult.success(self.name)
        d = self.descriptor
        if d.cost(size) <= d.level:
            return ProbeResult.success(self.name)
        return ProbeResult.fail(
            FailureKind.CAPACITY, self.name, f"Not enough {d.material} in {self.name}"
        )

    def check(self, timeout_ms: int, size: Optional[Size]) -> ProbeResult:
        """探测，通过后再做容量检查（size 为 None 或部件不消耗物料时跳过容量检查）。"""
        result = self.probe(timeout_ms)
        if not result.ok or size is None:
            return result
        return self.check_capacity(size)

    # 工序执行时的复检与准入检查相同
    exec_job = check


def build_subsystems(
    config: LineConfig,
    latency_source: Optional[LatencySource] = None,
    sleep: Optional[Sleeper] = None,
) -> Dict[SubsystemKind, Subsystem]:
    """按配置构建五个部件，键为 SubsystemKind，顺序同 CHECK_ORDER。"""
    subs = {
        SubsystemKind(d.kind): Subsystem(d, config.probe, latency_source, sleep)
        for d in config.subsystems
    }
    missing = [k.value for k in CHECK_ORDER if k not in subs]
    if missing:
        raise ValueError(f"missing subsystems: {missing}")
    return {k: subs[k] for k in CHECK_ORDER}
