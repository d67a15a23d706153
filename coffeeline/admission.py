"""
Admission: 下单前的准入检查

对候选订单按固定顺序 {hopper, water, press, milk, frother} 逐个检查五个部件，
任何一个失败都记录原因，但继续检查其余部件（不短路），调用方可以看到全部拒绝原因。
五项全部通过才准入。
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Mapping, Tuple

from .components import CHECK_ORDER, Subsystem, SubsystemKind
from .domain import Failure, Order, ProbeResult, Size

logger = logging.getLogger(__name__)


def run_checks(
    subsystems: Mapping[SubsystemKind, Subsystem],
    timeout_ms: int,
    size: Size,
) -> List[ProbeResult]:
    """返回恰好五个结果，顺序同 CHECK_ORDER。"""
    results: List[ProbeResult] = []
    for kind in CHECK_ORDER:
        sub = subsystems[kind]
        result = sub.check(timeout_ms, size if sub.consumable else None)
        if not result.ok:
            logger.warning("%s", result.failure)
        results.append(result)
    return results


def admit(results: List[ProbeResult]) -> bool:
    return len(results) == len(CHECK_ORDER) and all(r.ok for r in results)


@dataclass(frozen=True)
class AdmissionDecision:
    order_id: int
    results: Tuple[ProbeResult, ...]
    admitted: bool

    @property
    def failures(self) -> List[Failure]:
        return [r.failure for r in self.results if r.failure is not None]


class AdmissionController:
    """持有部件集合与超时，对单个订单给出准入决定。"""

    def __init__(self, subsystems: Mapping[SubsystemKind, Subsystem], timeout_ms: int) -> None:
        self.subsystems = subsystems
        self.timeout_ms = timeout_ms

    def evaluate(self, order: Order) -> AdmissionDecision:
        results = run_checks(self.subsystems, self.timeout_ms, order.size)
        admitted = admit(results)
        order.status = "ADMITTED" if admitted else "REJECTED"
        return AdmissionDecision(order.id, tuple(results), admitted)
