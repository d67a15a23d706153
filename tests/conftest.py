"""
测试公共夹具：快速配置（不真正 sleep）与确定的延迟源。
"""
from __future__ import annotations

import itertools
import threading
from typing import Callable, Iterable

import pytest

from coffeeline.config import LineConfig


@pytest.fixture()
def fast_config() -> LineConfig:
    """默认产线配置，time_scale=0：探测不阻塞。"""
    return LineConfig().with_probe(time_scale=0)


def fixed(latency: int) -> Callable[[], int]:
    return lambda: latency


def sequence(values: Iterable[int]) -> Callable[[], int]:
    """按顺序返回给定延迟，用尽后重复最后一个。"""
    values = list(values)
    it = itertools.chain(values, itertools.repeat(values[-1]))
    lock = threading.Lock()

    def source() -> int:
        with lock:
            return next(it)

    return source


def stage_threads(latency: int, otherwise: int) -> Callable[[], int]:
    """阶段线程内返回 latency，编排线程（准入检查）内返回 otherwise。"""
    def source() -> int:
        if threading.current_thread().name.startswith("Stage-"):
            return latency
        return otherwise

    return source
