"""
CompletionBarrier: 计数式完成屏障

- register(): 构建流水线时为每个阶段登记一个句柄
- BarrierHandle.release(): 阶段排空退出时释放（幂等）
- wait(): 阻塞直到所有句柄释放；编排方不设超时
"""
from __future__ import annotations

from typing import Optional
import threading
import time


class BarrierHandle:
    """单个阶段持有的句柄。"""

    def __init__(self, barrier: "CompletionBarrier", label: str) -> None:
        self._barrier = barrier
        self.label = label
        self._released = False
        self._lock = threading.Lock()

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._barrier._done()

    def __enter__(self) -> "BarrierHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()


class CompletionBarrier:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._all_done = threading.Condition(self._lock)
        self._outstanding = 0
        self._registered = 0

    def register(self, label: str = "") -> BarrierHandle:
        with self._lock:
            self._outstanding += 1
            self._registered += 1
            return BarrierHandle(self, label or f"worker-{self._registered}")

    def _done(self) -> None:
        with self._lock:
            self._outstanding -= 1
            if self._outstanding == 0:
                self._all_done.notify_all()

    @property
    def outstanding(self) -> int:
        with self._lock:
            return self._outstanding

    def wait(self, timeout: Optional[float] = None) -> bool:
        """等待全部句柄释放。

        返回：True 表示全部释放；False 表示超时（仅当传入 timeout 时可能发生）
        """
        with self._lock:
            end_time = None if timeout is None else time.monotonic() + max(0.0, timeout)
            while self._outstanding > 0:
                if end_time is None:
                    self._all_done.wait()
                else:
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        return False
                    self._all_done.wait(remaining)
            return True
