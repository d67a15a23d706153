"""
Channel: 阶段之间的点对点消息通道（多生产者 / 单消费者，无界，FIFO）

设计要点：
- 一个 deque 存放待消费消息；RLock + Condition 保护共享状态，send 时唤醒等待的消费方
- 发送端计数：Sender.clone() 增加一个发送端，Sender.close() 释放；最后一个发送端关闭即通道关闭
- 接收端：recv() 阻塞等待；通道关闭且已取空时抛出 ChannelClosed，消费方据此进入排空结束
- 消费方已退出（Receiver.close()）后，send() 抛出 ChannelDisconnected，由发送方就地记录，不影响发送线程
- 同一发送端的消息按发送顺序送达；多个发送端之间的交错顺序不作保证
"""
from __future__ import annotations

from collections import deque
from typing import Any, Deque, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar
import threading
import time

from .domain import PipelineMessage

T = TypeVar("T")


class ChannelClosed(Exception):
    """所有发送端已关闭且通道已取空。"""


class ChannelDisconnected(Exception):
    """消费方已退出，消息无法送达。"""

    def __init__(self, channel: str, message: Any = None) -> None:
        self.channel = channel
        self.message = message
        super().__init__(f"Channel {channel} disconnected")


class _Channel(Generic[T]):
    """通道内部状态，由 Sender / Receiver 共享。"""

    def __init__(self, name: str) -> None:
        self.name = name
        self._items: Deque[T] = deque()
        self._lock = threading.RLock()
        self._not_empty = threading.Condition(self._lock)
        self._senders = 0
        self._receiver_alive = True
        self._sent = 0

    # -------------------- 发送端计数 --------------------

    def attach_sender(self) -> None:
        with self._lock:
            self._senders += 1

    def detach_sender(self) -> None:
        with self._lock:
            self._senders -= 1
            if self._senders == 0:
                # 唤醒消费方，使其观察到关闭
                self._not_empty.notify_all()

    # -------------------- 收发 --------------------

    def put(self, item: T) -> None:
        with self._lock:
            if not self._receiver_alive:
                raise ChannelDisconnected(self.name, item)
            self._items.append(item)
            self._sent += 1
            self._not_empty.notify()

    def get(self, block: bool = True, timeout: Optional[float] = None) -> Optional[T]:
        """取一条消息。

        - 有消息：立即弹出队头
        - 无消息且已关闭：抛出 ChannelClosed
        - 无消息且未关闭：非阻塞或超时返回 None，否则等待
        """
        with self._lock:
            end_time = None if timeout is None else time.monotonic() + max(0.0, timeout)
            while not self._items:
                if self._senders == 0:
                    raise ChannelClosed(self.name)
                if not block:
                    return None
                if end_time is None:
                    self._not_empty.wait()
                else:
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        return None
                    self._not_empty.wait(remaining)
            return self._items.popleft()

    def drop_receiver(self) -> List[T]:
        """消费方退出：取走全部未消费消息并返回，由调用方负责上报。"""
        with self._lock:
            self._receiver_alive = False
            pending = list(self._items)
            self._items.clear()
            return pending

    # -------------------- 查询/快照 --------------------

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "pending": len(self._items),
                "senders": self._senders,
                "sent": self._sent,
                "receiver_alive": self._receiver_alive,
                "closed": self._senders == 0,
            }


class Sender(Generic[T]):
    """发送端句柄。关闭后不可再发送；clone() 产生新的独立句柄。"""

    def __init__(self, chan: _Channel[T]) -> None:
        self._chan = chan
        self._closed = False
        chan.attach_sender()

    @property
    def name(self) -> str:
        return self._chan.name

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, item: T) -> None:
        """入队并唤醒消费方；消费方已退出时抛出 ChannelDisconnected。"""
        if self._closed:
            raise ValueError(f"send on closed sender of channel {self.name}")
        self._chan.put(item)

    def clone(self) -> "Sender[T]":
        if self._closed:
            raise ValueError(f"clone of closed sender of channel {self.name}")
        return Sender(self._chan)

    def close(self) -> None:
        """释放该发送端（幂等）。"""
        if not self._closed:
            self._closed = True
            self._chan.detach_sender()

    def __enter__(self) -> "Sender[T]":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class Receiver(Generic[T]):
    """接收端句柄（单消费者）。迭代直到通道关闭。"""

    def __init__(self, chan: _Channel[T]) -> None:
        self._chan = chan

    @property
    def name(self) -> str:
        return self._chan.name

    def recv(self, block: bool = True, timeout: Optional[float] = None) -> Optional[T]:
        return self._chan.get(block=block, timeout=timeout)

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                item = self._chan.get(block=True)
            except ChannelClosed:
                return
            if item is not None:
                yield item

    def close(self) -> List[T]:
        """消费方退出；之后的 send 将抛出 ChannelDisconnected。返回尚未消费的消息。"""
        return self._chan.drop_receiver()

    def snapshot(self) -> Dict[str, Any]:
        return self._chan.snapshot()


def channel(name: str) -> Tuple[Sender[PipelineMessage], Receiver[PipelineMessage]]:
    """创建一条通道，返回 (发送端, 接收端)。"""
    chan: _Channel[PipelineMessage] = _Channel(name)
    return Sender(chan), Receiver(chan)
