"""
Domain models: 统一的订单 / 消息 / 检查结果定义

只在此处定义 Order、PipelineMessage、Failure 等，其他模块一律从这里导入，避免重复定义。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Literal, NamedTuple, Optional


OrderStatus = Literal["PENDING", "ADMITTED", "REJECTED"]


class Size(Enum):
    """杯型。value 为展示用标签。"""

    SMALL = "8 oz."
    MEDIUM = "12 oz."
    LARGE = "16 oz."

    @property
    def label(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> "Size":
        """按名称解析（大小写不敏感）：'small' | 'medium' | 'large'。"""
        key = (text or "").strip().upper()
        try:
            return cls[key]
        except KeyError:
            raise ValueError(f"unknown size: {text!r}") from None


class Ingredient(Enum):
    ESPRESSO = "Espresso"
    MILK = "Milk"


class FailureKind(Enum):
    LIVENESS = "liveness"
    CAPACITY = "capacity"
    TRANSPORT = "transport"


@dataclass(frozen=True)
class Failure:
    """带标签的失败：kind + 子系统名 + 可读原因。str() 即原因文本。"""

    kind: FailureKind
    subsystem: str
    cause: str

    def __str__(self) -> str:
        return self.cause


@dataclass(frozen=True)
class ProbeResult:
    """单个子系统的检查结果：成功，或携带 Failure。"""

    subsystem: str
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, subsystem: str) -> "ProbeResult":
        return cls(subsystem=subsystem)

    @classmethod
    def fail(cls, kind: FailureKind, subsystem: str, cause: str) -> "ProbeResult":
        return cls(subsystem=subsystem, failure=Failure(kind, subsystem, cause))


class PipelineMessage(NamedTuple):
    """流水线消息 (order_id, size)。下游不做容量复检时 size 为 None。"""

    order_id: int
    size: Optional[Size] = None


@dataclass
class Order:
    """订单实体

    - id: 批次内唯一整数，由管理类按批次顺序生成
    - client: 顾客名
    - size: 杯型
    - ingredients: 各阶段产出的配料，按完成顺序累积
    - status: 'PENDING' | 'ADMITTED' | 'REJECTED'（默认 PENDING）
    """

    id: int
    client: str
    size: Size = Size.MEDIUM
    ingredients: List[Ingredient] = field(default_factory=list)
    status: OrderStatus = "PENDING"

    def message(self) -> PipelineMessage:
        return PipelineMessage(self.id, self.size)

    def add_ingredient(self, ingredient: Ingredient) -> None:
        self.ingredients.append(ingredient)

    def describe(self) -> str:
        contents = "".join(f" {i.value} " for i in self.ingredients)
        return f"Size: {self.size.label}, Contents: {contents}"
