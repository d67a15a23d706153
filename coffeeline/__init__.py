"""coffeeline: 以通道串联的咖啡产线模拟（准入检查 + 多阶段流水线 + 完成屏障）。"""
from .config import LineConfig, load_config
from .domain import Ingredient, Order, PipelineMessage, ProbeResult, Size
from .manager import BatchReport, Manager, run_batch

__all__ = [
    "BatchReport",
    "Ingredient",
    "LineConfig",
    "Manager",
    "Order",
    "PipelineMessage",
    "ProbeResult",
    "Size",
    "load_config",
    "run_batch",
]
