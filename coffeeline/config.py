"""
Config: 产线配置加载（YAML -> 冻结 dataclass）

- 默认值与原始机器常量一致：豆仓 2 oz、水箱 2 oz、奶箱 10 oz，容量上限 64 oz
- 探测延迟区间 [2, 100) ms，超时 101 ms
- 查找顺序：参数路径 -> COFFEELINE_CONFIG 环境变量 -> config/line.yaml -> 内置默认
- 其他模块只使用 LineConfig，不直接读取 YAML
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from .domain import Size

logger = logging.getLogger(__name__)

ENV_VAR = "COFFEELINE_CONFIG"


@dataclass(frozen=True)
class SubsystemConfig:
    """单个物理部件的描述。consumption 为空表示该部件不消耗物料。"""

    name: str
    kind: str
    material: Optional[str] = None
    level: float = 0.0
    capacity: float = 64.0
    consumption: Tuple[Tuple[Size, float], ...] = ()

    @property
    def consumable(self) -> bool:
        return bool(self.consumption)

    def cost(self, size: Size) -> float:
        return dict(self.consumption)[size]


@dataclass(frozen=True)
class ProbeConfig:
    min_latency_ms: int = 2
    max_latency_ms: int = 100  # 不含上界
    timeout_ms: int = 101
    time_scale: float = 1.0  # 0 表示不真正 sleep（测试用）
    start_warn_ms: int = 50


@dataclass(frozen=True)
class OrderConfig:
    client: str
    size: Size = Size.MEDIUM


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    format: str = "%(message)s"


def _table(small: float, medium: float, large: float) -> Tuple[Tuple[Size, float], ...]:
    return ((Size.SMALL, small), (Size.MEDIUM, medium), (Size.LARGE, large))


DEFAULT_SUBSYSTEMS: Tuple[SubsystemConfig, ...] = (
    SubsystemConfig("CoffeeHopper", "hopper", "coffee beans", 2.0, 64.0, _table(1.0, 2.0, 3.0)),
    SubsystemConfig("WaterTank", "water", "water", 2.0, 64.0, _table(1.0, 2.0, 3.0)),
    SubsystemConfig("EspressoPress", "press"),
    SubsystemConfig("MilkTank", "milk", "milk", 10.0, 64.0, _table(7.0, 10.0, 13.0)),
    SubsystemConfig("Frother", "frother"),
)

DEFAULT_ORDERS: Tuple[OrderConfig, ...] = tuple(
    OrderConfig(name) for name in ("Josh", "Sharon", "Moobly", "Tosh", "Mary")
)

SUBSYSTEM_KINDS = ("hopper", "water", "press", "milk", "frother")


@dataclass(frozen=True)
class LineConfig:
    """根配置对象：产线所有设置的唯一来源。"""

    subsystems: Tuple[SubsystemConfig, ...] = DEFAULT_SUBSYSTEMS
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    orders: Tuple[OrderConfig, ...] = DEFAULT_ORDERS
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def subsystem(self, kind: str) -> SubsystemConfig:
        for sub in self.subsystems:
            if sub.kind == kind:
                return sub
        raise KeyError(kind)

    def with_level(self, kind: str, level: float) -> "LineConfig":
        """返回仅修改某部件物料量的新配置（测试与 CLI 使用）。"""
        subs = tuple(replace(s, level=level) if s.kind == kind else s for s in self.subsystems)
        return replace(self, subsystems=subs)

    def with_probe(self, **changes: Any) -> "LineConfig":
        return replace(self, probe=replace(self.probe, **changes))

    def with_orders(self, orders: Tuple[OrderConfig, ...]) -> "LineConfig":
        return replace(self, orders=tuple(orders))


# -------------------- 加载 --------------------

def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """深度合并：嵌套 dict 递归合并，标量以 overrides 为准。"""
    result = dict(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge(result[key], value)
        else:
            result[key] = value
    return result


def _default_subsystems_raw() -> Dict[str, Dict[str, Any]]:
    raw: Dict[str, Dict[str, Any]] = {}
    for s in DEFAULT_SUBSYSTEMS:
        entry: Dict[str, Any] = {"name": s.name, "material": s.material,
                                 "level": s.level, "capacity": s.capacity}
        if s.consumption:
            entry["consumption"] = {size.name.lower(): cost for size, cost in s.consumption}
        raw[s.kind] = entry
    return raw


def _build_subsystem(kind: str, raw: Dict[str, Any]) -> SubsystemConfig:
    consumption = raw.get("consumption") or {}
    if not isinstance(consumption, dict):
        raise ValueError(f"subsystems.{kind}.consumption must be a mapping")
    table = tuple((Size.parse(k), float(v)) for k, v in consumption.items())
    if table and {s for s, _ in table} != set(Size):
        raise ValueError(f"subsystems.{kind}.consumption must list small, medium and large")
    table = tuple(sorted(table, key=lambda item: list(Size).index(item[0])))
    return SubsystemConfig(
        name=str(raw.get("name", kind)),
        kind=kind,
        material=raw.get("material"),
        level=float(raw.get("level", 0.0)),
        capacity=float(raw.get("capacity", 64.0)),
        consumption=table,
    )


def _resolve_path(config_path: Path | str | None) -> Optional[Path]:
    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        return path
    if ENV_VAR in os.environ:
        path = Path(os.environ[ENV_VAR])
        if not path.exists():
            raise FileNotFoundError(f"{ENV_VAR} points to missing file: {path}")
        return path
    here = Path(__file__).resolve()
    for parent in (here.parent.parent, Path.cwd()):
        candidate = parent / "config" / "line.yaml"
        if candidate.exists():
            return candidate
    return None


def load_config(config_path: Path | str | None = None) -> LineConfig:
    """加载、校验并返回 LineConfig。

    异常：
    - FileNotFoundError: 显式给出的路径不存在
    - ValueError: YAML 结构或取值非法
    """
    path = _resolve_path(config_path)
    raw: Dict[str, Any] = {}
    if path is not None:
        logger.debug("Loading config from: %s", path)
        with path.open("r", encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(loaded)}")
        raw = loaded
    else:
        logger.debug("No config file found, using built-in defaults")
    return config_from_dict(raw)


def _mapping(value: Any, where: str) -> Dict[str, Any]:
    """None 视为空映射；其他非 dict 值一律拒绝。"""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where} must be a mapping, got: {type(value).__name__}")
    return value


_PROBE_FIELDS = {
    "min_latency_ms": int,
    "max_latency_ms": int,
    "timeout_ms": int,
    "time_scale": float,
    "start_warn_ms": int,
}


def _build_probe(raw: Dict[str, Any]) -> ProbeConfig:
    unknown = set(raw) - set(_PROBE_FIELDS)
    if unknown:
        raise ValueError(f"unknown probe settings: {sorted(unknown)}")
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        cast = _PROBE_FIELDS[key]
        # 延迟按整数毫秒抽样，不接受小数
        if cast is int and (isinstance(value, bool) or (isinstance(value, float) and not value.is_integer())):
            raise ValueError(f"probe.{key} must be an integer, got {value!r}")
        try:
            values[key] = cast(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"probe.{key} must be {cast.__name__}, got {value!r}") from exc
    return ProbeConfig(**values)


def config_from_dict(raw: Dict[str, Any]) -> LineConfig:
    """由已解析的 dict 构建配置，缺省项回落到内置默认值。"""
    raw = _mapping(raw, "config")
    overrides = {
        kind: _mapping(entry, f"subsystems.{kind}")
        for kind, entry in _mapping(raw.get("subsystems"), "subsystems").items()
    }
    subs_raw = _merge(_default_subsystems_raw(), overrides)
    unknown = set(subs_raw) - set(SUBSYSTEM_KINDS)
    if unknown:
        raise ValueError(f"unknown subsystems: {sorted(unknown)}")

    try:
        subsystems = tuple(_build_subsystem(kind, subs_raw[kind]) for kind in SUBSYSTEM_KINDS)
        probe = _build_probe(_mapping(raw.get("probe"), "probe"))
        log_cfg = LoggingConfig(**_mapping(raw.get("logging"), "logging"))
        orders_raw = raw.get("orders")
        if orders_raw is None:
            orders = DEFAULT_ORDERS
        else:
            if not isinstance(orders_raw, list):
                raise ValueError(f"orders must be a list, got: {type(orders_raw).__name__}")
            orders = tuple(
                OrderConfig(str(o["client"]), Size.parse(o.get("size", "medium")))
                for o in (_mapping(entry, "orders[]") for entry in orders_raw)
            )
    except (TypeError, KeyError, AttributeError) as exc:
        raise ValueError(f"Invalid config value: {exc}") from exc

    config = LineConfig(subsystems=subsystems, probe=probe, orders=orders, logging=log_cfg)
    validate_config(config)
    return config


def validate_config(config: LineConfig) -> None:
    """跨字段约束校验，违反时抛出 ValueError。"""
    p = config.probe
    if p.min_latency_ms < 0 or p.max_latency_ms <= p.min_latency_ms:
        raise ValueError(
            f"probe latency range must satisfy 0 <= min < max, got [{p.min_latency_ms}, {p.max_latency_ms})"
        )
    if p.timeout_ms < 0:
        raise ValueError(f"probe.timeout_ms must be >= 0, got {p.timeout_ms}")
    if p.time_scale < 0:
        raise ValueError(f"probe.time_scale must be >= 0, got {p.time_scale}")
    for sub in config.subsystems:
        if sub.consumable and not sub.material:
            raise ValueError(f"subsystem {sub.name} consumes material but names none")
        if not 0 <= sub.level <= sub.capacity:
            raise ValueError(
                f"subsystem {sub.name} level must be within [0, {sub.capacity}], got {sub.level}"
            )
