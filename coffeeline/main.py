from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

from .config import LineConfig, load_config
from .domain import Size
from .manager import BatchReport, Manager

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def configure_logging(level: str = "INFO", fmt: str = "%(message)s") -> None:
    # 控制台行与原始输出格式一致：只输出消息本身
    root = logging.getLogger()
    if not any(getattr(h, "_coffeeline", False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(fmt))
        handler._coffeeline = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level.upper())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="coffeeline", description="Run one batch through the coffee line.")
    parser.add_argument("--config", help="path to a line.yaml file")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=None,
                        help="console log level")
    parser.add_argument("--timeout-ms", type=int, default=None, help="probe timeout in ms")
    parser.add_argument("--size", choices=[s.name.lower() for s in Size], default=None,
                        help="override the size of every order in the batch")
    return parser


def _apply_overrides(config: LineConfig, args: argparse.Namespace) -> LineConfig:
    if args.timeout_ms is not None:
        config = config.with_probe(timeout_ms=args.timeout_ms)
    if args.size is not None:
        size = Size.parse(args.size)
        config = config.with_orders(tuple(replace(o, size=size) for o in config.orders))
    return config


def print_report(report: BatchReport) -> None:
    for oid in report.finished:
        order = report.order(oid)
        print(f"{order.client}: {order.describe()}")
    for oid, causes in report.rejected.items():
        print(f"{report.order(oid).client}: rejected ({'; '.join(causes)})")


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    args = _build_parser().parse_args(argv)
    config = _apply_overrides(load_config(args.config), args)
    configure_logging(args.log_level or config.logging.level, config.logging.format)
    report = Manager(config).run()
    print_report(report)
    # 部分失败只记录日志，不影响退出码
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
