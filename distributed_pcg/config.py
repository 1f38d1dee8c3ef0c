"""
求解器配置

``SolverConfig`` 可直接构造、从字典构造，或从 YAML 文件加载::

    # pcg.yaml
    max_iterations: 5000
    tolerance: 1.0e-8
    device: auto
    fused_direction_update: false
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, Optional

import yaml

_VALID_DEVICES = ("auto", "cuda", "cpu")


@dataclass
class SolverConfig:
    """PCG 求解器配置

    Attributes:
        max_iterations: 最大迭代次数（达到即停止，不视为错误）
        tolerance: 收敛容差（解向量相对变化）
        device: 设备选择 ``"auto"`` / ``"cuda"`` / ``"cpu"``
        fused_direction_update: 方向更新 ``p = d + beta*p`` 使用融合单核，
            默认使用 scale + axpy 两步（不需要额外显存）
        check_breakdown: 检测数值崩溃（``p·Ap`` 非正或非有限）并抛出
            :class:`~distributed_pcg.pcg_solver.NumericalBreakdownError`；
            关闭时非有限值沿迭代传播
        profile: 记录各阶段耗时
        log_level: ``distributed_pcg`` logger 的日志级别（``None`` 表示不修改）
    """
    max_iterations: int = 5000
    tolerance: float = 1e-5
    device: str = "auto"
    fused_direction_update: bool = False
    check_breakdown: bool = True
    profile: bool = False
    log_level: Optional[str] = None

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """校验配置取值。"""
        if int(self.max_iterations) != self.max_iterations or self.max_iterations < 0:
            raise ValueError(f"max_iterations 须为非负整数，实际 {self.max_iterations!r}")
        if not self.tolerance >= 0.0:
            raise ValueError(f"tolerance 须为非负数，实际 {self.tolerance!r}")
        if self.device not in _VALID_DEVICES:
            raise ValueError(f"device 须为 {_VALID_DEVICES} 之一，实际 {self.device!r}")
        if self.log_level is not None and not isinstance(
            logging.getLevelName(str(self.log_level).upper()), int
        ):
            raise ValueError(f"未知日志级别: {self.log_level!r}")

    def apply_logging(self) -> None:
        """按 ``log_level`` 设置包 logger 级别。"""
        if self.log_level is not None:
            logging.getLogger("distributed_pcg").setLevel(str(self.log_level).upper())

    def replace(self, **overrides: Any) -> "SolverConfig":
        """返回覆盖部分字段后的新配置（值为 ``None`` 的覆盖项忽略）。"""
        values = self.to_dict()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return SolverConfig.from_dict(values)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SolverConfig":
        """从字典构造；出现未知键时报错。"""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"未知配置项: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str) -> "SolverConfig":
        """从 YAML 文件加载配置（空文件得到默认配置）。"""
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"配置文件 {path} 顶层须为映射，实际 {type(data).__name__}")
        return cls.from_dict(data)
