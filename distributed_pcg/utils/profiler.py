"""
性能分析工具

提供分阶段计时，用于记录 PCG 迭代中矩阵乘法（纯计算核 / 含拷贝）、
向量上传、设备点积和 allreduce 的耗时。

默认不做额外的 CUDA 同步：计时区间的结束点应位于已有的同步点之后
（例如批量乘法结束后的显式同步），否则测得的是异步发射时间。
"""

from __future__ import annotations

import logging
import statistics
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

import torch


class Profiler:
    """
    性能分析器

    用法::

        prof = Profiler()
        with prof.section("matvec_kernel"):
            ...  # 计算
        prof.log_summary(logger)

    Args:
        enabled: 是否启用分析（False 时所有操作为空操作）
        cuda_sync: 计时起止是否调用 ``torch.cuda.synchronize()``
    """

    def __init__(self, enabled: bool = True, cuda_sync: bool = False) -> None:
        self.enabled: bool = enabled
        self.cuda_sync: bool = cuda_sync and torch.cuda.is_available()
        self.timings: Dict[str, List[float]] = {}
        self.active_timers: Dict[str, float] = {}

    # ==================== 计时 ====================

    def start(self, name: str) -> None:
        """开始计时"""
        if not self.enabled:
            return
        if self.cuda_sync:
            torch.cuda.synchronize()
        self.active_timers[name] = time.perf_counter()

    def end(self, name: str) -> float:
        """
        结束计时

        Returns:
            持续时间（秒），未启用或无对应 start 时返回 0.0
        """
        if not self.enabled:
            return 0.0
        if self.cuda_sync:
            torch.cuda.synchronize()
        if name not in self.active_timers:
            return 0.0

        duration: float = time.perf_counter() - self.active_timers.pop(name)
        self.timings.setdefault(name, []).append(duration)
        return duration

    @contextmanager
    def section(self, name: str) -> Iterator[None]:
        """计时上下文；区间内抛出异常时不记录。"""
        self.start(name)
        try:
            yield
        except BaseException:
            self.active_timers.pop(name, None)
            raise
        self.end(name)

    # ==================== 统计查询 ====================

    def get_average(self, name: str) -> float:
        """获取指定阶段的平均耗时（秒）"""
        times = self.timings.get(name, [])
        return sum(times) / len(times) if times else 0.0

    def get_total(self, name: str) -> float:
        """获取指定阶段的总耗时（秒）"""
        return sum(self.timings.get(name, []))

    def totals(self) -> Dict[str, float]:
        """各阶段总耗时（秒）"""
        return {name: sum(times) for name, times in self.timings.items()}

    # ==================== 生命周期 ====================

    def reset(self) -> None:
        """重置所有记录"""
        self.timings.clear()
        self.active_timers.clear()

    # ==================== 输出 ====================

    def log_summary(self, logger: logging.Logger, level: int = logging.INFO) -> None:
        """将各阶段统计写入 *logger*"""
        if not self.enabled or not self.timings:
            return
        for name, times in self.timings.items():
            total: float = sum(times)
            std: Optional[float] = statistics.stdev(times) if len(times) > 1 else None
            logger.log(
                level,
                "%s: 调用 %d 次, 总耗时 %.4f 秒, 平均 %.6f 秒%s",
                name, len(times), total, total / len(times),
                f", 标准差 {std:.6f} 秒" if std is not None else "",
            )
