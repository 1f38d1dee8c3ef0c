"""
收敛检测 (Convergence Monitor)

PCG 每次迭代后比较新旧解向量，判断相对变化是否低于容差。
"""

from __future__ import annotations

import logging

import numpy as np

from .algorithms.reduction import distributed_max_abs
from .mpi_manager import MPIManager

_logger = logging.getLogger("distributed_pcg.convergence")


class ConvergenceMonitor:
    """收敛检测接口。"""

    def check_converged(
        self,
        candidate: np.ndarray,
        tolerance: float,
        previous: np.ndarray,
    ) -> bool:
        """新解 *candidate* 相对旧解 *previous* 的变化在 *tolerance* 内时返回 ``True``。"""
        raise NotImplementedError


class MaxNormConvergenceMonitor(ConvergenceMonitor):
    """
    无穷范数相对变化判据::

        max|x_new - x_old| / max|x_new| <= tol

    两个最大值都做全局 ``MPI.MAX`` 归约，所有进程得到一致结论。
    新旧解完全相同（包括全零解）视为已收敛。

    重要：check_converged 含集合通信，所有进程都必须调用！

    Args:
        mpi: MPI 管理器
    """

    def __init__(self, mpi: MPIManager) -> None:
        self.mpi: MPIManager = mpi
        self.last_ratio: float = float("inf")

    def check_converged(
        self,
        candidate: np.ndarray,
        tolerance: float,
        previous: np.ndarray,
    ) -> bool:
        if candidate.shape != previous.shape:
            raise ValueError(f"新旧解形状不一致: {candidate.shape} vs {previous.shape}")

        max_new: float = distributed_max_abs(candidate, self.mpi)
        max_diff: float = distributed_max_abs(candidate - previous, self.mpi)

        if max_diff == 0.0:
            self.last_ratio = 0.0
            return True
        self.last_ratio = max_diff / max_new if max_new > 0.0 else float("inf")
        converged = self.last_ratio <= tolerance
        _logger.debug("收敛检测: max_diff=%.3e, max_new=%.3e, ratio=%.3e",
                      max_diff, max_new, self.last_ratio)
        return converged
