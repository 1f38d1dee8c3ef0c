"""
分布式归约操作

PCG 中的跨进程标量归约：本地部分点积 / 最大范数 + MPI allreduce。
每个进程只持有自己的方程块，全局内积 = 各进程部分内积之和。

所有函数内部都包含集合通信，所有进程都必须调用！
"""

from __future__ import annotations

import numpy as np

from ..gpu_manager import DeviceBuffer
from ..mpi_manager import MPIManager
from .matvec import DeviceMatVecEngine


# ==================== 内积 ====================


def distributed_dot(
    engine: DeviceMatVecEngine,
    a: DeviceBuffer,
    b: DeviceBuffer,
    mpi: MPIManager,
) -> float:
    """
    设备向量的全局内积：设备端本地点积 + allreduce(SUM)。

    重要：所有进程都必须调用此函数！
    """
    local_dot: float = engine.dot(a, b)
    return mpi.allreduce_sum(local_dot)


def distributed_host_dot(a: np.ndarray, b: np.ndarray, mpi: MPIManager) -> float:
    """
    host 向量的全局内积（用于 PCG 初始化阶段，无需设备往返）。

    重要：所有进程都必须调用此函数！
    """
    return mpi.allreduce_sum(float(np.dot(a, b)))


# ==================== 范数 ====================


def distributed_max_abs(values: np.ndarray, mpi: MPIManager) -> float:
    """
    全局最大绝对值（无穷范数）；空的本地向量贡献 0。

    重要：所有进程都必须调用此函数！
    """
    local_max = float(np.max(np.abs(values))) if values.size else 0.0
    return mpi.allreduce_max(local_max)
