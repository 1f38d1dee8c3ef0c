"""
设备计算与全局归约

- 设备端矩阵-向量引擎：共享算子批量乘法，scale / axpy / xpby / dot / apply_diagonal
- 分布式归约：全局内积、全局无穷范数
"""

from .matvec import DeviceMatVecEngine
from .reduction import distributed_dot, distributed_host_dot, distributed_max_abs

__all__ = [
    "DeviceMatVecEngine",
    "distributed_dot",
    "distributed_host_dot",
    "distributed_max_abs",
]
