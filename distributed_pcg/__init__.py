"""
分布式 GPU 预条件共轭梯度求解器

基于 MPI 的矩阵无关 (matrix-free) PCG，面向所有单元共享同一单元刚度矩阵的
大规模有限元系统：
- 每个 MPI 进程拥有一个网格分区并绑定一个 GPU
- 矩阵-向量乘法在 GPU 上以一次批量稠密乘法完成
- 点积通过 MPI allreduce 全局归约
- host 端更新解向量并做收敛检测
"""

from .mpi_manager import MPIManager, MPIError
from .gpu_manager import (
    GPUManager,
    DeviceBuffer,
    DeviceError,
    DeviceInitializationError,
    DeviceAllocationError,
    DeviceTransferError,
    KernelLaunchError,
    KernelSynchronizationError,
)
from .config import SolverConfig
from .transport import ElementTransport, SerialTransport, MPITransport, assemble_inverse_diagonal
from .convergence import ConvergenceMonitor, MaxNormConvergenceMonitor
from .pcg_solver import PCGSolver, SolveStats, SolverState, NumericalBreakdownError, solve

__version__ = "0.1.0"
__all__ = [
    "MPIManager",
    "MPIError",
    "GPUManager",
    "DeviceBuffer",
    "DeviceError",
    "DeviceInitializationError",
    "DeviceAllocationError",
    "DeviceTransferError",
    "KernelLaunchError",
    "KernelSynchronizationError",
    "SolverConfig",
    "ElementTransport",
    "SerialTransport",
    "MPITransport",
    "assemble_inverse_diagonal",
    "ConvergenceMonitor",
    "MaxNormConvergenceMonitor",
    "PCGSolver",
    "SolveStats",
    "SolverState",
    "NumericalBreakdownError",
    "solve",
]
