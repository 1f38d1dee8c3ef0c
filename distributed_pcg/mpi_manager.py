"""
MPI 通信管理器 (MPI Communication Manager)

负责 MPI 环境的初始化、进程间通信和协调。
确保所有 MPI 集合操作被所有进程正确调用。
包含错误处理：集合通信失败一律视为致命错误，不重试
（部分完成的集合操作在多进程间重试是不安全的）。

PCG 求解器依赖的集合归约层：
- allreduce_sum：标量点积的全局求和（固定使用 MPI.SUM，所有进程结果一致）
- allreduce_max：收敛检测中的全局最大范数
- alltoall：单元 ↔ 方程传输层的 halo 数据交换
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Callable, List, Optional

import numpy as np
import torch
from mpi4py import MPI

# ── 模块级 logger ──────────────────────────────────────────────
_logger = logging.getLogger("distributed_pcg.mpi")


# ══════════════════════════════════════════════════════════════════
#  异常类
# ══════════════════════════════════════════════════════════════════

class MPIError(RuntimeError):
    """MPI 操作异常（附带 rank 信息）。"""

    def __init__(
        self,
        msg: str,
        rank: int = -1,
        original: Optional[Exception] = None,
    ) -> None:
        self.rank: int = rank
        self.original: Optional[Exception] = original
        super().__init__(f"[Rank {rank}] {msg}")


# ══════════════════════════════════════════════════════════════════
#  MPI 管理器
# ══════════════════════════════════════════════════════════════════

class MPIManager:
    """
    MPI 通信管理器

    职责：
    - 初始化 MPI 环境并为每个进程绑定一个 GPU 设备
    - 提供带错误处理的集合通信操作 (allgather / alltoall / 标量 Allreduce)
    - 提供 PCG 所需的标量全局归约（预分配 numpy 缓冲区，避免每次迭代重新分配）

    Args:
        comm: 通信子（默认 ``MPI.COMM_WORLD``）
        bind_gpu: 是否按 ``rank % gpu_count`` 绑定 GPU
    """

    # ── 初始化 ──────────────────────────────────────────────────

    def __init__(self, comm: Optional[Any] = None, bind_gpu: bool = True) -> None:
        """初始化 MPI 环境并绑定 GPU 设备。"""
        self.comm: MPI.Comm = comm if comm is not None else MPI.COMM_WORLD
        self.rank: int = self.comm.Get_rank()
        self.size: int = self.comm.Get_size()
        self.is_master: bool = (self.rank == 0)

        # 设置 GPU 设备（每个进程绑定一个 GPU）
        if bind_gpu and torch.cuda.is_available():
            self.gpu_count: int = torch.cuda.device_count()
            self.gpu_id: int = self.rank % self.gpu_count
            torch.cuda.set_device(self.gpu_id)
        else:
            self.gpu_count = 0
            self.gpu_id = -1

        # ── 预分配的标量归约缓冲区 ──
        # 每次 PCG 迭代至少两次 allreduce，复用缓冲区避免重复分配
        self._send_scalar: np.ndarray = np.zeros(1, dtype=np.float64)
        self._recv_scalar: np.ndarray = np.zeros(1, dtype=np.float64)

        if self.is_master:
            _logger.info("MPI 环境初始化: %d 个进程, %d 个 GPU", self.size, self.gpu_count)

    # ── 内部：安全调用包装器 ────────────────────────────────────

    def _safe_call(self, func_name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """
        带错误处理的 MPI 操作包装器。

        如果 MPI 操作失败，会记录日志并抛出 :class:`MPIError`，
        避免无信息的段错误或死锁。
        """
        try:
            return fn(*args, **kwargs)
        except MPI.Exception as exc:
            msg = f"MPI 操作 '{func_name}' 失败: {exc}"
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc
        except Exception as exc:
            msg = f"操作 '{func_name}' 异常: {exc}\n{traceback.format_exc()}"
            _logger.error(msg)
            raise MPIError(msg, rank=self.rank, original=exc) from exc

    # ── 状态查询 ────────────────────────────────────────────────

    def get_rank(self) -> int:
        """获取当前进程 rank。"""
        return self.rank

    def get_size(self) -> int:
        """获取总进程数。"""
        return self.size

    def is_master_process(self) -> bool:
        """判断是否是主进程 (rank == 0)。"""
        return self.is_master

    def get_gpu_id(self) -> int:
        """获取当前进程绑定的 GPU ID（无 GPU 时为 -1）。"""
        return self.gpu_id

    # ── 同步 ────────────────────────────────────────────────────

    def barrier(self) -> None:
        """同步所有进程 (MPI_Barrier)。"""
        self._safe_call("Barrier", self.comm.Barrier)

    def synchronize(self) -> None:
        """同步所有 GPU 操作 + MPI barrier。"""
        if torch.cuda.is_available() and self.gpu_id >= 0:
            torch.cuda.synchronize(self.gpu_id)
        self.barrier()

    # ══════════════════════════════════════════════════════════════
    #  集合通信操作
    #  注意：所有进程都必须调用这些函数
    # ══════════════════════════════════════════════════════════════

    def allgather(self, data: Any) -> List[Any]:
        """
        从所有进程收集数据并广播到所有进程。

        重要：所有进程都必须调用此函数！
        """
        return self._safe_call("allgather", self.comm.allgather, data)

    def alltoall(self, data_list: List[Any]) -> List[Any]:
        """
        全交换：第 i 个元素发送给 rank i，返回从每个 rank 收到的数据。

        重要：所有进程都必须调用此函数！

        Args:
            data_list: 长度等于进程数的列表

        Returns:
            长度等于进程数的列表，第 i 个元素来自 rank i
        """
        if len(data_list) != self.size:
            raise MPIError(
                f"alltoall 数据列表长度 ({len(data_list)}) != 进程数 ({self.size})",
                rank=self.rank,
            )
        return self._safe_call("alltoall", self.comm.alltoall, data_list)

    def allreduce_sum(self, value: float) -> float:
        """
        标量全局求和，所有进程得到相同结果。

        PCG 中用于 ``p·u`` 和 ``r·d`` 两个点积的跨进程归约。
        归约算子固定为 ``MPI.SUM``（MPI_REAL8），保证所有进程语义一致。

        重要：所有进程都必须调用此函数！
        """
        return self._allreduce_scalar("Allreduce(sum)", value, MPI.SUM)

    def allreduce_max(self, value: float) -> float:
        """
        标量全局最大值，所有进程得到相同结果。

        重要：所有进程都必须调用此函数！
        """
        return self._allreduce_scalar("Allreduce(max)", value, MPI.MAX)

    def _allreduce_scalar(self, func_name: str, value: float, op: Any) -> float:
        """使用预分配的 1 元素缓冲区执行标量 Allreduce。"""
        self._send_scalar[0] = value
        self._safe_call(func_name, self.comm.Allreduce, self._send_scalar, self._recv_scalar, op=op)
        return float(self._recv_scalar[0])

    # ══════════════════════════════════════════════════════════════
    #  辅助方法
    # ══════════════════════════════════════════════════════════════

    def print_master(self, message: str) -> None:
        """仅在主进程打印消息。"""
        if self.is_master:
            print(message)

# ══════════════════════════════════════════════════════════════════
#  模块级工具函数
# ══════════════════════════════════════════════════════════════════

def calculate_split_sizes(total_size: int, num_parts: int) -> List[int]:
    """
    计算均匀分割大小。

    余数部分会分配给前 ``remainder`` 个分块（每个多 1）。
    """
    chunk_size = total_size // num_parts
    remainder = total_size % num_parts
    return [chunk_size + (1 if i < remainder else 0) for i in range(num_parts)]


def split_offsets(total_size: int, num_parts: int) -> np.ndarray:
    """返回长度 ``num_parts + 1`` 的分块起始偏移（最后一项为 ``total_size``）。"""
    sizes = calculate_split_sizes(total_size, num_parts)
    return np.concatenate(([0], np.cumsum(sizes))).astype(np.int64)
