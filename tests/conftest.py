"""
测试公共设施

- ``ThreadComm``：线程版通信子，实现本包用到的 mpi4py 调用
  （Get_rank / Get_size / Barrier / allgather / alltoall / Allreduce），
  用于在单进程内模拟多个 rank
- ``run_ranks``：在 N 个线程中并行运行同一函数，每个线程一个 rank
- ``DEVICES``：CPU 必测，CUDA 可用时追加
"""

from __future__ import annotations

import threading
from typing import Any, Callable, List

import numpy as np
import pytest
import torch
from mpi4py import MPI

from distributed_pcg import MPIManager


DEVICES = [
    "cpu",
    pytest.param("cuda", marks=pytest.mark.skipif(
        not torch.cuda.is_available(), reason="需要 CUDA")),
]


def pytest_configure(config):
    # pytest-mpi 未安装时也注册标记，避免未知标记警告
    config.addinivalue_line("markers", "mpi: 需要 mpirun 多进程运行的测试")


class _ThreadGroup:
    def __init__(self, size: int, timeout: float = 60.0) -> None:
        self.size = size
        self.barrier = threading.Barrier(size, timeout=timeout)
        self.slots: List[Any] = [None] * size


class ThreadComm:
    """线程版通信子（同一组内的线程互为 rank）。"""

    def __init__(self, group: _ThreadGroup, rank: int) -> None:
        self.group = group
        self.rank = rank

    def Get_rank(self) -> int:
        return self.rank

    def Get_size(self) -> int:
        return self.group.size

    def Barrier(self) -> None:
        self.group.barrier.wait()

    def _exchange(self, value: Any) -> List[Any]:
        self.group.slots[self.rank] = value
        self.group.barrier.wait()
        values = list(self.group.slots)
        self.group.barrier.wait()
        return values

    def allgather(self, obj: Any) -> List[Any]:
        return self._exchange(obj)

    def alltoall(self, objs: List[Any]) -> List[Any]:
        rows = self._exchange([np.copy(o) if isinstance(o, np.ndarray) else o for o in objs])
        return [rows[q][self.rank] for q in range(self.group.size)]

    def Allreduce(self, sendbuf: np.ndarray, recvbuf: np.ndarray, op: Any = MPI.SUM) -> None:
        values = self._exchange(np.array(sendbuf, copy=True))
        # 固定 rank 顺序累加，所有线程得到相同结果
        result = values[0].copy()
        for v in values[1:]:
            if op == MPI.MAX:
                np.maximum(result, v, out=result)
            elif op == MPI.MIN:
                np.minimum(result, v, out=result)
            else:
                result += v
        recvbuf[...] = result


def _is_broken_barrier(exc: BaseException) -> bool:
    return isinstance(exc, threading.BrokenBarrierError) or isinstance(
        getattr(exc, "original", None), threading.BrokenBarrierError)


def run_ranks(size: int, fn: Callable[[MPIManager], Any]) -> List[Any]:
    """在 *size* 个线程中运行 ``fn(mpi)``，返回按 rank 排列的结果。"""
    group = _ThreadGroup(size)
    results: List[Any] = [None] * size
    errors: List[BaseException] = []

    def worker(rank: int) -> None:
        try:
            mpi = MPIManager(comm=ThreadComm(group, rank), bind_gpu=False)
            results[rank] = fn(mpi)
        except BaseException as exc:
            errors.append(exc)
            group.barrier.abort()

    threads = [threading.Thread(target=worker, args=(r,)) for r in range(size)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    # 优先报告原始异常，而不是其他线程因 barrier 中止产生的连带错误
    for exc in errors:
        if not _is_broken_barrier(exc):
            raise exc
    if errors:
        raise errors[0]
    return results


@pytest.fixture
def mpi_serial() -> MPIManager:
    """单 rank 的 MPIManager（线程版通信子，不依赖 mpirun）。"""
    group = _ThreadGroup(1)
    return MPIManager(comm=ThreadComm(group, 0), bind_gpu=False)
