"""
单元 ↔ 方程传输层 (Element / Equation Transport)

PCG 矩阵乘法前后的数据重排：

- gather:  进程本地方程向量 ``[neq_pp]`` → 单元向量批 ``[ntot, nels_pp]``
  （分区边界上共享的自由度被复制到每个引用它的单元）
- scatter: 单元向量批 → 进程本地方程向量
  （共享自由度上的贡献求和）

单元与全局方程号的对应关系由导向矩阵 ``g_num_pp[ntot, nels_pp]`` 给出，
负值表示约束自由度（不参与方程，gather 取 0，scatter 丢弃）。

方程按连续块归属到各进程（与 :func:`calculate_split_sizes` 相同的划分，
余数分配给前几个进程）。引用其他进程方程的单元通过 halo 交换获取 /
回送数据：通信计划在构造时建立一次，之后每次 gather/scatter
只做一次 alltoall。
"""

from __future__ import annotations

import logging
from typing import List, Optional

import numpy as np

from .mpi_manager import MPIManager, MPIError, split_offsets

_logger = logging.getLogger("distributed_pcg.transport")


# ══════════════════════════════════════════════════════════════════
#  传输层基类
# ══════════════════════════════════════════════════════════════════

class ElementTransport:
    """
    传输层接口

    Attributes:
        ntot: 每单元自由度数
        nels_pp: 本进程单元数
        neq_pp: 本进程方程数
    """

    ntot: int
    nels_pp: int
    neq_pp: int

    def gather(self, vector: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """方程向量 ``[neq_pp]`` → 单元向量批 ``[ntot, nels_pp]``。"""
        raise NotImplementedError

    def scatter(self, batch: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """单元向量批 ``[ntot, nels_pp]`` → 方程向量 ``[neq_pp]``（共享自由度求和）。"""
        raise NotImplementedError

    # ── 公共校验 ────────────────────────────────────────────────

    def _check_vector(self, vector: np.ndarray) -> None:
        if vector.shape != (self.neq_pp,):
            raise ValueError(f"方程向量形状应为 ({self.neq_pp},)，实际 {vector.shape}")

    def _check_batch(self, batch: np.ndarray) -> None:
        if batch.shape != (self.ntot, self.nels_pp):
            raise ValueError(
                f"单元向量批形状应为 ({self.ntot}, {self.nels_pp})，实际 {batch.shape}"
            )


def _validate_steering(g_num_pp: np.ndarray) -> np.ndarray:
    g_num = np.asarray(g_num_pp)
    if g_num.ndim != 2:
        raise ValueError(f"导向矩阵须为 2D [ntot, nels_pp]，实际维度 {g_num.ndim}")
    if not np.issubdtype(g_num.dtype, np.integer):
        raise ValueError(f"导向矩阵须为整数类型，实际 {g_num.dtype}")
    return g_num.astype(np.int64)


# ══════════════════════════════════════════════════════════════════
#  单进程传输
# ══════════════════════════════════════════════════════════════════

class SerialTransport(ElementTransport):
    """
    单进程传输：所有方程都在本地。

    Args:
        g_num: 导向矩阵 ``[ntot, nels]``，取值 ``[0, neq)`` 或负值（约束）
        neq: 方程总数
    """

    def __init__(self, g_num: np.ndarray, neq: int) -> None:
        g_num = _validate_steering(g_num)
        if g_num.size and g_num.max() >= neq:
            raise ValueError(f"导向矩阵方程号越界: max={g_num.max()} >= neq={neq}")
        self.ntot, self.nels_pp = g_num.shape
        self.neq_pp = int(neq)
        # 约束自由度映射到末尾的零槽位
        self._index: np.ndarray = np.where(g_num < 0, self.neq_pp, g_num)
        self._flat_index: np.ndarray = self._index.ravel()
        self._extended: np.ndarray = np.zeros(self.neq_pp + 1, dtype=np.float64)

    def gather(self, vector: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        self._check_vector(vector)
        self._extended[: self.neq_pp] = vector
        self._extended[self.neq_pp] = 0.0
        if out is None:
            out = np.empty((self.ntot, self.nels_pp), dtype=np.float64)
        np.take(self._extended, self._index, out=out)
        return out

    def scatter(self, batch: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        self._check_batch(batch)
        acc = np.bincount(self._flat_index, weights=batch.ravel(), minlength=self.neq_pp + 1)
        if out is None:
            out = np.empty(self.neq_pp, dtype=np.float64)
        out[:] = acc[: self.neq_pp]
        return out


# ══════════════════════════════════════════════════════════════════
#  MPI 分布式传输（含 halo 交换）
# ══════════════════════════════════════════════════════════════════

class MPITransport(ElementTransport):
    """
    分布式传输：方程按连续块分配到各进程。

    本地扩展向量布局::

        [ 本进程方程 (neq_pp) | halo 方程 (按归属 rank 排序) | 零槽位 ]

    重要：构造函数和 gather / scatter 都包含集合通信，所有进程都必须调用！

    Args:
        g_num_pp: 本进程单元的导向矩阵 ``[ntot, nels_pp]``（全局方程号）
        neq: 全局方程总数
        mpi: MPI 管理器
    """

    def __init__(self, g_num_pp: np.ndarray, neq: int, mpi: MPIManager) -> None:
        g_num = _validate_steering(g_num_pp)
        self.mpi: MPIManager = mpi
        self.rank: int = mpi.get_rank()
        self.size: int = mpi.get_size()
        self.neq: int = int(neq)
        self.ntot, self.nels_pp = g_num.shape

        # 所有进程的 ntot 必须一致，否则批量乘法无意义；同时检查越界
        local_bad = bool(g_num.size and g_num.max() >= self.neq)
        checks = mpi.allgather((self.ntot, local_bad))
        if len({c[0] for c in checks}) != 1:
            raise MPIError(f"各进程 ntot 不一致: {[c[0] for c in checks]}", rank=self.rank)
        if any(c[1] for c in checks):
            raise MPIError(f"导向矩阵方程号越界 (neq={self.neq})", rank=self.rank)

        self.offsets: np.ndarray = split_offsets(self.neq, self.size)
        self.start: int = int(self.offsets[self.rank])
        self.end: int = int(self.offsets[self.rank + 1])
        self.neq_pp = self.end - self.start

        self._build_plan(g_num)

    # ── 通信计划 ────────────────────────────────────────────────

    def _build_plan(self, g_num: np.ndarray) -> None:
        """建立 halo 交换计划（仅构造时调用一次）。"""
        flat = g_num.ravel()
        active = flat >= 0
        owned = active & (flat >= self.start) & (flat < self.end)
        remote = active & ~owned

        # 本进程需要的远程方程（已排序，因此按归属 rank 连续）
        halo = np.unique(flat[remote])
        halo_owner = np.searchsorted(self.offsets, halo, side="right") - 1
        self.nhalo: int = int(halo.size)

        # recv_slices[q]: 来自 rank q 的 halo 在扩展向量中的位置
        self._recv_slices: List[slice] = []
        requests: List[np.ndarray] = []
        for q in range(self.size):
            lo, hi = np.searchsorted(halo_owner, [q, q + 1])
            self._recv_slices.append(slice(self.neq_pp + lo, self.neq_pp + hi))
            requests.append(halo[lo:hi])

        # 告知各归属进程：我需要你的哪些方程
        incoming = self.mpi.alltoall(requests)
        # send_index[q]: rank q 需要的本地方程下标
        self._send_index: List[np.ndarray] = [
            np.asarray(req, dtype=np.int64) - self.start for req in incoming
        ]

        # 单元条目 → 扩展向量位置
        n_ext = self.neq_pp + self.nhalo + 1
        index = np.full(flat.shape, n_ext - 1, dtype=np.int64)
        index[owned] = flat[owned] - self.start
        index[remote] = self.neq_pp + np.searchsorted(halo, flat[remote])
        self._flat_index: np.ndarray = index
        self._index: np.ndarray = index.reshape(self.ntot, self.nels_pp)
        self._extended: np.ndarray = np.zeros(n_ext, dtype=np.float64)

        _logger.debug(
            "rank %d 传输计划: neq_pp=%d, halo=%d, 发送=%s",
            self.rank, self.neq_pp, self.nhalo, [int(s.size) for s in self._send_index],
        )

    # ── gather / scatter ────────────────────────────────────────

    def gather(self, vector: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        方程向量 → 单元向量批（先交换 halo 值，再按导向矩阵取值）。

        重要：所有进程都必须调用此函数！
        """
        self._check_vector(vector)
        sends = [vector[idx] for idx in self._send_index]
        received = self.mpi.alltoall(sends)

        ext = self._extended
        ext[: self.neq_pp] = vector
        for q, values in enumerate(received):
            ext[self._recv_slices[q]] = values
        ext[-1] = 0.0

        if out is None:
            out = np.empty((self.ntot, self.nels_pp), dtype=np.float64)
        np.take(ext, self._index, out=out)
        return out

    def scatter(self, batch: np.ndarray, out: Optional[np.ndarray] = None) -> np.ndarray:
        """
        单元向量批 → 方程向量（本地累加后将 halo 贡献回送给归属进程求和）。

        重要：所有进程都必须调用此函数！
        """
        self._check_batch(batch)
        acc = np.bincount(
            self._flat_index, weights=batch.ravel(), minlength=self._extended.size,
        )
        sends = [acc[self._recv_slices[q]] for q in range(self.size)]
        received = self.mpi.alltoall(sends)

        if out is None:
            out = np.empty(self.neq_pp, dtype=np.float64)
        out[:] = acc[: self.neq_pp]
        # 同一 rank 的请求下标互不重复，可直接累加
        for q, values in enumerate(received):
            out[self._send_index[q]] += values
        return out


# ══════════════════════════════════════════════════════════════════
#  对角预条件组装
# ══════════════════════════════════════════════════════════════════

def assemble_inverse_diagonal(operator: np.ndarray, transport: ElementTransport) -> np.ndarray:
    """
    组装逆对角预条件向量 ``1 / diag(K)``。

    将单元矩阵对角线散射到所有单元并在共享自由度上求和，得到全局矩阵
    对角线的本进程部分，再取倒数。

    重要：分布式传输时所有进程都必须调用此函数！

    Raises:
        ValueError: 某个方程的对角元为 0（该方程未被任何单元引用）
    """
    km = np.asarray(operator, dtype=np.float64)
    if km.shape != (transport.ntot, transport.ntot):
        raise ValueError(f"单元矩阵形状应为 ({transport.ntot}, {transport.ntot})，实际 {km.shape}")
    batch = np.repeat(np.diag(km)[:, None], transport.nels_pp, axis=1)
    diag = transport.scatter(batch)
    if np.any(diag == 0.0):
        raise ValueError(f"存在对角元为 0 的方程: {np.flatnonzero(diag == 0.0)[:10].tolist()}")
    return 1.0 / diag
