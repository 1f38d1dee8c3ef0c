"""
测试网格与单元矩阵

用于示例脚本和测试的小型结构化网格：导向矩阵生成、单元按进程划分、
以及验证用的稠密全局组装。正式计算中网格划分与单元组装由调用方负责。
"""

from __future__ import annotations

from typing import Tuple

import numpy as np

from ..mpi_manager import split_offsets


# ==================== 单元刚度矩阵 ====================


def bar_element_stiffness(ea: float = 1.0, length: float = 1.0) -> np.ndarray:
    """两节点杆单元 ``EA/L * [[1, -1], [-1, 1]]``（单独半正定）。"""
    k = ea / length
    return np.array([[k, -k], [-k, k]], dtype=np.float64)


def quad_element_stiffness() -> np.ndarray:
    """
    单位正方形双线性四边形单元的 Laplace 刚度矩阵（节点逆时针编号）。

    单独半正定（常数为零空间），需要约束自由度才能得到正定系统。
    """
    return np.array(
        [[4.0, -1.0, -2.0, -1.0],
         [-1.0, 4.0, -1.0, -2.0],
         [-2.0, -1.0, 4.0, -1.0],
         [-1.0, -2.0, -1.0, 4.0]],
        dtype=np.float64,
    ) / 6.0


# ==================== 导向矩阵 ====================


def bar_mesh(nels: int, restrain_first: bool = True) -> Tuple[np.ndarray, int]:
    """
    一维杆网格：``nels`` 个单元，``nels + 1`` 个节点，每节点 1 个自由度。

    Args:
        nels: 单元数
        restrain_first: 约束节点 0

    Returns:
        ``(g_num [2, nels], neq)``
    """
    nodes = np.arange(nels + 1, dtype=np.int64)
    eq = nodes - 1 if restrain_first else nodes
    g_num = np.vstack([eq[:-1], eq[1:]])
    neq = nels if restrain_first else nels + 1
    return g_num, neq


def quad_mesh(nx: int, ny: int, restrain_left: bool = True) -> Tuple[np.ndarray, int]:
    """
    二维四边形网格 ``nx × ny``，每节点 1 个自由度。

    节点按行优先编号 ``node = j * (nx + 1) + i``；约束 ``i == 0`` 的左边界。

    Returns:
        ``(g_num [4, nx*ny], neq)``
    """
    npx = nx + 1
    node_ids = np.arange(npx * (ny + 1), dtype=np.int64).reshape(ny + 1, npx)
    if restrain_left:
        free = np.ones_like(node_ids, dtype=bool)
        free[:, 0] = False
        eq_of_node = np.full(node_ids.size, -1, dtype=np.int64)
        eq_of_node[free.ravel()] = np.arange(int(free.sum()), dtype=np.int64)
    else:
        eq_of_node = np.arange(node_ids.size, dtype=np.int64)

    j, i = np.meshgrid(np.arange(ny), np.arange(nx), indexing="ij")
    i = i.ravel()
    j = j.ravel()
    corners = np.vstack([
        node_ids[j, i],
        node_ids[j, i + 1],
        node_ids[j + 1, i + 1],
        node_ids[j + 1, i],
    ])
    neq = int((eq_of_node >= 0).sum())
    return eq_of_node[corners], neq


# ==================== 划分与组装 ====================


def partition_elements(g_num: np.ndarray, size: int, rank: int) -> np.ndarray:
    """按单元块划分（余数分配给前几个进程），返回本进程的 ``g_num_pp``。"""
    offsets = split_offsets(g_num.shape[1], size)
    return np.ascontiguousarray(g_num[:, offsets[rank]:offsets[rank + 1]])


def local_equation_range(neq: int, size: int, rank: int) -> Tuple[int, int]:
    """本进程拥有的方程范围 ``[start, end)``，与 MPITransport 的划分一致。"""
    offsets = split_offsets(neq, size)
    return int(offsets[rank]), int(offsets[rank + 1])


def assemble_dense(operator: np.ndarray, g_num: np.ndarray, neq: int) -> np.ndarray:
    """稠密全局组装（仅用于验证，小规模问题）。"""
    K = np.zeros((neq, neq), dtype=np.float64)
    ntot = operator.shape[0]
    for e in range(g_num.shape[1]):
        for a in range(ntot):
            ga = g_num[a, e]
            if ga < 0:
                continue
            for b in range(ntot):
                gb = g_num[b, e]
                if gb >= 0:
                    K[ga, gb] += operator[a, b]
    return K
