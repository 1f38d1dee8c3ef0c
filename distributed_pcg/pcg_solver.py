"""
GPU 加速的分布式预条件共轭梯度求解器 (PCG)

求解有限元系统 ``K x = b``：全局矩阵 K 从不组装，而是由所有单元共享的
单元刚度矩阵 KM 隐式作用。每次迭代：

1. 传输层将搜索方向 p 展开为单元向量批
2. 设备上一次批量稠密乘法 ``KM @ P``（显式同步）
3. 传输层将结果求和回方程向量 u
4. 设备点积 + MPI allreduce 得到全局内积
5. host 端更新解，设备端更新残差 / 预条件残差 / 搜索方向
6. 收敛检测

算法（初值 x = 0）::

    r = b;  d = Minv*r;  p = d;  up0 = r·d
    repeat
        u = A*p
        alpha = up0 / (p·u)
        x_new = x + alpha*p
        r = r - alpha*u
        d = Minv*r
        up1 = r·d;  beta = up1/up0;  up0 = up1
        p = d + beta*p
    until converged(x_new, x) or iters == limit

所有设备缓冲区在循环开始前分配，求解结束（收敛、达到迭代上限或异常）
时全部释放。
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .algorithms.matvec import DeviceMatVecEngine
from .algorithms.reduction import distributed_dot, distributed_host_dot
from .config import SolverConfig
from .convergence import ConvergenceMonitor, MaxNormConvergenceMonitor
from .gpu_manager import DeviceAllocationError, GPUManager
from .mpi_manager import MPIManager
from .transport import ElementTransport
from .utils.profiler import Profiler

_logger = logging.getLogger("distributed_pcg.pcg")


# ══════════════════════════════════════════════════════════════════
#  异常类与状态
# ══════════════════════════════════════════════════════════════════

class NumericalBreakdownError(RuntimeError):
    """PCG 数值崩溃（``p·Ap`` 非正 / 非有限，或预条件内积非法）。"""

    def __init__(self, msg: str, rank: int = -1, iteration: int = 0) -> None:
        self.rank: int = rank
        self.iteration: int = iteration
        super().__init__(f"[Rank {rank}] 第 {iteration} 次迭代: {msg}")


class SolverState(enum.Enum):
    """PCG 控制循环状态"""
    INITIALIZING = "initializing"
    ITERATING = "iterating"
    CONVERGED = "converged"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"


@dataclass
class SolveStats:
    """一次求解的统计信息

    Attributes:
        iterations: 实际迭代次数
        state: 终止状态
        up_history: 预条件残差内积序列（初值 + 每次迭代后的 up1）
        timings: 各阶段总耗时（秒），仅 ``profile=True`` 时记录
    """
    iterations: int = 0
    state: SolverState = SolverState.INITIALIZING
    up_history: List[float] = field(default_factory=list)
    timings: Dict[str, float] = field(default_factory=dict)

    @property
    def converged(self) -> bool:
        return self.state is SolverState.CONVERGED


# ══════════════════════════════════════════════════════════════════
#  PCG 求解器
# ══════════════════════════════════════════════════════════════════

class PCGSolver:
    """
    GPU 加速的分布式 PCG 求解器

    一个实例可以多次调用 :meth:`solve`；每次求解独占一个设备上下文，
    不支持在同一进程中并发求解。

    重要：solve 包含集合通信，所有进程都必须调用！

    Args:
        mpi: MPI 管理器
        transport: 单元 ↔ 方程传输层
        monitor: 收敛检测（默认 :class:`MaxNormConvergenceMonitor`）
        config: 求解器配置
    """

    def __init__(
        self,
        mpi: MPIManager,
        transport: ElementTransport,
        monitor: Optional[ConvergenceMonitor] = None,
        config: Optional[SolverConfig] = None,
    ) -> None:
        self.mpi: MPIManager = mpi
        self.transport: ElementTransport = transport
        self.monitor: ConvergenceMonitor = monitor or MaxNormConvergenceMonitor(mpi)
        self.config: SolverConfig = config or SolverConfig()
        self.config.apply_logging()
        self.state: SolverState = SolverState.INITIALIZING
        self.last_stats: Optional[SolveStats] = None

    # ── 输入校验 ────────────────────────────────────────────────

    def _validate_inputs(
        self,
        operator: np.ndarray,
        inverse_preconditioner: np.ndarray,
        rhs: np.ndarray,
        nels_pp: int,
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        km = np.ascontiguousarray(operator, dtype=np.float64)
        precon = np.ascontiguousarray(inverse_preconditioner, dtype=np.float64)
        b = np.ascontiguousarray(rhs, dtype=np.float64)
        t = self.transport

        if km.ndim != 2 or km.shape[0] != km.shape[1]:
            raise ValueError(f"单元矩阵须为方阵 [ntot, ntot]，实际 {km.shape}")
        if km.shape[0] != t.ntot:
            raise ValueError(f"单元矩阵阶数 {km.shape[0]} 与传输层 ntot={t.ntot} 不一致")
        if nels_pp != t.nels_pp:
            raise ValueError(f"nels_pp={nels_pp} 与传输层单元数 {t.nels_pp} 不一致")
        if b.shape != (t.neq_pp,):
            raise ValueError(f"右端项长度应为 {t.neq_pp}，实际形状 {b.shape}")
        if precon.shape != (t.neq_pp,):
            raise ValueError(f"预条件向量长度应为 {t.neq_pp}，实际形状 {precon.shape}")
        return km, precon, b

    # ── 标量更新 ────────────────────────────────────────────────

    def _step_length(self, up0: float, global_dot: float, iteration: int) -> float:
        """``alpha = up0 / (p·u)``"""
        if up0 == 0.0:
            # 残差精确为零：p = 0，解已精确
            return 0.0
        if self.config.check_breakdown and not (math.isfinite(global_dot) and global_dot > 0.0):
            msg = f"p·Ap = {global_dot!r} 非正或非有限（算子非正定或已发散）"
            _logger.error(msg)
            raise NumericalBreakdownError(msg, rank=self.mpi.get_rank(), iteration=iteration)
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.float64(up0) / np.float64(global_dot))

    def _direction_ratio(self, up1: float, up0: float, iteration: int) -> float:
        """``beta = up1 / up0``"""
        if self.config.check_breakdown and not (math.isfinite(up1) and up1 >= 0.0):
            msg = f"r·Minv·r = {up1!r} 为负或非有限（预条件非正定或已发散）"
            _logger.error(msg)
            raise NumericalBreakdownError(msg, rank=self.mpi.get_rank(), iteration=iteration)
        if up0 == 0.0:
            return 0.0
        with np.errstate(divide="ignore", invalid="ignore"):
            return float(np.float64(up1) / np.float64(up0))

    # ── 求解 ────────────────────────────────────────────────────

    def solve(
        self,
        operator: np.ndarray,
        inverse_preconditioner: np.ndarray,
        rhs: np.ndarray,
        nels_pp: int,
        max_iterations: Optional[int] = None,
        tolerance: Optional[float] = None,
    ) -> Tuple[np.ndarray, int]:
        """
        求解 ``K x = b``，初值 ``x = 0``。

        重要：所有进程都必须调用此函数！

        Args:
            operator: 单元刚度矩阵 ``[ntot, ntot]``（所有单元、所有进程一致）
            inverse_preconditioner: 逆对角预条件 ``[neq_pp]``
            rhs: 右端项 ``[neq_pp]``
            nels_pp: 本进程单元数
            max_iterations: 最大迭代次数（默认取配置）
            tolerance: 收敛容差（默认取配置）

        Returns:
            ``(solution [neq_pp], iterations_used)``；未收敛时
            ``iterations_used == max_iterations``，详见 :attr:`last_stats`

        Raises:
            ValueError: 输入形状不一致
            DeviceError: 设备初始化 / 分配 / 拷贝 / 计算失败（缓冲区已全部释放）
            MPIError: 集合通信失败
            NumericalBreakdownError: ``check_breakdown`` 开启且出现数值崩溃
        """
        config = self.config.replace(max_iterations=max_iterations, tolerance=tolerance)
        limit: int = int(config.max_iterations)
        tol: float = float(config.tolerance)
        km, diag_precon, b = self._validate_inputs(operator, inverse_preconditioner, rhs, nels_pp)

        ntot = self.transport.ntot
        neq_pp = self.transport.neq_pp
        stats = SolveStats()
        self.last_stats = stats
        self.state = SolverState.INITIALIZING
        profiler = Profiler(enabled=config.profile)
        rank = self.mpi.get_rank()

        # ── host 端工作数组（整个求解期间复用） ──
        x = np.zeros(neq_pp, dtype=np.float64)
        x_new = np.zeros(neq_pp, dtype=np.float64)
        p = np.zeros(neq_pp, dtype=np.float64)
        u = np.zeros(neq_pp, dtype=np.float64)
        pmul = np.zeros((ntot, nels_pp), dtype=np.float64)
        utemp = np.zeros((ntot, nels_pp), dtype=np.float64)

        # ── 初始化：r = b, d = Minv*r, p = d, up0 = r·d ──
        r = b.copy()
        d = diag_precon * r
        p[:] = d
        up0: float = distributed_host_dot(r, d, self.mpi)
        stats.up_history.append(up0)

        if self.mpi.is_master_process():
            _logger.info("PCG 开始: ntot=%d, limit=%d, tol=%.3e, 进程数=%d",
                         ntot, limit, tol, self.mpi.get_size())

        with GPUManager(self.mpi.get_gpu_id(), device=config.device, rank=rank) as gpu:
            engine = DeviceMatVecEngine(gpu)
            if self.mpi.is_master_process():
                gpu.log_info()

            buffer_shapes = [(ntot, ntot), (ntot, nels_pp), (ntot, nels_pp)] + [(neq_pp,)] * 5
            if not gpu.can_fit(*buffer_shapes):
                msg = (f"显存不足: 需要 {gpu.estimate_memory_requirement(*buffer_shapes):.3f} GB，"
                       f"可用 {gpu.get_memory_info()['free']:.3f} GB")
                _logger.error(msg)
                raise DeviceAllocationError(msg, rank=rank)

            # 设备缓冲区：全部在循环前分配，退出上下文时释放
            dev_km = gpu.allocate("km", ntot, ntot)
            dev_lhs = gpu.allocate("lhs_vectors", ntot, nels_pp)
            dev_rhs = gpu.allocate("rhs_vectors", ntot, nels_pp)
            dev_p = gpu.allocate("p_pp", neq_pp)
            dev_u = gpu.allocate("u_pp", neq_pp)
            dev_r = gpu.allocate("r_pp", neq_pp)
            dev_precon = gpu.allocate("diag_precon_pp", neq_pp)
            dev_d = gpu.allocate("d_pp", neq_pp)

            gpu.upload_matrix(km, ntot, ntot, dev_km)
            gpu.upload_vector(diag_precon, neq_pp, dev_precon)
            gpu.upload_vector(r, neq_pp, dev_r)

            iters = 0
            converged = False
            self.state = SolverState.ITERATING

            while iters < limit:
                iters += 1

                # 1. 第二次迭代起，设备上的 p 为权威副本
                if iters > 1:
                    gpu.download_vector(dev_p, neq_pp, p)

                # 2-4. u = A*p（单元展开 → 设备批量乘法 → 求和回方程）
                self.transport.gather(p, out=pmul)
                with profiler.section("matvec_total"):
                    gpu.upload_matrix(pmul, ntot, nels_pp, dev_lhs)
                    with profiler.section("matvec_kernel"):
                        engine.batched_multiply(dev_km, dev_lhs, dev_rhs)
                    gpu.download_matrix(dev_rhs, ntot, nels_pp, utemp)
                self.transport.scatter(utemp, out=u)

                # 5. 上传 p, u
                with profiler.section("vector_upload"):
                    gpu.upload_vector(p, neq_pp, dev_p)
                    gpu.upload_vector(u, neq_pp, dev_u)

                # 6-7. alpha = up0 / (p·u)
                with profiler.section("dot_allreduce"):
                    global_dot = distributed_dot(engine, dev_p, dev_u, self.mpi)
                alpha = self._step_length(up0, global_dot, iters)

                # 8. x_new = x + alpha*p（host 端）
                np.multiply(p, alpha, out=x_new)
                x_new += x

                # 9-10. r = r - alpha*u；d = Minv*r（设备端）
                engine.axpy(dev_r, -alpha, dev_u)
                engine.apply_diagonal(dev_precon, dev_r, dev_d)

                # 11-12. up1 = r·d；beta = up1/up0
                with profiler.section("dot_allreduce"):
                    up1 = distributed_dot(engine, dev_r, dev_d, self.mpi)
                beta = self._direction_ratio(up1, up0, iters)
                up0 = up1
                stats.up_history.append(up1)

                # 13. p = d + beta*p
                if config.fused_direction_update:
                    engine.xpby(dev_p, beta, dev_d)
                else:
                    engine.scale(dev_p, beta)
                    engine.axpy(dev_p, 1.0, dev_d)

                # 14. 收敛检测（x 更新为 x_new）
                converged = self.monitor.check_converged(x_new, tol, x)
                x[:] = x_new

                _logger.debug("rank %d 迭代 %d: alpha=%.6e, beta=%.6e, up=%.6e",
                              rank, iters, alpha, beta, up1)

                # 15. 终止判断
                if converged or iters == limit:
                    break

        self.state = SolverState.CONVERGED if converged else SolverState.ITERATION_LIMIT_REACHED
        stats.iterations = iters
        stats.state = self.state
        stats.timings = profiler.totals()

        if self.mpi.is_master_process():
            _logger.info("PCG 结束: %s, 迭代 %d 次", self.state.value, iters)
            profiler.log_summary(_logger)
        return x, iters


# ══════════════════════════════════════════════════════════════════
#  函数式入口
# ══════════════════════════════════════════════════════════════════

def solve(
    operator: np.ndarray,
    inverse_preconditioner: np.ndarray,
    rhs: np.ndarray,
    nels_pp: int,
    max_iterations: int,
    tolerance: float,
    mpi: MPIManager,
    transport: ElementTransport,
    monitor: Optional[ConvergenceMonitor] = None,
    config: Optional[SolverConfig] = None,
) -> Tuple[np.ndarray, int]:
    """
    一次性 PCG 求解，参见 :meth:`PCGSolver.solve`。

    重要：所有进程都必须调用此函数！

    Returns:
        ``(solution [neq_pp], iterations_used)``
    """
    solver = PCGSolver(mpi, transport, monitor=monitor, config=config)
    return solver.solve(
        operator, inverse_preconditioner, rhs, nels_pp,
        max_iterations=max_iterations, tolerance=tolerance,
    )
