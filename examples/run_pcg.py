#!/usr/bin/env python
"""
分布式 PCG 求解示例

在结构化测试网格上组装导向矩阵与逆对角预条件，调用 GPU PCG 求解，
并在主进程打印迭代次数、各阶段耗时以及（小规模时）与稠密直接解的误差。

运行方式：
    mpirun -n 4 --allow-run-as-root python examples/run_pcg.py [选项]

示例：
    mpirun -n 2 python examples/run_pcg.py --mesh quad --nx 200 --ny 200
    mpirun -n 4 python examples/run_pcg.py --mesh bar --nels 100000 --tol 1e-8
    mpirun -n 4 python examples/run_pcg.py --config pcg.yaml --profile
"""

import argparse
import os
import sys
import time

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import numpy as np

from distributed_pcg import (
    MPIManager,
    MPITransport,
    PCGSolver,
    SolverConfig,
    assemble_inverse_diagonal,
)
from distributed_pcg.utils import (
    assemble_dense,
    bar_element_stiffness,
    bar_mesh,
    local_equation_range,
    partition_elements,
    quad_element_stiffness,
    quad_mesh,
)

# 稠密验证的规模上限
DENSE_CHECK_LIMIT = 2000


def parse_args():
    parser = argparse.ArgumentParser(
        description="distributed_pcg 求解示例",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--mesh", choices=["bar", "quad"], default="quad", help="测试网格类型")
    parser.add_argument("--nels", type=int, default=1000, help="杆网格单元数")
    parser.add_argument("--nx", type=int, default=64, help="四边形网格 x 方向单元数")
    parser.add_argument("--ny", type=int, default=64, help="四边形网格 y 方向单元数")
    parser.add_argument("--config", type=str, default=None, help="YAML 配置文件")
    parser.add_argument("--max-iter", type=int, default=None, help="最大迭代次数（覆盖配置）")
    parser.add_argument("--tol", type=float, default=None, help="收敛容差（覆盖配置）")
    parser.add_argument("--device", choices=["auto", "cuda", "cpu"], default=None)
    parser.add_argument("--fused", action="store_true", help="使用融合方向更新")
    parser.add_argument("--profile", action="store_true", help="记录各阶段耗时")
    return parser.parse_args()


def build_problem(args):
    """返回 ``(km, g_num, neq)``。"""
    if args.mesh == "bar":
        g_num, neq = bar_mesh(args.nels, restrain_first=True)
        return bar_element_stiffness(), g_num, neq
    g_num, neq = quad_mesh(args.nx, args.ny, restrain_left=True)
    return quad_element_stiffness(), g_num, neq


def main():
    args = parse_args()
    mpi = MPIManager()
    rank, size = mpi.get_rank(), mpi.get_size()

    config = SolverConfig.from_yaml(args.config) if args.config else SolverConfig()
    config = config.replace(
        max_iterations=args.max_iter,
        tolerance=args.tol,
        device=args.device,
        fused_direction_update=args.fused or None,
        profile=args.profile or None,
    )

    km, g_num, neq = build_problem(args)
    g_num_pp = partition_elements(g_num, size, rank)
    start, end = local_equation_range(neq, size, rank)

    mpi.print_master(f"\n{'='*50}")
    mpi.print_master(f"PCG 求解: mesh={args.mesh}, 方程数={neq}, 单元数={g_num.shape[1]}, "
                     f"ntot={km.shape[0]}, 进程数={size}")
    mpi.print_master(f"{'='*50}")

    transport = MPITransport(g_num_pp, neq, mpi)
    precon = assemble_inverse_diagonal(km, transport)
    rhs = np.ones(end - start, dtype=np.float64)

    solver = PCGSolver(mpi, transport, config=config)
    mpi.synchronize()
    t0 = time.time()
    x_pp, iters = solver.solve(km, precon, rhs, g_num_pp.shape[1])
    elapsed = time.time() - t0

    stats = solver.last_stats
    mpi.print_master(f"状态: {stats.state.value}")
    mpi.print_master(f"迭代次数: {iters}")
    mpi.print_master(f"总耗时: {elapsed*1000:.2f} ms")
    for name, seconds in sorted(stats.timings.items()):
        mpi.print_master(f"  {name:<16s} {seconds*1000:10.3f} ms")

    # 小规模问题与稠密直接解比较
    if neq <= DENSE_CHECK_LIMIT:
        x = np.concatenate(mpi.allgather(x_pp))
        if mpi.is_master_process():
            expected = np.linalg.solve(assemble_dense(km, g_num, neq), np.ones(neq))
            error = np.max(np.abs(x - expected)) / np.max(np.abs(expected))
            print(f"相对误差: {error:.2e}")
            print(f"验证: {'✓ 通过' if error < 1e-4 else '✗ 失败'}")

    mpi.synchronize()


if __name__ == "__main__":
    main()
