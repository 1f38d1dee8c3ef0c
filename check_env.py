#!/usr/bin/env python3
"""
distributed_pcg 运行环境检测

依次检查求解器真正依赖的环境条件：
    1. torch 与 CUDA 设备（每个 MPI 进程按 rank % GPU 数绑定一块卡）
    2. mpi4py 与 mpirun
    3. 设备上的 float64 批量乘法（PCG 矩阵-向量乘法内核）
    4. distributed_pcg 包导入与单进程小规模求解

使用方式:
    python check_env.py
    mpirun -n 2 python check_env.py     # 同时检查各 rank 的 GPU 绑定
"""

from __future__ import annotations

import shutil
import sys
from typing import List, Tuple

CheckResult = Tuple[bool, List[str]]


def check_device_binding() -> CheckResult:
    """torch 版本、CUDA 可用性以及本进程将绑定的 GPU。"""
    import torch

    lines = [f"torch {torch.__version__}"]
    if not torch.cuda.is_available():
        lines.append("CUDA 不可用：求解器将以 device='auto' 回退到 CPU")
        return True, lines

    count = torch.cuda.device_count()
    lines.append(f"CUDA {torch.version.cuda}, {count} 个 GPU")
    try:
        from mpi4py import MPI
        rank = MPI.COMM_WORLD.Get_rank()
    except ImportError:
        rank = 0
    gpu_id = rank % count
    props = torch.cuda.get_device_properties(gpu_id)
    lines.append(f"rank {rank} -> GPU {gpu_id}: {props.name} ({props.total_memory / 1024**3:.1f} GB)")
    return True, lines


def check_mpi() -> CheckResult:
    """mpi4py 导入、MPI 库版本与 mpirun 启动器。"""
    try:
        from mpi4py import MPI
    except ImportError as e:
        return False, [f"mpi4py 导入失败: {e}", "修复: pip install mpi4py"]

    comm = MPI.COMM_WORLD
    launcher = shutil.which("mpirun") or shutil.which("mpiexec")
    lines = [
        f"MPI 标准 {'.'.join(map(str, MPI.Get_version()))}, 进程数 {comm.Get_size()}",
        f"启动器: {launcher or '未找到（仅能单进程运行）'}",
    ]
    # 标量 Allreduce 是每次迭代的同步点
    total = comm.allreduce(1.0, op=MPI.SUM)
    lines.append(f"allreduce(SUM) = {total:g}")
    return total == comm.Get_size(), lines


def check_float64_matmul() -> CheckResult:
    """``KM @ P`` 冒烟测试：float64，与 CPU 结果比较。"""
    import torch

    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    ntot, nels = 8, 4096
    try:
        km = torch.randn(ntot, ntot, dtype=torch.float64, device=device)
        batch = torch.randn(ntot, nels, dtype=torch.float64, device=device)
        out = torch.empty(ntot, nels, dtype=torch.float64, device=device)
        torch.matmul(km, batch, out=out)
        if device.type == "cuda":
            torch.cuda.synchronize(device)
        error = torch.max(torch.abs(out.cpu() - km.cpu() @ batch.cpu())).item()
    except RuntimeError as e:
        return False, [f"{device}: {e}"]
    return error < 1e-10, [f"{device}: [{ntot}x{ntot}] @ [{ntot}x{nels}], 最大误差 {error:.2e}"]


def check_package() -> CheckResult:
    """包导入并在 CPU 上求解 2x2 系统。"""
    try:
        import numpy as np
        import distributed_pcg
        from distributed_pcg import PCGSolver, SerialTransport, SolverConfig
        from distributed_pcg.mpi_manager import MPIManager
    except ImportError as e:
        return False, [f"导入失败: {e}", "修复: pip install -e ."]

    from mpi4py import MPI

    mpi = MPIManager(comm=MPI.COMM_SELF, bind_gpu=False)
    solver = PCGSolver(mpi, SerialTransport(np.array([[0], [1]]), 2),
                       config=SolverConfig(device="cpu"))
    x, iters = solver.solve(np.array([[4.0, 1.0], [1.0, 3.0]]), np.array([0.25, 1.0 / 3.0]),
                            np.array([1.0, 2.0]), 1, max_iterations=10, tolerance=1e-12)
    error = float(np.max(np.abs(x - np.array([1.0, 7.0]) / 11.0)))
    return error < 1e-12, [f"distributed_pcg {distributed_pcg.__version__}",
                           f"2x2 求解: {iters} 次迭代, 误差 {error:.1e}"]


CHECKS = [
    ("设备与 GPU 绑定", check_device_binding),
    ("MPI", check_mpi),
    ("float64 批量乘法", check_float64_matmul),
    ("distributed_pcg", check_package),
]


def main() -> int:
    print("=" * 60)
    print("  distributed_pcg 环境检测")
    print("=" * 60)

    passed = 0
    for i, (title, check) in enumerate(CHECKS, start=1):
        print(f"\n[{i}/{len(CHECKS)}] {title}")
        try:
            ok, lines = check()
        except ImportError as e:
            ok, lines = False, [f"依赖缺失: {e}"]
        for line in lines:
            print(f"  {'✅' if ok else '❌'} {line}")
        passed += ok

    print("\n" + "=" * 60)
    print(f"  通过 {passed}/{len(CHECKS)}")
    if passed == len(CHECKS):
        print("  多进程验证: mpirun -n 2 python -m pytest --with-mpi tests/test_mpi.py")
    print("=" * 60)
    return 0 if passed == len(CHECKS) else 1


if __name__ == "__main__":
    sys.exit(main())
