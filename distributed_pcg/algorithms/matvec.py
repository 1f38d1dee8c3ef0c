"""
设备端矩阵-向量计算引擎

PCG 中的矩阵无关 (matrix-free) 乘法：所有单元共享同一个单元刚度矩阵 KM，
因此整个进程的单元乘法可以合并为一次稠密矩阵乘法::

    [ntot, ntot] @ [ntot, nels_pp] -> [ntot, nels_pp]

而不是 nels_pp 次独立的小矩阵乘法。

另外提供设备常驻的向量原语（均为本地计算，不含跨进程归约）：
scale / axpy / dot / apply_diagonal，以及可选的融合方向更新 xpby。
全程双精度。
"""

from __future__ import annotations

import torch

from ..gpu_manager import DeviceBuffer, GPUManager, KernelLaunchError


class DeviceMatVecEngine:
    """
    设备端矩阵-向量引擎

    所有操作作用在 :class:`~distributed_pcg.gpu_manager.DeviceBuffer` 上，
    结果写入已分配的输出缓冲区，不在迭代中分配新显存。

    Args:
        gpu: 已初始化的 GPU 管理器
    """

    def __init__(self, gpu: GPUManager) -> None:
        self.gpu: GPUManager = gpu

    def _launch(self, func_name: str, fn, *args, **kwargs):
        return self.gpu._device_call(func_name, KernelLaunchError, fn, *args, **kwargs)

    # ==================== 批量乘法 ====================

    def batched_multiply(
        self,
        operator: DeviceBuffer,
        batch_in: DeviceBuffer,
        batch_out: DeviceBuffer,
    ) -> DeviceBuffer:
        """
        共享算子批量乘法 ``out[:, e] = KM @ in[:, e]``，对所有单元 e。

        乘法结束后显式同步设备：之后的拷贝与计时均依赖该结果，
        这是每次迭代唯一必需的同步点。

        Args:
            operator: 单元刚度矩阵 ``[ntot, ntot]``
            batch_in: 单元向量批 ``[ntot, nels_pp]``
            batch_out: 输出单元向量批 ``[ntot, nels_pp]``

        Returns:
            ``batch_out``
        """
        ntot = operator.shape[0]
        if operator.shape != (ntot, ntot) or batch_in.shape[0] != ntot or batch_in.shape != batch_out.shape:
            raise ValueError(
                f"batched_multiply 形状不匹配: operator {operator.shape}, "
                f"in {batch_in.shape}, out {batch_out.shape}"
            )
        self._launch(
            "batched_multiply", torch.matmul,
            operator.data(), batch_in.data(), out=batch_out.data(),
        )
        self.gpu.synchronize()
        return batch_out

    # ==================== 向量原语 ====================

    def scale(self, vector: DeviceBuffer, scalar: float) -> None:
        """``vector *= scalar``（原地）。"""
        self._launch("scale", vector.data().mul_, scalar)

    def axpy(self, vector: DeviceBuffer, scalar: float, other: DeviceBuffer) -> None:
        """``vector += scalar * other``（原地）。"""
        self._launch("axpy", vector.data().add_, other.data(), alpha=scalar)

    def xpby(self, vector: DeviceBuffer, scalar: float, other: DeviceBuffer) -> None:
        """
        融合方向更新 ``vector = other + scalar * vector``（原地，一次核调用）。

        与 ``scale`` + ``axpy`` 两步组合在舍入误差范围内等价。
        """
        v = vector.data()
        self._launch("xpby", torch.add, other.data(), v, alpha=scalar, out=v)

    def dot(self, a: DeviceBuffer, b: DeviceBuffer) -> float:
        """本地部分点积 ``a·b``（不含跨进程归约）。"""
        result = self._launch("dot", torch.dot, a.data(), b.data())
        return float(self._launch("dot(item)", result.item))

    def apply_diagonal(
        self,
        diag: DeviceBuffer,
        vector_in: DeviceBuffer,
        vector_out: DeviceBuffer,
    ) -> None:
        """对角预条件应用 ``out = diag ⊙ in``。"""
        self._launch("apply_diagonal", torch.mul, diag.data(), vector_in.data(), out=vector_out.data())
