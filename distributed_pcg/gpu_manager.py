"""
GPU 设备管理器 (GPU Device Manager)

负责单个求解过程中的设备上下文与显存管理：
- 设备上下文的作用域化初始化 / 释放（``with GPUManager(...) as gpu``）
- 设备缓冲区的分配、释放（退出时保证全部释放，包括异常路径）
- host ↔ device 的矩阵 / 向量拷贝
- 显存监控与需求估算

所有设备侧失败均视为当前求解的致命错误，以 :class:`DeviceError`
子类抛出，不做本地重试。
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Type

import numpy as np
import torch

_logger = logging.getLogger("distributed_pcg.gpu")

# ── 常量 ──────────────────────────────────────────────────────
_GB: float = 1024.0 ** 3

_DTYPE_BYTES: Dict[torch.dtype, int] = {
    torch.float32: 4,
    torch.float64: 8,
    torch.int32: 4,
    torch.int64: 8,
}

# 求解器全程使用双精度
DEVICE_DTYPE: torch.dtype = torch.float64


# ══════════════════════════════════════════════════════════════════
#  异常类
# ══════════════════════════════════════════════════════════════════

class DeviceError(RuntimeError):
    """设备操作异常基类（附带 rank 信息）。"""

    def __init__(
        self,
        msg: str,
        rank: int = -1,
        original: Optional[Exception] = None,
    ) -> None:
        self.rank: int = rank
        self.original: Optional[Exception] = original
        super().__init__(f"[Rank {rank}] {msg}")


class DeviceInitializationError(DeviceError):
    """设备上下文初始化失败。"""


class DeviceAllocationError(DeviceError):
    """设备显存分配失败。"""


class DeviceTransferError(DeviceError):
    """host ↔ device 拷贝失败（任一方向）。"""


class KernelLaunchError(DeviceError):
    """设备计算核发射失败。"""


class KernelSynchronizationError(DeviceError):
    """设备同步失败。"""


# ══════════════════════════════════════════════════════════════════
#  设备缓冲区句柄
# ══════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class DeviceBuffer:
    """设备缓冲区句柄

    Attributes:
        name: 缓冲区名称（日志与错误信息使用）
        shape: 形状，向量为 ``(n,)``，矩阵为 ``(rows, cols)``
        tensor: 设备张量；释放后为 ``None``
    """
    name: str
    shape: Tuple[int, ...]
    tensor: Optional[torch.Tensor]

    @property
    def nbytes(self) -> int:
        return math.prod(self.shape) * _DTYPE_BYTES[DEVICE_DTYPE]

    @property
    def is_freed(self) -> bool:
        return self.tensor is None

    def data(self) -> torch.Tensor:
        """返回底层张量；已释放时抛出 :class:`DeviceError`。"""
        if self.tensor is None:
            raise DeviceError(f"缓冲区 '{self.name}' 已释放")
        return self.tensor


def resolve_device(device: str, gpu_id: int) -> torch.device:
    """
    解析设备选择。

    Args:
        device: ``"auto"``（有 CUDA 用 CUDA，否则 CPU）、``"cuda"`` 或 ``"cpu"``
        gpu_id: 当前进程绑定的 GPU ID（-1 表示未绑定，按 0 处理）
    """
    if device == "cpu":
        return torch.device("cpu")
    if device == "cuda" or (device == "auto" and torch.cuda.is_available()):
        return torch.device(f"cuda:{max(gpu_id, 0)}")
    if device == "auto":
        return torch.device("cpu")
    raise ValueError(f"未知设备类型: {device!r}（可选 'auto' / 'cuda' / 'cpu'）")


# ══════════════════════════════════════════════════════════════════
#  GPU 管理器
# ══════════════════════════════════════════════════════════════════

class GPUManager:
    """
    GPU 设备管理器（加速器显存管理器）

    职责：
    - 管理一次求解期间设备上下文的生命周期
    - 分配 / 释放设备缓冲区，并跟踪所有存活缓冲区
    - host ↔ device 矩阵与向量拷贝
    - 提供实时显存监控

    用法::

        with GPUManager(mpi.get_gpu_id(), device="auto", rank=mpi.get_rank()) as gpu:
            km = gpu.allocate("km", ntot, ntot)
            gpu.upload_matrix(km_host, ntot, ntot, km)
            ...
        # 退出时所有缓冲区已释放
    """

    def __init__(self, gpu_id: int, device: str = "auto", rank: int = -1) -> None:
        """
        Args:
            gpu_id: GPU 设备 ID
            device: 设备选择，见 :func:`resolve_device`
            rank: MPI rank（仅用于错误信息）
        """
        self.gpu_id: int = gpu_id
        self.rank: int = rank
        self.device: torch.device = resolve_device(device, gpu_id)
        self.is_cuda: bool = self.device.type == "cuda"
        self.initialized: bool = False
        self._buffers: List[DeviceBuffer] = []

        # 设备属性在 initialize() 中查询
        self.props = None
        self.name: str = "CPU"
        self.total_memory: int = 0

    # ── 上下文生命周期 ──────────────────────────────────────────

    def __enter__(self) -> "GPUManager":
        self.initialize()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def initialize(self) -> None:
        """初始化设备上下文（CUDA 初始化 + 绑定设备）。"""
        if self.initialized:
            return
        if self.is_cuda:
            if not torch.cuda.is_available():
                msg = f"请求设备 {self.device}，但 CUDA 不可用"
                _logger.error(msg)
                raise DeviceInitializationError(msg, rank=self.rank)
            try:
                torch.cuda.init()
                torch.cuda.set_device(self.device)
                self.props = torch.cuda.get_device_properties(self.device)
                self.name = self.props.name
                self.total_memory = self.props.total_memory
            except (RuntimeError, ValueError) as exc:
                msg = f"GPU 初始化失败 ({self.device}): {exc}"
                _logger.error(msg)
                raise DeviceInitializationError(msg, rank=self.rank, original=exc) from exc
        self.initialized = True
        _logger.debug("设备上下文已初始化: %s", self.device)

    def shutdown(self) -> None:
        """释放所有存活缓冲区并关闭设备上下文（可重复调用）。"""
        self.free_all()
        if self.is_cuda and self.initialized:
            try:
                torch.cuda.synchronize(self.device)
            except RuntimeError as exc:
                _logger.warning("关闭设备上下文时同步失败: %s", exc)
            torch.cuda.empty_cache()
        if self.initialized:
            _logger.debug("设备上下文已关闭: %s", self.device)
        self.initialized = False

    # ── 内部：设备调用包装器 ────────────────────────────────────

    def _device_call(
        self,
        func_name: str,
        error_cls: Type[DeviceError],
        fn: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """
        带错误处理的设备操作包装器。

        将 torch 运行时错误（包括 ``torch.cuda.OutOfMemoryError``）
        转换为 *error_cls*，记录日志后抛出。
        """
        try:
            return fn(*args, **kwargs)
        except DeviceError:
            raise
        except RuntimeError as exc:
            msg = f"设备操作 '{func_name}' 失败: {exc}"
            _logger.error(msg)
            raise error_cls(msg, rank=self.rank, original=exc) from exc

    def _require_initialized(self) -> None:
        if not self.initialized:
            raise DeviceInitializationError("设备上下文未初始化", rank=self.rank)

    # ── 分配 / 释放 ────────────────────────────────────────────

    def allocate(self, name: str, *shape: int) -> DeviceBuffer:
        """
        分配一个零初始化的双精度设备缓冲区。

        Args:
            name: 缓冲区名称
            *shape: 形状（``n`` 或 ``rows, cols``）

        Returns:
            设备缓冲区句柄

        Raises:
            DeviceAllocationError: 显存不足或驱动错误
        """
        self._require_initialized()
        shape_t: Tuple[int, ...] = tuple(int(s) for s in shape)
        if any(s < 0 for s in shape_t):
            raise ValueError(f"缓冲区 '{name}' 形状非法: {shape_t}")

        tensor = self._device_call(
            f"allocate({name})", DeviceAllocationError,
            torch.zeros, shape_t, dtype=DEVICE_DTYPE, device=self.device,
        )
        buf = DeviceBuffer(name=name, shape=shape_t, tensor=tensor)
        self._buffers.append(buf)
        _logger.debug("分配缓冲区 %s %s (%.3f MB)", name, shape_t, buf.nbytes / 1024 ** 2)
        return buf

    def free(self, buf: DeviceBuffer) -> None:
        """释放缓冲区（重复释放为空操作）。"""
        if buf.is_freed:
            return
        buf.tensor = None
        if buf in self._buffers:
            self._buffers.remove(buf)
        _logger.debug("释放缓冲区 %s", buf.name)

    def free_all(self) -> None:
        """按分配逆序释放所有存活缓冲区。"""
        for buf in list(reversed(self._buffers)):
            self.free(buf)

    @property
    def live_buffers(self) -> List[DeviceBuffer]:
        """当前存活的缓冲区列表。"""
        return list(self._buffers)

    # ── host ↔ device 拷贝 ─────────────────────────────────────

    def upload_matrix(self, host: np.ndarray, rows: int, cols: int, buf: DeviceBuffer) -> None:
        """将 host 矩阵 ``[rows, cols]`` 拷贝到设备缓冲区。"""
        self._check_shape(buf, (rows, cols), "upload_matrix")
        self._upload(host, (rows, cols), buf)

    def upload_vector(self, host: np.ndarray, length: int, buf: DeviceBuffer) -> None:
        """将 host 向量 ``[length]`` 拷贝到设备缓冲区。"""
        self._check_shape(buf, (length,), "upload_vector")
        self._upload(host, (length,), buf)

    def download_matrix(self, buf: DeviceBuffer, rows: int, cols: int, host: np.ndarray) -> None:
        """将设备缓冲区拷回 host 矩阵 ``[rows, cols]``（原地写入）。"""
        self._check_shape(buf, (rows, cols), "download_matrix")
        self._download(buf, (rows, cols), host)

    def download_vector(self, buf: DeviceBuffer, length: int, host: np.ndarray) -> None:
        """将设备缓冲区拷回 host 向量 ``[length]``（原地写入）。"""
        self._check_shape(buf, (length,), "download_vector")
        self._download(buf, (length,), host)

    def _check_shape(self, buf: DeviceBuffer, shape: Tuple[int, ...], func_name: str) -> None:
        if buf.shape != shape:
            raise DeviceTransferError(
                f"{func_name}: 缓冲区 '{buf.name}' 形状 {buf.shape} 与请求 {shape} 不一致",
                rank=self.rank,
            )

    def _upload(self, host: np.ndarray, shape: Tuple[int, ...], buf: DeviceBuffer) -> None:
        if host.shape != shape:
            raise DeviceTransferError(
                f"上传 '{buf.name}': host 形状 {host.shape} 与 {shape} 不一致",
                rank=self.rank,
            )
        src = torch.from_numpy(np.ascontiguousarray(host, dtype=np.float64))
        self._device_call(f"upload({buf.name})", DeviceTransferError, buf.data().copy_, src)

    def _download(self, buf: DeviceBuffer, shape: Tuple[int, ...], host: np.ndarray) -> None:
        if host.shape != shape or host.dtype != np.float64 or not host.flags["C_CONTIGUOUS"]:
            raise DeviceTransferError(
                f"下载 '{buf.name}': host 数组须为 C 连续 float64 {shape}，"
                f"实际 {host.dtype} {host.shape}",
                rank=self.rank,
            )
        dst = torch.from_numpy(host)
        self._device_call(f"download({buf.name})", DeviceTransferError, dst.copy_, buf.data())

    # ── 同步 ────────────────────────────────────────────────────

    def synchronize(self) -> None:
        """同步设备上已发射的所有计算核。"""
        if not self.is_cuda:
            return
        self._device_call(
            "synchronize", KernelSynchronizationError, torch.cuda.synchronize, self.device,
        )

    # ── 设备查询 ────────────────────────────────────────────────

    def get_memory_info(self) -> Dict[str, float]:
        """
        获取显存使用信息。

        Returns:
            包含显存信息的字典（单位：GB），键包括
            ``total``, ``used``, ``reserved``, ``free``, ``usage_percent``。
        """
        if not self.is_cuda or not torch.cuda.is_available():
            return {"total": 0.0, "used": 0.0, "reserved": 0.0,
                    "free": 0.0, "usage_percent": 0.0}

        total = self.total_memory / _GB
        used = torch.cuda.memory_allocated(self.device) / _GB
        reserved = torch.cuda.memory_reserved(self.device) / _GB
        free = total - reserved

        return {
            "total": total,
            "used": used,
            "reserved": reserved,
            "free": free,
            "usage_percent": (used / total * 100.0) if total > 0 else 0.0,
        }

    def log_info(self) -> None:
        """记录设备基本信息。"""
        if self.is_cuda:
            _logger.info("[GPU %d] %s, 总显存 %.2f GB", self.gpu_id, self.name,
                         self.total_memory / _GB)
        else:
            _logger.info("使用 CPU 设备（CUDA 不可用或未启用）")

    # ── 显存估算 ────────────────────────────────────────────────

    @staticmethod
    def estimate_memory_requirement(
        *tensor_shapes: Sequence[int],
        dtype: torch.dtype = DEVICE_DTYPE,
    ) -> float:
        """
        估算给定张量形状所需显存。

        Returns:
            所需显存（GB）
        """
        bytes_per_element = _DTYPE_BYTES.get(dtype, 8)
        total_bytes = sum(math.prod(shape) * bytes_per_element for shape in tensor_shapes)
        return total_bytes / _GB

    def can_fit(
        self,
        *tensor_shapes: Sequence[int],
        dtype: torch.dtype = DEVICE_DTYPE,
        safety_margin: float = 0.1,
    ) -> bool:
        """
        检查张量是否能放入当前 GPU 显存（CPU 设备恒为 ``True``）。

        Args:
            *tensor_shapes: 张量形状
            dtype: 数据类型
            safety_margin: 安全边际比例 (0–1)
        """
        if not self.is_cuda:
            return True
        required = self.estimate_memory_requirement(*tensor_shapes, dtype=dtype)
        info = self.get_memory_info()
        available = info["free"] * (1.0 - safety_margin)
        return required <= available
