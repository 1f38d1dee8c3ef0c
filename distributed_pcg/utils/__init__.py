"""
工具模块

包含性能分析与测试网格工具。
"""

from .profiler import Profiler
from .mesh import (bar_element_stiffness, quad_element_stiffness, bar_mesh, quad_mesh,
                   partition_elements, local_equation_range, assemble_dense)

__all__ = [
    "Profiler",
    "bar_element_stiffness",
    "quad_element_stiffness",
    "bar_mesh",
    "quad_mesh",
    "partition_elements",
    "local_equation_range",
    "assemble_dense",
]
