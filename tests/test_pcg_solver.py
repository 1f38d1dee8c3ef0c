import numpy as np
import pytest
import torch

from distributed_pcg import (
    DeviceAllocationError,
    DeviceTransferError,
    GPUManager,
    KernelLaunchError,
    MPITransport,
    NumericalBreakdownError,
    PCGSolver,
    SerialTransport,
    SolverConfig,
    SolverState,
    assemble_inverse_diagonal,
    solve,
)
from distributed_pcg.utils import (assemble_dense, bar_mesh, local_equation_range,
                                   partition_elements, quad_element_stiffness, quad_mesh)
from conftest import DEVICES, run_ranks


# 元素矩阵 [[4,1],[1,4]] 组装出的三对角矩阵严格对角占优，Jacobi 预条件后条件数很小
WELL_CONDITIONED_BAR = np.array([[4.0, 1.0], [1.0, 4.0]])


def _bar_problem(nels):
    g_num, neq = bar_mesh(nels, restrain_first=False)
    b = np.linspace(1.0, 2.0, neq)
    return WELL_CONDITIONED_BAR, g_num, neq, b


def _serial_solver(mpi, km, g_num, neq, **config):
    transport = SerialTransport(g_num, neq)
    precon = assemble_inverse_diagonal(km, transport)
    solver = PCGSolver(mpi, transport, config=SolverConfig(device="cpu", **config))
    return solver, precon


# ==================== 正确性 ====================


@pytest.mark.parametrize("device", DEVICES)
def test_two_by_two_closed_form(mpi_serial, device):
    km = np.array([[4.0, 1.0], [1.0, 3.0]])
    g_num = np.array([[0], [1]])
    b = np.array([1.0, 2.0])
    precon = np.array([1.0 / 4.0, 1.0 / 3.0])
    expected = np.array([1.0 / 11.0, 7.0 / 11.0])

    transport = SerialTransport(g_num, 2)
    solver = PCGSolver(mpi_serial, transport, config=SolverConfig(device=device))

    x, iters = solver.solve(km, precon, b, 1, max_iterations=2, tolerance=1e-12)
    assert iters == 2
    np.testing.assert_allclose(x, expected, rtol=1e-12)

    x, iters = solver.solve(km, precon, b, 1, max_iterations=50, tolerance=1e-12)
    assert solver.state is SolverState.CONVERGED
    assert iters <= 3
    np.testing.assert_allclose(x, expected, rtol=1e-12)


def test_residual_is_small(mpi_serial):
    km, g_num, neq, b = _bar_problem(6)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x, iters = solver.solve(km, precon, b, g_num.shape[1], max_iterations=100, tolerance=1e-8)
    K = assemble_dense(km, g_num, neq)
    assert solver.last_stats.converged
    assert iters <= 2 * neq
    assert np.linalg.norm(K @ x - b) <= 1e-8 * np.linalg.norm(b)


def test_preconditioned_residual_decreases(mpi_serial):
    km, g_num, neq, b = _bar_problem(20)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    solver.solve(km, precon, b, g_num.shape[1], max_iterations=100, tolerance=1e-6)
    history = solver.last_stats.up_history
    assert len(history) == solver.last_stats.iterations + 1
    for prev, cur in zip(history, history[1:]):
        assert cur <= prev * (1.0 + 1e-10)


def test_quad_mesh_matches_dense_solve(mpi_serial):
    g_num, neq = quad_mesh(4, 3)
    km = quad_element_stiffness()
    b = np.ones(neq)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x, _ = solver.solve(km, precon, b, g_num.shape[1], max_iterations=500, tolerance=1e-10)
    expected = np.linalg.solve(assemble_dense(km, g_num, neq), b)
    np.testing.assert_allclose(x, expected, rtol=1e-6, atol=1e-8)


@pytest.mark.parametrize("size", [2, 3])
def test_distributed_matches_serial(mpi_serial, size):
    g_num, neq = quad_mesh(4, 3)
    km = quad_element_stiffness()
    b_global = np.linspace(0.5, 1.5, neq)

    serial, precon = _serial_solver(mpi_serial, km, g_num, neq)
    x_serial, iters_serial = serial.solve(km, precon, b_global, g_num.shape[1],
                                          max_iterations=500, tolerance=1e-10)

    def body(mpi):
        g_num_pp = partition_elements(g_num, mpi.get_size(), mpi.get_rank())
        transport = MPITransport(g_num_pp, neq, mpi)
        start, end = local_equation_range(neq, mpi.get_size(), mpi.get_rank())
        precon_pp = assemble_inverse_diagonal(km, transport)
        return solve(km, precon_pp, b_global[start:end], g_num_pp.shape[1], 500, 1e-10,
                     mpi, transport, config=SolverConfig(device="cpu"))

    results = run_ranks(size, body)
    iters = {it for _, it in results}
    assert len(iters) == 1
    assert abs(iters.pop() - iters_serial) <= 1

    x_dist = np.concatenate([x for x, _ in results])
    np.testing.assert_allclose(x_dist, x_serial, rtol=1e-6, atol=1e-8)
    expected = np.linalg.solve(assemble_dense(km, g_num, neq), b_global)
    np.testing.assert_allclose(x_dist, expected, rtol=1e-6, atol=1e-8)


def test_repeated_solve_is_deterministic(mpi_serial):
    g_num, neq = quad_mesh(5, 4)
    km = quad_element_stiffness()
    b = np.linspace(-1.0, 1.0, neq)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x1, i1 = solver.solve(km, precon, b, g_num.shape[1], max_iterations=200, tolerance=1e-9)
    x2, i2 = solver.solve(km, precon, b, g_num.shape[1], max_iterations=200, tolerance=1e-9)
    assert i1 == i2
    np.testing.assert_allclose(x1, x2, rtol=1e-14, atol=1e-15)


def test_fused_update_matches_two_step(mpi_serial):
    km, g_num, neq, b = _bar_problem(12)
    two_step, precon = _serial_solver(mpi_serial, km, g_num, neq)
    fused, _ = _serial_solver(mpi_serial, km, g_num, neq, fused_direction_update=True)

    x1, it1 = two_step.solve(km, precon, b, g_num.shape[1], max_iterations=100, tolerance=1e-10)
    x2, it2 = fused.solve(km, precon, b, g_num.shape[1], max_iterations=100, tolerance=1e-10)
    assert abs(it1 - it2) <= 1
    np.testing.assert_allclose(x1, x2, rtol=1e-9, atol=1e-12)


# ==================== 终止条件 ====================


def test_zero_rhs_converges_immediately(mpi_serial):
    km, g_num, neq, _ = _bar_problem(5)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x, iters = solver.solve(km, precon, np.zeros(neq), g_num.shape[1], max_iterations=10)
    assert iters == 1
    assert solver.state is SolverState.CONVERGED
    np.testing.assert_array_equal(x, np.zeros(neq))


def test_zero_iteration_limit(mpi_serial):
    km, g_num, neq, b = _bar_problem(5)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x, iters = solver.solve(km, precon, b, g_num.shape[1], max_iterations=0)
    assert iters == 0
    assert solver.state is SolverState.ITERATION_LIMIT_REACHED
    np.testing.assert_array_equal(x, np.zeros(neq))


def test_iteration_limit_reached(mpi_serial):
    g_num, neq = quad_mesh(6, 6)
    km = quad_element_stiffness()
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    x, iters = solver.solve(km, precon, np.ones(neq), g_num.shape[1],
                            max_iterations=3, tolerance=1e-14)
    assert iters == 3
    assert solver.state is SolverState.ITERATION_LIMIT_REACHED
    assert not solver.last_stats.converged
    assert np.all(np.isfinite(x))
    assert np.any(x != 0.0)


def test_config_defaults_used_when_arguments_omitted(mpi_serial):
    km, g_num, neq, b = _bar_problem(8)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq, max_iterations=2)

    _, iters = solver.solve(km, precon, b, g_num.shape[1])
    assert iters == 2
    assert solver.config.max_iterations == 2


# ==================== 数值崩溃 ====================


INDEFINITE = np.array([[1.0, 0.0], [0.0, -1.0]])


def test_indefinite_operator_raises_breakdown(mpi_serial):
    transport = SerialTransport(np.array([[0], [1]]), 2)
    solver = PCGSolver(mpi_serial, transport, config=SolverConfig(device="cpu"))

    with pytest.raises(NumericalBreakdownError) as info:
        solver.solve(INDEFINITE, np.ones(2), np.array([0.0, 1.0]), 1, max_iterations=10)
    assert info.value.iteration == 1
    assert info.value.rank == 0


def test_breakdown_check_disabled_propagates(mpi_serial):
    transport = SerialTransport(np.array([[0], [1]]), 2)
    config = SolverConfig(device="cpu", check_breakdown=False)
    solver = PCGSolver(mpi_serial, transport, config=config)

    # p·Ap = -1 时 alpha 取负值继续迭代
    x, iters = solver.solve(INDEFINITE, np.ones(2), np.array([0.0, 1.0]), 1, max_iterations=10)
    assert iters == 2
    np.testing.assert_allclose(x, [0.0, -1.0])


# ==================== 资源与异常 ====================


def _spy_managers(monkeypatch):
    managers = []
    original_init = GPUManager.__init__

    def spy_init(self, *args, **kwargs):
        original_init(self, *args, **kwargs)
        managers.append(self)

    monkeypatch.setattr(GPUManager, "__init__", spy_init)
    return managers


def test_insufficient_device_memory_raises_before_allocation(mpi_serial, monkeypatch):
    km, g_num, neq, b = _bar_problem(4)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)
    managers = _spy_managers(monkeypatch)
    monkeypatch.setattr(GPUManager, "can_fit", lambda self, *shapes, **kwargs: False)

    with pytest.raises(DeviceAllocationError):
        solver.solve(km, precon, b, g_num.shape[1], max_iterations=10)
    assert managers[0].live_buffers == []
    assert not managers[0].initialized


def test_transfer_failure_releases_buffers(mpi_serial, monkeypatch):
    km, g_num, neq, b = _bar_problem(4)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)
    managers = _spy_managers(monkeypatch)

    original_upload = GPUManager.upload_vector
    calls = {"n": 0}

    def flaky_upload(self, host, length, buf):
        calls["n"] += 1
        if calls["n"] == 3:
            raise DeviceTransferError("PCIe 传输失败", rank=self.rank)
        original_upload(self, host, length, buf)

    monkeypatch.setattr(GPUManager, "upload_vector", flaky_upload)

    with pytest.raises(DeviceTransferError):
        solver.solve(km, precon, b, g_num.shape[1], max_iterations=10)
    assert len(managers) == 1
    assert managers[0].live_buffers == []
    assert not managers[0].initialized


def test_kernel_failure_releases_buffers(mpi_serial, monkeypatch):
    km, g_num, neq, b = _bar_problem(4)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)
    managers = _spy_managers(monkeypatch)

    def failing_matmul(*args, **kwargs):
        raise RuntimeError("CUBLAS_STATUS_EXECUTION_FAILED")

    monkeypatch.setattr(torch, "matmul", failing_matmul)
    with pytest.raises(KernelLaunchError):
        solver.solve(km, precon, b, g_num.shape[1], max_iterations=10)
    assert managers[0].live_buffers == []


def test_buffers_released_after_solve(mpi_serial, monkeypatch):
    km, g_num, neq, b = _bar_problem(4)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)
    managers = _spy_managers(monkeypatch)

    solver.solve(km, precon, b, g_num.shape[1], max_iterations=10)
    assert managers[0].live_buffers == []


@pytest.mark.parametrize("kwargs", [
    {"operator": np.eye(3)},
    {"rhs": np.ones(4)},
    {"inverse_preconditioner": np.ones(6)},
    {"nels_pp": 7},
])
def test_input_validation(mpi_serial, kwargs):
    km, g_num, neq, b = _bar_problem(4)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)
    args = {"operator": km, "inverse_preconditioner": precon, "rhs": b, "nels_pp": 4}
    args.update(kwargs)
    with pytest.raises(ValueError):
        solver.solve(**args, max_iterations=5)


# ==================== 计时 ====================


def test_profile_records_timings(mpi_serial):
    km, g_num, neq, b = _bar_problem(6)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq, profile=True)

    solver.solve(km, precon, b, g_num.shape[1], max_iterations=5)
    timings = solver.last_stats.timings
    assert {"matvec_total", "matvec_kernel", "vector_upload", "dot_allreduce"} <= set(timings)
    assert timings["matvec_total"] >= timings["matvec_kernel"] >= 0.0


def test_profile_disabled_records_nothing(mpi_serial):
    km, g_num, neq, b = _bar_problem(6)
    solver, precon = _serial_solver(mpi_serial, km, g_num, neq)

    solver.solve(km, precon, b, g_num.shape[1], max_iterations=5)
    assert solver.last_stats.timings == {}
