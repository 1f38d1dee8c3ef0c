import numpy as np
import pytest

from distributed_pcg import MaxNormConvergenceMonitor
from conftest import run_ranks


def test_relative_change_below_tolerance(mpi_serial):
    monitor = MaxNormConvergenceMonitor(mpi_serial)
    old = np.array([1.0, 2.0, -4.0])
    new = np.array([1.0, 2.0001, -4.0])
    assert monitor.check_converged(new, 1e-4, old)
    assert monitor.last_ratio == pytest.approx(1e-4 / 4.0)
    assert not monitor.check_converged(new, 1e-5, old)


def test_identical_vectors_converge(mpi_serial):
    monitor = MaxNormConvergenceMonitor(mpi_serial)
    zeros = np.zeros(4)
    assert monitor.check_converged(zeros, 1e-10, zeros.copy())
    assert monitor.last_ratio == 0.0


def test_zero_candidate_with_change_does_not_converge(mpi_serial):
    monitor = MaxNormConvergenceMonitor(mpi_serial)
    assert not monitor.check_converged(np.zeros(3), 1.0, np.ones(3))
    assert monitor.last_ratio == float("inf")


def test_shape_mismatch(mpi_serial):
    monitor = MaxNormConvergenceMonitor(mpi_serial)
    with pytest.raises(ValueError):
        monitor.check_converged(np.zeros(3), 1e-5, np.zeros(4))


def test_decision_is_global():
    # rank 1 的局部变化很大，所有 rank 都必须判定为未收敛
    def body(mpi):
        old = np.array([10.0, 10.0])
        new = old.copy()
        if mpi.get_rank() == 1:
            new[0] += 1.0
        monitor = MaxNormConvergenceMonitor(mpi)
        return monitor.check_converged(new, 1e-3, old), monitor.last_ratio

    results = run_ranks(3, body)
    assert [r[0] for r in results] == [False, False, False]
    assert all(r[1] == pytest.approx(1.0 / 11.0) for r in results)


def test_rank_with_no_equations():
    def body(mpi):
        if mpi.get_rank() == 0:
            old, new = np.empty(0), np.empty(0)
        else:
            old, new = np.array([2.0]), np.array([2.0 + 1e-9])
        return MaxNormConvergenceMonitor(mpi).check_converged(new, 1e-6, old)

    assert run_ranks(2, body) == [True, True]


def test_ratio_equal_to_tolerance_converges(mpi_serial):
    monitor = MaxNormConvergenceMonitor(mpi_serial)
    assert monitor.check_converged(np.array([2.0]), 0.5, np.array([1.0]))
    assert monitor.last_ratio == 0.5
