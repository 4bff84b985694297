"""Tests for the bond optimizers"""
import pytest

import torch

from mpstime.optimizers import GradientDescent, ScipyOptimizer, get_optimizer, optimize_bond
from tests.utils_for_tests import allcloseish


class Quadratic:
    """0.5 * |B - T|^2, whose gradient in the realise convention is B - T"""
    def __init__(self, target):
        self.target = target
        self.calls = 0

    def __call__(self, bt):
        self.calls += 1
        diff = bt - self.target
        return 0.5 * diff.abs().pow(2).sum(), diff


@pytest.mark.parametrize("dtype", [torch.complex128, torch.float64])
def test_gradient_descent_step(dtype):
    torch.manual_seed(0)
    target = torch.randn(3, 4, dtype=dtype)
    bt = torch.randn(3, 4, dtype=dtype)
    out = GradientDescent(eta=0.5)(bt, Quadratic(target), iters=1)
    assert out.dtype == dtype
    assert allcloseish(out, bt - 0.5 * (bt - target), tol=1e-12)
    out = GradientDescent(eta=1.0)(bt, Quadratic(target), iters=3)
    assert allcloseish(out, target, tol=1e-12)


@pytest.mark.parametrize("name", ["cg", "bfgs", "lbfgs"])
@pytest.mark.parametrize("dtype", [torch.complex128, torch.float64])
def test_scipy_optimizers_minimise_quadratic(name, dtype):
    torch.manual_seed(1)
    target = torch.randn(2, 3, 2, dtype=dtype)
    bt = torch.zeros(2, 3, 2, dtype=dtype)
    optimizer = get_optimizer(name)
    assert isinstance(optimizer, ScipyOptimizer)
    assert optimizer.name == name
    out = optimizer(bt, Quadratic(target), iters=50)
    assert out.dtype == dtype
    assert out.shape == bt.shape
    assert allcloseish(out, target, tol=1e-5)


def test_optimize_bond_rescales():
    torch.manual_seed(2)
    target = 10 * torch.randn(4, 2, dtype=torch.complex128)
    bt = torch.randn(4, 2, dtype=torch.complex128)
    out = optimize_bond(bt, Quadratic(target), GradientDescent(0.1), iters=2, rescale_flags=(False, True))
    assert torch.linalg.vector_norm(out).item() == pytest.approx(1.0)
    out = optimize_bond(bt, Quadratic(target), GradientDescent(0.0), iters=1, rescale_flags=(True, False))
    assert torch.linalg.vector_norm(out).item() == pytest.approx(1.0)
    out = optimize_bond(bt, Quadratic(target), GradientDescent(0.0), iters=1, rescale_flags=(False, False))
    assert torch.equal(out, bt)


def test_get_optimizer():
    assert isinstance(get_optimizer('gd', eta=0.3), GradientDescent)
    assert get_optimizer('gd', eta=0.3).eta == 0.3
    gd = GradientDescent()
    assert get_optimizer(gd) is gd
    with pytest.raises(ValueError):
        get_optimizer('adam')
