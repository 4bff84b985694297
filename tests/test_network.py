"""Tests for the MPS chain, its canonical forms and bond splitting"""
import pytest
from functools import partial

import torch
from hypothesis import given, settings, strategies as st

from mpstime.network import LABEL, MPS, bond, random_mps, split_bond, truncation_rank
from tests.utils_for_tests import allcloseish, is_isometry, separable_dataset

num_sites_st = partial(st.integers, 2, 6)
chi_st = partial(st.integers, 1, 6)


def test_random_mps_layout():
    mps = random_mps(5, 2, 8, 2, random_state=0)
    assert len(mps) == 5
    assert mps.label_site() == 4
    assert mps.num_classes() == 2
    assert mps.bond_dims() == [2, 4, 8, 4]
    assert mps[0].dim_labels == ['p0', 'r0']
    assert mps[2].dim_labels == ['r1', 'p2', 'r2']
    assert mps[4].dim_labels == ['r3', 'p4', LABEL]
    assert mps.dtype == torch.complex128


def test_random_mps_is_reproducible():
    a = random_mps(4, 2, 3, 2, random_state=7)
    b = random_mps(4, 2, 3, 2, random_state=7)
    for na, nb in zip(a.nodes, b.nodes):
        assert torch.equal(na.tensor, nb.tensor)


def test_too_short_chain():
    with pytest.raises(ValueError):
        random_mps(1, 2, 2, 2)


@settings(deadline=None, max_examples=20)
@given(num_sites_st(), st.integers(0, 5), st.integers(0, 10_000))
def test_orthogonalize_gives_isometries(num_sites, center, seed):
    """Sites left of the center are left isometries, sites right of it right isometries"""
    center = min(center, num_sites - 1)
    mps = random_mps(num_sites, 2, 4, 3, random_state=seed)
    mps.orthogonalize(center)
    assert mps.center == center
    for j in range(center):
        assert is_isometry(mps[j], mps.bond_label(j))
    for j in range(center + 1, num_sites):
        assert is_isometry(mps[j], mps.bond_label(j - 1))


def test_orthogonalize_preserves_output():
    dataset = separable_dataset(num_sites=5)
    mps = random_mps(5, 2, 4, 2, random_state=1)
    before = mps.contract(dataset)
    mps.orthogonalize(2).orthogonalize(0).orthogonalize(4)
    assert allcloseish(mps.contract(dataset), before, tol=1e-8)


def test_norm_from_center_matches_full_contraction():
    mps = random_mps(5, 2, 4, 2, random_state=2)
    full = mps.norm()
    mps.orthogonalize(3)
    assert allcloseish(mps.norm(), full, tol=1e-8)


@pytest.mark.parametrize("center", [None, 0, 4])
def test_normalize(center):
    mps = random_mps(5, 2, 4, 2, random_state=3)
    if center is not None:
        mps.orthogonalize(center)
    mps.normalize()
    check = mps.copy()
    check.center = None
    assert allcloseish(check.norm(), torch.tensor(1.0, dtype=torch.float64), tol=1e-8)


def test_contract_shapes():
    dataset = separable_dataset(num_sites=4)
    mps = random_mps(4, 2, 3, 2, random_state=4)
    assert mps.contract(dataset).shape == (len(dataset), 2)
    assert mps.contract(dataset.states).shape == (len(dataset), 2)
    with pytest.raises(ValueError):
        random_mps(5, 2, 3, 2).contract(dataset)


@pytest.mark.parametrize("going_left", [True, False])
def test_split_bond_roundtrip(going_left):
    """Without truncation a split bond contracts back to itself"""
    mps = random_mps(5, 2, 4, 2, random_state=5)
    mps.orthogonalize(3)
    bt = mps.bond_tensor(3)
    left, right, error = split_bond(bt, 3, going_left, chi_max=100, cutoff=0.0)
    assert error == pytest.approx(0.0, abs=1e-12)
    assert left.has_label(LABEL) == going_left
    assert right.has_label(LABEL) != going_left
    if going_left:
        assert is_isometry(right, bond(3))
    else:
        assert is_isometry(left, bond(3))
    merged = left.contract_with(right).permute(*bt.dim_labels)
    assert allcloseish(merged.tensor, bt.tensor, tol=1e-8)
    assert left.dim_labels[-1] in (bond(3), LABEL)
    assert right.dim_labels[0] == bond(3)


@settings(deadline=None, max_examples=25)
@given(chi_st(), st.booleans(), st.integers(0, 10_000))
def test_split_bond_caps_dimension(chi_max, going_left, seed):
    mps = random_mps(4, 2, 4, 3, random_state=seed)
    bt = mps.bond_tensor(2)
    left, right, _ = split_bond(bt, 2, going_left, chi_max=chi_max)
    dim = left.dim_size(bond(2))
    assert 1 <= dim <= chi_max
    assert dim == right.dim_size(bond(2))


def test_truncation_rank():
    s = torch.tensor([1.0, 0.1, 0.01], dtype=torch.float64)
    assert truncation_rank(s, chi_max=10, cutoff=0.0) == 3
    assert truncation_rank(s, chi_max=10, cutoff=1e-3) == 2
    assert truncation_rank(s, chi_max=10, cutoff=0.5) == 1
    assert truncation_rank(s, chi_max=1, cutoff=0.0) == 1
    assert truncation_rank(torch.zeros(3, dtype=torch.float64), chi_max=10, cutoff=1e-3) == 3


def test_slice_class():
    dataset = separable_dataset(num_sites=5)
    mps = random_mps(5, 2, 4, 2, random_state=6)
    yhat = mps.contract(dataset)
    for c in range(2):
        sliced = mps.slice_class(c)
        assert sliced.label_site() is None
        assert allcloseish(sliced.norm(), torch.tensor(1.0, dtype=torch.float64), tol=1e-8)
        out = sliced.contract(dataset)
        assert out.shape == (len(dataset),)
        scale = yhat[0, c] / out[0]
        assert allcloseish(out * scale, yhat[:, c], tol=1e-8)
    with pytest.raises(ValueError):
        mps.slice_class(2)
    with pytest.raises(ValueError):
        mps.slice_class(0).slice_class(0)


def test_save_load(tmp_path):
    mps = random_mps(4, 2, 3, 2, random_state=8).orthogonalize(2)
    path = tmp_path / "mps.pt"
    mps.save(path)
    loaded = MPS.load(path)
    assert loaded.center == 2
    assert loaded.bond_dims() == mps.bond_dims()
    for a, b in zip(mps.nodes, loaded.nodes):
        assert a.dim_labels == b.dim_labels
        assert torch.equal(a.tensor, b.tensor)


@pytest.mark.parametrize("cutoff", [1e-3, 1e-1])
@pytest.mark.parametrize("going_left", [True, False])
def test_truncated_split_error(cutoff, going_left):
    """The relative reconstruction error of a truncated split is the reported discarded weight"""
    mps = random_mps(5, 3, 8, 2, random_state=6)
    bt = mps.bond_tensor(2)
    left, right, error = split_bond(bt, 2, going_left, chi_max=100, cutoff=cutoff)
    merged = left.contract_with(right).permute(*bt.dim_labels)
    rel_err = ((merged.tensor - bt.tensor).abs().pow(2).sum() / bt.tensor.abs().pow(2).sum()).item()
    assert rel_err <= cutoff + 1e-12
    assert rel_err == pytest.approx(error, abs=1e-10)
