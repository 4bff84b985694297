"""Tests for encoded datasets"""
import pytest

import numpy as np
import torch

from mpstime.dataset import balance_classes, encode_dataset, encode_states
from mpstime.encodings import get_basis
from tests.utils_for_tests import allcloseish


def shuffled_data(seed=0):
    rng = np.random.default_rng(seed)
    X = rng.uniform(0, 1, (12, 4))
    y = rng.permutation(np.array([5, 5, 5, 5, 5, 7, 7, 7, 9, 9, 9, 9]))
    return X, y


def test_samples_are_sorted_by_label():
    X, y = shuffled_data()
    dataset = encode_dataset(X, y, 'stoudenmire')
    assert dataset.classes.tolist() == [5, 7, 9]
    assert dataset.labels.tolist() == sorted(dataset.labels.tolist())
    assert dataset.class_distribution() == [(0, 0, 5), (1, 5, 8), (2, 8, 12)]
    assert dataset.class_counts() == {0: 5, 1: 3, 2: 4}
    assert not dataset.is_balanced()
    # ids point back at the raw rows
    raw = encode_states(X[dataset.ids.numpy()], get_basis('stoudenmire'), 2)
    assert allcloseish(dataset.states, raw, tol=1e-12)
    assert (y[dataset.ids.numpy()] == dataset.classes[dataset.labels.numpy()]).all()


def test_dataset_properties():
    X, y = shuffled_data()
    dataset = encode_dataset(X, y, 'stoudenmire', split='test')
    assert len(dataset) == 12
    assert dataset.num_sites == 4
    assert dataset.d == 2
    assert dataset.num_classes == 3
    assert dataset.dtype == torch.complex128
    assert dataset.onehot().shape == (12, 3)
    states, labels = dataset[0:2]
    assert states.shape == (2, 4, 2) and labels.shape == (2,)
    assert 'test' in repr(dataset)


def test_missing_class_keeps_its_index():
    """A split without one of the training classes still uses the training label indices"""
    X, y = shuffled_data()
    keep = y != 7
    dataset = encode_dataset(X[keep], y[keep], 'stoudenmire', split='valid', classes=[5, 7, 9])
    assert dataset.num_classes == 3
    assert [c for c, _, _ in dataset.class_distribution()] == [0, 2]


def test_encoding_errors():
    X, y = shuffled_data()
    with pytest.raises(ValueError):
        encode_dataset(X, y, 'stoudenmire', split='holdout')
    with pytest.raises(ValueError):
        encode_dataset(X[0], y, 'stoudenmire')
    with pytest.raises(ValueError):
        encode_dataset(X, y[:-1], 'stoudenmire')
    with pytest.raises(ValueError):
        encode_dataset(X, y, 'stoudenmire', dtype=torch.float64)
    with pytest.raises(ValueError):
        encode_dataset(X, y, 'stoudenmire', d=3)
    with pytest.raises(ValueError):
        encode_dataset(X + 1, y, 'stoudenmire')
    with pytest.raises(ValueError):
        encode_dataset(X, y, 'stoudenmire', classes=[5, 9])


def test_real_dtype():
    X, y = shuffled_data()
    dataset = encode_dataset(2 * X - 1, y, 'legendre', d=4, dtype=torch.float64)
    assert dataset.dtype == torch.float64
    assert dataset.states.shape == (12, 4, 4)


def test_encoding_args_are_reused():
    X, y = shuffled_data()
    X = 2 * X - 1
    basis = get_basis('uniform_split', aux_dim=2)
    train = encode_dataset(X, y, basis, d=4, dtype=torch.float64)
    assert train.encoding_args is not None
    test = encode_dataset(X[:3], y[:3], basis, d=4, split='test', dtype=torch.float64, encoding_args=train.encoding_args, classes=train.classes)
    assert test.encoding_args is train.encoding_args


def test_balance_classes():
    X, y = shuffled_data()
    Xb, yb = balance_classes(X, y, random_state=0)
    _, counts = np.unique(yb, return_counts=True)
    assert counts.tolist() == [3, 3, 3]
    assert Xb.shape == (9, 4)
    X2, y2 = balance_classes(X, y, random_state=0)
    assert np.array_equal(X2, Xb) and np.array_equal(y2, yb)


def test_balanced_initialisation():
    X, y = shuffled_data()
    dataset = encode_dataset(2 * X - 1, y, get_basis('histogram_split', aux_dim=1), d=3, dtype=torch.float64, balance=True, random_state=1)
    assert len(dataset) == 12
    assert len(dataset.encoding_args) == 4
