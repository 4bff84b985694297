"""Utility functions that are only used for tests"""
import numpy as np
import torch

from mpstime.dataset import encode_dataset

Tensor = torch.Tensor


def allcloseish(arr1: Tensor, arr2: Tensor, tol=1e-4) -> bool:
    """
    Same as `torch.allclose`, but less nit-picky
    """
    if not isinstance(arr1, torch.Tensor):
        arr1 = torch.tensor(arr1)
    if not isinstance(arr2, torch.Tensor):
        arr2 = torch.tensor(arr2)
    return torch.allclose(arr1, arr2.to(arr1.dtype), rtol=tol, atol=tol)


def separable_series(samples_per_class=10, num_sites=5, num_classes=2, noise=0.05, seed=0):
    """
    Series whose values sit around a class dependent level in [0, 1]
    """
    rng = np.random.default_rng(seed)
    levels = np.linspace(0.1, 0.9, num_classes)
    X = np.concatenate([
        np.clip(level + noise * rng.standard_normal((samples_per_class, num_sites)), 0.0, 1.0)
        for level in levels
    ])
    y = np.repeat(np.arange(num_classes), samples_per_class)
    return X, y


def separable_dataset(samples_per_class=10, num_sites=5, num_classes=2, dtype=torch.complex128, seed=0, split='train'):
    X, y = separable_series(samples_per_class, num_sites, num_classes, seed=seed)
    return encode_dataset(X, y, 'stoudenmire', d=2, split=split, dtype=dtype)


def is_isometry(node, bond_label, tol=1e-8) -> bool:
    """
    Checks that node, reshaped to (everything else, bond_label), has orthonormal columns
    """
    matrix, _, _, _ = node.copy().matricize([l for l in node.dim_labels if l != bond_label])
    gram = matrix.conj().T @ matrix
    return allcloseish(gram, torch.eye(gram.shape[0], dtype=gram.dtype), tol=tol)
