"""Tests for metrics, training history and plotting"""
import pytest

import matplotlib
matplotlib.use('Agg')
import numpy as np
import torch

from mpstime.metrics import TrainingHistory, kl_divergence, mse_loss_acc, predict_proba
from mpstime.network import random_mps
from mpstime.utils import EinsumLabeler, plot_training_summary, visualize_mps
from tests.utils_for_tests import allcloseish, separable_dataset


def test_metrics_of_random_network():
    dataset = separable_dataset(num_sites=4)
    mps = random_mps(4, 2, 3, 2, random_state=0).normalize()
    proba = predict_proba(mps, dataset)
    assert allcloseish(proba.sum(dim=1), torch.ones(len(dataset), dtype=proba.dtype))
    loss, acc = mse_loss_acc(mps, dataset)
    assert loss > 0
    assert 0.0 <= acc <= 1.0
    yhat = mps.contract(dataset)
    expected = -torch.log(yhat.gather(1, dataset.labels.unsqueeze(1)).abs().pow(2)).mean().item()
    assert kl_divergence(mps, dataset) == pytest.approx(expected)


def test_history():
    train = separable_dataset(num_sites=4)
    test = separable_dataset(num_sites=4, seed=1, split='test')
    mps = random_mps(4, 2, 3, 2, random_state=1).normalize()
    history = TrainingHistory()
    history.record(0, mps, {'train': train, 'valid': None, 'test': test}, time_taken=0.0)
    row = history.record(1, mps, {'train': train, 'valid': None, 'test': test}, time_taken=1.5, loss=0.3)
    assert len(history) == 2
    assert row['train_cost'] == 0.3
    assert np.isnan(row['valid_acc'])
    assert history.column('train_cost')[0] != history.column('train_cost')[0]
    frame = history.to_frame()
    assert frame.index.tolist() == [0, 1]
    assert {'train_loss', 'train_acc', 'train_kl_div', 'test_acc'} <= set(frame.columns)
    summary = history.summary('test')
    assert summary['total_time'] == pytest.approx(1.5)
    assert summary['final_test_acc'] == row['test_acc']


def test_plots():
    train = separable_dataset(num_sites=4)
    mps = random_mps(4, 2, 3, 2, random_state=2).normalize()
    history = TrainingHistory()
    history.record(0, mps, {'train': train, 'test': None})
    fig = plot_training_summary(history, show=False)
    assert len(fig.axes) == 3
    fig = visualize_mps(mps, show=False)
    assert fig is not None


def test_einsum_labeler():
    labeler = EinsumLabeler()
    assert labeler['r0'] == 'a'
    assert labeler['p1'] == 'b'
    assert labeler['r0'] == 'a'
    assert len(labeler) == 2
    for i in range(50):
        labeler[f'x{i}']
    with pytest.raises(ValueError):
        labeler['one_too_many']
