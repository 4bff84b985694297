"""Tests for the training and forecasting scripts"""
import argparse

import matplotlib
matplotlib.use('Agg')
import numpy as np

from forecast_timeseries import reconstruct
from mpstime.network import random_mps
from train_timeseries import load_ucr_data


def write_ucr(path, X, y):
    np.savetxt(path, np.column_stack([y, X]), delimiter=',')
    return str(path)


def test_validation_split_is_stratified(tmp_path):
    rng = np.random.default_rng(0)
    X = rng.uniform(size=(40, 6))
    y = np.repeat([1, 2], [30, 10])
    train_file = write_ucr(tmp_path / 'toy_TRAIN.csv', X, y)
    X_train, y_train, X_val, y_val, X_test, _ = load_ucr_data(train_file, valid_fraction=0.2, seed=0)
    assert X_test is None
    assert X_train.shape == (32, 6) and X_val.shape == (8, 6)
    assert np.bincount(y_val).tolist() == [0, 6, 2]
    assert np.bincount(y_train).tolist() == [0, 24, 8]
    again = load_ucr_data(train_file, valid_fraction=0.2, seed=0)
    assert np.array_equal(again[2], X_val)
    _, _, X_val, y_val, _, _ = load_ucr_data(train_file)
    assert X_val is None and y_val is None


def test_reconstruct_with_nearest_neighbour():
    X_train = np.array([[0.2, 0.4, 0.6, 0.8, 1.0], [0.9, 0.1, 0.9, 0.1, 0.9]])
    y_train = np.array([0, 1])
    meta = {'scaler': None, 'classes': np.array([0, 1]), 'd': 2, 'encoding_args': None}
    args = argparse.Namespace(task='forecast', horizon=2, method='nn', num_points=100, missing_fraction=0.0)
    series = np.array([0.25, 0.45, 0.6, 0.0, 0.0])
    out, missing = reconstruct(random_mps(5, 2, 3, 2, random_state=0), None, meta, series, 0, args, np.random.default_rng(0), (X_train, y_train))
    assert missing.tolist() == [3, 4]
    assert out.tolist() == [0.25, 0.45, 0.6, 0.8, 1.0]
