import argparse
import numpy as np
import torch
import matplotlib.pyplot as plt
from mpstime.encodings import get_basis
from mpstime.network import MPS
from mpstime.sampling import forecast, impute, nearest_neighbour_impute
from train_timeseries import load_ucr_split

def load_model(model_path):
    mps = MPS.load(model_path)
    # the encoding file holds numpy arrays and a fitted scaler
    meta = torch.load(model_path.rsplit('.', 1)[0] + '_encoding.pt', weights_only=False)
    basis = get_basis(meta['encoding'], project=meta['project'], aux_dim=meta['aux_basis_dim'])
    return mps, basis, meta

def reconstruct(mps, basis, meta, series, label, args, rng, train=None):
    """
    Runs a forecast (or an imputation) of one raw series with the MPS of its class.

    With method 'nn' the missing points are copied from the nearest rescaled training series
    of the same class instead; train holds those (X, y).
    """
    scaler = meta['scaler']
    scaled = scaler.transform(series[None, :])[0] if scaler is not None else series.copy()
    class_index = int(np.searchsorted(meta['classes'], label))
    class_mps = mps.slice_class(class_index)
    seed = int(rng.integers(2**31))
    if args.task == 'forecast':
        missing = np.arange(len(scaled) - args.horizon, len(scaled))
    else:
        missing = np.sort(rng.choice(len(scaled), int(round(args.missing_fraction * len(scaled))), replace=False))
    masked = scaled.copy()
    masked[missing] = np.nan
    if args.method == 'nn':
        out = nearest_neighbour_impute(*train, masked, label)
    elif args.task == 'forecast':
        known = scaled[:len(scaled) - args.horizon]
        out = forecast(class_mps, known, basis, meta['d'], meta['encoding_args'], method=args.method, num_points=args.num_points, random_state=seed)
    else:
        out = impute(class_mps, masked, basis, meta['d'], meta['encoding_args'], method=args.method, num_points=args.num_points, random_state=seed)
    if scaler is not None:
        out = scaler.inverse_transform(out[None, :])[0]
    return out, missing

def main(args):
    mps, basis, meta = load_model(args.model_path)
    X, y = load_ucr_split(args.data_file)
    if X.shape[1] != len(mps):
        raise ValueError(f"Series have {X.shape[1]} points but the MPS has {len(mps)} sites")
    train = None
    if args.method == 'nn':
        if args.train_file is None:
            raise ValueError("--method nn needs --train_file")
        X_train, y_train = load_ucr_split(args.train_file)
        if meta['scaler'] is not None:
            X_train = meta['scaler'].transform(X_train)
        train = (X_train, y_train)
    rng = np.random.default_rng(args.random_state)
    rows = rng.choice(X.shape[0], min(args.num_series, X.shape[0]), replace=False)

    errors = []
    for i in rows:
        out, missing = reconstruct(mps, basis, meta, X[i], y[i], args, rng, train)
        err = np.mean(np.abs(out[missing] - X[i][missing]))
        errors.append(err)
        print(f"Series {i} (class {y[i]}): mean absolute error {err:.4f}")
        if args.plot:
            fig, ax = plt.subplots(figsize=(8, 3))
            ax.plot(X[i], label='ground truth', color='black')
            ax.plot(missing, out[missing], 'o-', label=args.task, color='salmon', markersize=3)
            ax.set_title(f"Series {i}, class {y[i]}")
            ax.legend()
            plt.tight_layout()
            plt.show()
    print(f"Mean absolute error over {len(errors)} series: {np.mean(errors):.4f}")
    return errors

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Forecast or impute time series with a trained MPS')
    parser.add_argument('--model_path', type=str, required=True, help='MPS saved by train_timeseries.py')
    parser.add_argument('--data_file', type=str, required=True, help='UCR style file, label in the first column')
    parser.add_argument('--task', type=str, choices=['forecast', 'impute'], default='forecast')
    parser.add_argument('--horizon', type=int, default=10, help='Number of points to forecast')
    parser.add_argument('--missing_fraction', type=float, default=0.2, help='Fraction of points removed before imputing')
    parser.add_argument('--method', type=str, choices=['mode', 'mean', 'sample', 'nn'], default='mode',
                        help='MPS estimator, or nn for the nearest training series of the same class')
    parser.add_argument('--train_file', type=str, default=None, help='Training series for --method nn')
    parser.add_argument('--num_points', type=int, default=1000, help='Grid size of the per-site densities')
    parser.add_argument('--num_series', type=int, default=5)
    parser.add_argument('--random_state', type=int, default=None)
    parser.add_argument('--plot', action='store_true')
    main(parser.parse_args())
