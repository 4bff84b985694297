import os
import argparse
import numpy as np
import torch
from sklearn.model_selection import train_test_split
from mpstime.sweep import SweepController, TrainingOptions, prepare_datasets
from mpstime.utils import plot_training_summary

DTYPES = {
    'complex128': torch.complex128,
    'complex64': torch.complex64,
    'float64': torch.float64,
    'float32': torch.float32,
}

# ---- UCR style data loader: one series per row, class label in the first column ----
def load_ucr_split(filename):
    data = np.loadtxt(filename, delimiter=',' if filename.endswith('.csv') else None)
    return data[:, 1:], data[:, 0].astype(int)

def load_ucr_data(train_file, test_file=None, valid_fraction=0.0, seed=None):
    X_train, y_train = load_ucr_split(train_file)
    X_test, y_test = load_ucr_split(test_file) if test_file else (None, None)
    X_val, y_val = None, None
    if valid_fraction > 0:
        X_train, X_val, y_train, y_val = train_test_split(X_train, y_train, test_size=valid_fraction, stratify=y_train, random_state=seed)
    return X_train, y_train, X_val, y_val, X_test, y_test

def train_model(args):
    X_train, y_train, X_val, y_val, X_test, y_test = load_ucr_data(args.train_file, args.test_file, args.valid_fraction, args.random_state)
    dataset_name = os.path.splitext(os.path.basename(args.train_file))[0].replace('_TRAIN', '')

    config = vars(args).copy()
    config['dataset_name'] = dataset_name
    config['dtype'] = DTYPES[args.dtype]
    options = TrainingOptions.from_dict(config)

    # WandB setup
    wandb_enabled = False
    if args.wandb_project:
        import wandb

        wandb.init(project=args.wandb_project, config={**vars(args), 'dataset_name': dataset_name}, entity=args.wandb_entity)
        wandb_enabled = True

    def log_sweep(sweep, row):
        if wandb_enabled:
            wandb.log({k.replace('_', '/', 1): v for k, v in row.items() if k != 'sweep'}, step=sweep)
        return False

    datasets, scaler = prepare_datasets(X_train, y_train, X_val, y_val, X_test, y_test, options)
    controller = SweepController(options, datasets['train'], datasets['valid'], datasets['test'], sweep_callback=log_sweep)
    mps, history = controller.fit()

    summary = history.summary('test' if X_test is not None else 'train')
    for k, v in summary.items():
        print(f"{k}: {v}")
    if wandb_enabled:
        wandb.log({f'summary/{k}': v for k, v in summary.items() if v is not None})
        wandb.finish()

    if args.save_path:
        mps.save(args.save_path)
        torch.save({
            'classes': datasets['train'].classes,
            'encoding': args.encoding,
            'd': args.d,
            'project': args.project,
            'aux_basis_dim': args.aux_basis_dim,
            'encoding_args': datasets['train'].encoding_args,
            'scaler': scaler,
        }, os.path.splitext(args.save_path)[0] + '_encoding.pt')
        print(f"Saved MPS to {args.save_path}")
    if args.plot:
        plot_training_summary(history)
    return mps, history

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='MPS sweep training for time-series classification')
    parser.add_argument('--train_file', type=str, required=True, help='UCR style file, label in the first column')
    parser.add_argument('--test_file', type=str, default=None, help='UCR style test file')
    parser.add_argument('--valid_fraction', type=float, default=0.0, help='Fraction of the training set held out for validation')
    parser.add_argument('--save_path', type=str, default=None, help='Where to save the trained MPS')
    parser.add_argument('--plot', action='store_true', help='Plot the training curves')
    parser.add_argument('--wandb_project', type=str, default=None, help='WandB project name')
    parser.add_argument('--wandb_entity', type=str, default=None, help='WandB entity name')

    # Sweep hyperparameters
    parser.add_argument('--nsweeps', type=int, default=5, help='Number of backward+forward sweeps')
    parser.add_argument('--chi_max', type=int, default=25, help='Maximum bond dimension')
    parser.add_argument('--chi_init', type=int, default=4, help='Initial bond dimension')
    parser.add_argument('--cutoff', type=float, default=1e-10, help='Discarded weight cutoff for SVD truncation')
    parser.add_argument('--update_iters', type=int, default=10, help='Optimizer iterations per bond')
    parser.add_argument('--loss_grad', type=str, nargs='+', default=['kld'], help='kld, mse or mixed; one value, or one per sweep')
    parser.add_argument('--optimizer', type=str, nargs='+', default=['gd'], help='gd, cg, bfgs or lbfgs; one value, or one per sweep')
    parser.add_argument('--eta', type=float, default=0.01, help='Gradient descent learning rate')
    parser.add_argument('--rescale', type=int, nargs=2, default=[0, 1], help='Renormalise the bond tensor before/after optimising')
    parser.add_argument('--train_separate', action='store_true', help='Weight every class equally in the loss')
    parser.add_argument('--mixing_alpha', type=float, default=5.0, help='MSE weight of the mixed loss')
    parser.add_argument('--batch_size', type=int, default=-1, help='Samples per gradient chunk (-1 for all)')
    parser.add_argument('--num_workers', type=int, default=1, help='Threads used for the gradient reduction')
    parser.add_argument('--exit_early', action='store_true', help='Stop once the training accuracy reaches 1')
    parser.add_argument('--track_cost', action='store_true', help='Record the mean bond loss of every sweep')
    parser.add_argument('--verbosity', type=int, default=1)
    parser.add_argument('--random_state', type=int, default=None)
    parser.add_argument('--dtype', type=str, choices=list(DTYPES), default='complex128')

    # Encoding
    parser.add_argument('--encoding', type=str, default='stoudenmire', help='Basis used to encode every time point')
    parser.add_argument('--d', type=int, default=2, help='Local dimension of the encoding')
    parser.add_argument('--project', action='store_true', help='Use the data driven (projected) version of the basis')
    parser.add_argument('--aux_basis_dim', type=int, default=2, help='Auxiliary dimension of split bases')
    parser.add_argument('--balance_classes', action='store_true', help='Fit data driven bases on a class balanced subsample')
    parser.add_argument('--no_sigmoid_transform', dest='sigmoid_transform', action='store_false', help='Data is already in the basis domain')

    args = parser.parse_args()
    args.loss_grad = args.loss_grad[0] if len(args.loss_grad) == 1 else args.loss_grad
    args.optimizer = args.optimizer[0] if len(args.optimizer) == 1 else args.optimizer
    args.rescale = tuple(bool(r) for r in args.rescale)
    train_model(args)
