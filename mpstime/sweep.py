import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, fields
from typing import Optional, Sequence, Union
import numpy as np
import torch
from tqdm.auto import tqdm
from mpstime.cache import EnvironmentCache
from mpstime.dataset import encode_dataset
from mpstime.encodings import get_basis
from mpstime.losses import BondObjective, get_loss, phi_tilde
from mpstime.metrics import TrainingHistory
from mpstime.network import LABEL, random_mps, split_bond
from mpstime.node import TensorNode
from mpstime.optimizers import get_optimizer, optimize_bond
from mpstime.preprocessing import RobustSigmoidTransform

DTYPES = (torch.complex128, torch.complex64, torch.float64, torch.float32)

@dataclass(frozen=True)
class TrainingOptions:
    """Hyperparameters of a training run. Validated on construction, read-only afterwards."""

    nsweeps: int = 5
    """Number of backward+forward sweep pairs."""
    chi_max: int = 25
    """Maximum bond dimension kept after every SVD."""
    cutoff: float = 1e-10
    """Maximum relative squared singular-value weight discarded by a truncation."""
    update_iters: int = 10
    """Optimizer iterations per bond."""
    verbosity: int = 1
    dtype: torch.dtype = torch.complex128
    loss_grad: Union[str, Sequence[str]] = 'kld'
    """'kld', 'mse' or 'mixed', or one entry per sweep."""
    optimizer: Union[str, Sequence[str]] = 'gd'
    """'gd', 'cg', 'bfgs' or 'lbfgs', or one entry per sweep."""
    eta: float = 0.01
    rescale: tuple = (False, True)
    """Renormalise the bond tensor (before, after) the optimizer runs."""
    train_separate: bool = False
    mixing_alpha: float = 5.0
    d: int = 2
    encoding: str = 'stoudenmire'
    project: bool = False
    aux_basis_dim: int = 2
    chi_init: int = 4
    random_state: Optional[int] = None
    batch_size: int = -1
    num_workers: int = 1
    exit_early: bool = False
    track_cost: bool = False
    balance_classes: bool = False
    sigmoid_transform: bool = True

    def __post_init__(self):
        if not isinstance(self.loss_grad, str):
            object.__setattr__(self, 'loss_grad', tuple(self.loss_grad))
        if not isinstance(self.optimizer, str):
            object.__setattr__(self, 'optimizer', tuple(self.optimizer))
        object.__setattr__(self, 'rescale', tuple(self.rescale))

        if self.nsweeps < 0:
            raise ValueError(f"nsweeps must be non-negative, got {self.nsweeps}")
        if self.chi_max < 1 or self.chi_init < 1:
            raise ValueError("Bond dimensions must be at least 1")
        if self.update_iters < 1:
            raise ValueError(f"update_iters must be positive, got {self.update_iters}")
        if self.dtype not in DTYPES:
            raise ValueError(f"Unsupported dtype: {self.dtype}")
        if len(self.rescale) != 2:
            raise ValueError(f"rescale must be a (pre, post) pair, got {self.rescale}")
        for name in ('loss_grad', 'optimizer'):
            value = getattr(self, name)
            if not isinstance(value, str) and len(value) != self.nsweeps:
                raise ValueError(f"Got {len(value)} {name} entries for {self.nsweeps} sweeps")
        for name in ([self.loss_grad] if isinstance(self.loss_grad, str) else self.loss_grad):
            get_loss(name, self.mixing_alpha)
        for name in ([self.optimizer] if isinstance(self.optimizer, str) else self.optimizer):
            get_optimizer(name, self.eta)
        basis = self.basis()
        basis.validate_d(self.d)
        if basis.is_complex and not self.dtype.is_complex:
            raise ValueError(f"{basis.name} encoding is complex valued but dtype is {self.dtype}")

    def loss_for_sweep(self, i):
        return self.loss_grad if isinstance(self.loss_grad, str) else self.loss_grad[i]

    def optimizer_for_sweep(self, i):
        return self.optimizer if isinstance(self.optimizer, str) else self.optimizer[i]

    def basis(self):
        return get_basis(self.encoding, project=self.project, aux_dim=self.aux_basis_dim)

    @classmethod
    def from_dict(cls, params):
        """Builds options from a dict (or argparse namespace), ignoring unknown keys."""
        params = vars(params) if not isinstance(params, dict) else params
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in params.items() if k in names and v is not None})

class SweepController:
    """
    Runs the sweep training of an MPS classifier.

    Each sweep optimises every bond from right to left, rebuilds the right environments, then
    optimises every bond from left to right and rebuilds the left environments. The label
    index travels with the orthogonality center.
    """
    def __init__(self, options, train, valid=None, test=None, mps=None, loss_callback=None, sweep_callback=None):
        self.options = options
        self.train = train
        self.valid = valid
        self.test = test
        self.mps = mps
        self.loss_callback = loss_callback
        self.sweep_callback = sweep_callback
        self.history = TrainingHistory()
        self.cache = None
        self.executor = None
        self.state = 'idle'
        self.sweep_costs = []

    @property
    def datasets(self):
        return {'train': self.train, 'valid': self.valid, 'test': self.test}

    def initialize(self):
        opts = self.options
        num_classes = self.train.num_classes
        for split, dataset in self.datasets.items():
            if dataset is not None and (dataset.num_sites != self.train.num_sites or dataset.d != self.train.d):
                raise ValueError(f"{split} states do not match the training states")
        if self.mps is None:
            self.mps = random_mps(self.train.num_sites, self.train.d, opts.chi_init, num_classes, dtype=opts.dtype, random_state=opts.random_state)
        else:
            if len(self.mps) != self.train.num_sites:
                raise ValueError(f"MPS has {len(self.mps)} sites but the data has {self.train.num_sites}")
            if self.mps.label_site() != len(self.mps) - 1:
                raise ValueError("Starting MPS must carry the label index on its last site")
            if self.mps.num_classes() != num_classes:
                raise ValueError(f"Number of classes in the training data ({num_classes}) doesn't match the dimension of the label index ({self.mps.num_classes()})")
            self.mps = self.mps.copy()
            self.mps.center = None
            for node in self.mps.nodes:
                node.to(dtype=opts.dtype)
        if self.train.dtype != opts.dtype:
            raise ValueError(f"Training states have dtype {self.train.dtype}, expected {opts.dtype}")

        self.mps.orthogonalize(len(self.mps) - 1)
        self.mps.normalize()
        self.cache = EnvironmentCache(self.mps, self.train).build('left')

        row = self.history.record(0, self.mps, self.datasets, time_taken=0.0)
        if opts.verbosity > 0:
            self._print_row(row)
        self.state = 'initialized'
        return self

    def update_bond(self, j, going_left, loss_fn, optimizer):
        """Optimises the bond (j, j+1), splits it, patches the cache and writes both sites back."""
        opts = self.options
        bt = self.mps.bond_tensor(j).permute_last(LABEL)
        objective = BondObjective(
            loss_fn,
            phi_tilde(self.cache, j),
            bt.dim_labels,
            self.train.labels,
            self.train.class_distribution(),
            separate=opts.train_separate,
            batch_size=opts.batch_size,
            executor=self.executor,
        )
        new_bt = optimize_bond(bt.tensor, objective, optimizer, opts.update_iters, opts.rescale)

        cost = None
        if opts.track_cost or self.loss_callback is not None or opts.verbosity > 1:
            cost = objective(new_bt)[0].item()
            self.sweep_costs.append(cost)
            if opts.verbosity > 1:
                print(f"Bond {j} ({'left' if going_left else 'right'}): loss {cost:.6f}")
            if self.loss_callback is not None:
                self.loss_callback(len(self.history), j, cost)

        left, right, _ = split_bond(TensorNode(new_bt, bt.dim_labels), j, going_left, opts.chi_max, opts.cutoff)
        self.cache.update(left, right, j, going_left)
        self.mps.nodes[j] = left
        self.mps.nodes[j + 1] = right
        self.mps.center = j if going_left else j + 1
        return cost

    def sweep(self, sweep_index):
        opts = self.options
        loss_fn = get_loss(opts.loss_for_sweep(sweep_index), opts.mixing_alpha)
        optimizer = get_optimizer(opts.optimizer_for_sweep(sweep_index), opts.eta)
        n = len(self.mps)
        disable_tqdm = opts.verbosity < 2

        self.state = 'sweeping_backward'
        for j in tqdm(range(n - 2, -1, -1), desc=f"Sweep {sweep_index + 1} backward", disable=disable_tqdm):
            self.update_bond(j, True, loss_fn, optimizer)
        self.cache.build('right')

        self.state = 'sweeping_forward'
        for j in tqdm(range(n - 1), desc=f"Sweep {sweep_index + 1} forward", disable=disable_tqdm):
            self.update_bond(j, False, loss_fn, optimizer)
        self.cache.build('left')

    def fit(self):
        """Runs the configured number of sweeps. Returns (mps, history)."""
        opts = self.options
        pool = ThreadPoolExecutor(max_workers=opts.num_workers) if opts.num_workers > 1 else nullcontext()
        with pool as executor:
            self.executor = executor
            if self.state == 'idle':
                self.initialize()
            for i in range(opts.nsweeps):
                start = time.time()
                self.sweep_costs = []
                self.sweep(i)
                cost = float(np.mean(self.sweep_costs)) if opts.track_cost and self.sweep_costs else None
                row = self.history.record(i + 1, self.mps, self.datasets, time_taken=time.time() - start, loss=cost)
                if opts.verbosity > 0:
                    self._print_row(row)
                if self.sweep_callback is not None and self.sweep_callback(i + 1, row):
                    if opts.verbosity > 0:
                        print(f"Stopping after sweep {i + 1}")
                    break
                if opts.exit_early and row['train_acc'] == 1.0:
                    if opts.verbosity > 0:
                        print(f"Training accuracy reached 1.0 after sweep {i + 1}, stopping early")
                    break
            self.executor = None

        self.mps.normalize()
        row = self.history.record(len(self.history), self.mps, self.datasets, time_taken=0.0)
        if opts.verbosity > 0:
            print("Final network:")
            self._print_row(row)
        self.state = 'finished'
        return self.mps, self.history

    @staticmethod
    def _print_row(row):
        print(", ".join([f"{k}: {v:.4f}" if isinstance(v, float) else f"{k}: {v}" for k, v in row.items() if v is not None]))

def prepare_datasets(X_train, y_train, X_valid=None, y_valid=None, X_test=None, y_test=None, options=None):
    """
    Rescales and encodes the raw splits.

    With options.sigmoid_transform the data is first squashed into the basis domain with a
    RobustSigmoidTransform fitted on the training split; otherwise it must already lie in the
    basis domain. Validation and test splits reuse the training split's encoding arguments.

    Returns:
        (datasets, scaler) where datasets maps 'train', 'valid', 'test' to EncodedDatasets (or None).
    """
    options = options or TrainingOptions()
    basis = options.basis()

    splits = {'train': (X_train, y_train), 'valid': (X_valid, y_valid), 'test': (X_test, y_test)}
    scaler = None
    if options.sigmoid_transform:
        scaler = RobustSigmoidTransform(positive=basis.domain[0] >= 0).fit(X_train)
        splits = {k: (scaler.transform(X) if X is not None else None, y) for k, (X, y) in splits.items()}

    train = encode_dataset(*splits['train'], basis, d=options.d, split='train', dtype=options.dtype,
                           balance=options.balance_classes, random_state=options.random_state, verbose=options.verbosity)
    datasets = {'train': train}
    for split in ('valid', 'test'):
        X, y = splits[split]
        datasets[split] = None if X is None else encode_dataset(
            X, y, basis, d=options.d, split=split, dtype=options.dtype,
            encoding_args=train.encoding_args, classes=train.classes, verbose=options.verbosity)
    return datasets, scaler

def fit_mps(X_train, y_train, X_valid=None, y_valid=None, X_test=None, y_test=None, options=None, init_mps=None, loss_callback=None, sweep_callback=None, **kwargs):
    """
    Trains an MPS classifier on raw time series (rows are samples, columns time points).

    Returns:
        (mps, history, datasets) where datasets maps split names to EncodedDatasets.
    """
    options = options or TrainingOptions(**kwargs)
    datasets, _ = prepare_datasets(X_train, y_train, X_valid, y_valid, X_test, y_test, options)
    controller = SweepController(options, datasets['train'], datasets['valid'], datasets['test'], mps=init_mps,
                                 loss_callback=loss_callback, sweep_callback=sweep_callback)
    mps, history = controller.fit()
    return mps, history, datasets
