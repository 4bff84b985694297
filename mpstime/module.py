import numpy as np
import torch
from sklearn.base import BaseEstimator, ClassifierMixin
from sklearn.metrics import accuracy_score
from mpstime.dataset import encode_states
from mpstime.metrics import predict_proba
from mpstime.network import MPS
from mpstime.sweep import SweepController, TrainingOptions, prepare_datasets

class EarlyStopping:
    """
    Sweep callback that stops training once a validation metric stops improving.

    Called with (sweep, row) after every sweep; returns True when training should stop. The
    weights of the best sweep are kept in best_state_dict.
    """
    def __init__(self, get_model_weights=None, split='valid', metric='acc', mode='max', abs_err=0.0, rel_err=0.0, early_stopping=5, verbose=0):
        if mode not in ('max', 'min'):
            raise ValueError(f"mode must be 'max' or 'min', got {mode}")
        self.get_model_weights = get_model_weights
        self.key = f'{split}_{metric}'
        self.sign = 1.0 if mode == 'max' else -1.0
        self.abs_err = abs_err
        self.rel_err = rel_err
        self.early_stopping = early_stopping
        self.verbose = verbose
        self.early_stop_count = 0
        self.best_score = -np.inf
        self.best_sweep = 0
        self.best_state_dict = None
        self.history = {}

    def __call__(self, sweep, row):
        value = row.get(self.key, np.nan)
        self.history[sweep] = value
        if np.isnan(value):
            return False
        score = self.sign * value

        # Measure improvement relative to previous best
        prev_best = self.best_score
        improvement = score - prev_best
        meets_abs = improvement >= self.abs_err
        meets_rel = improvement >= self.rel_err * abs(prev_best)

        if improvement > 0:
            self.best_score = score
            self.best_sweep = sweep
            if self.get_model_weights is not None:
                self.best_state_dict = self.get_model_weights()
            # Only reset patience if the improvement meets thresholds
            self.early_stop_count = 0 if (meets_abs or meets_rel) else self.early_stop_count + 1
        else:
            self.early_stop_count += 1

        if self.early_stopping > 0 and self.early_stop_count >= self.early_stopping:
            if self.verbose > 0:
                print(f"Converged at sweep {self.best_sweep} with best {self.key}: {self.sign * self.best_score:.4f}")
            return True
        return False

    def best_summary(self):
        return {
            "best_sweep": self.best_sweep,
            f"best_{self.key}": self.sign * self.best_score,
            "best_state_dict": self.best_state_dict,
        }

class MPSClassifier(BaseEstimator, ClassifierMixin):
    """scikit-learn wrapper around the sweep training of an MPS time-series classifier."""
    def __init__(self, nsweeps=5, chi_max=25, cutoff=1e-10, update_iters=10,
                 loss_grad='kld', optimizer='gd', eta=0.01, rescale=(False, True),
                 train_separate=False, mixing_alpha=5.0,
                 d=2, encoding='stoudenmire', project=False, aux_basis_dim=2,
                 chi_init=4, dtype=torch.complex128, random_state=None,
                 batch_size=-1, num_workers=1, exit_early=False,
                 balance_classes=False, sigmoid_transform=True,
                 early_stopping=0, verbose=0):
        self.nsweeps = nsweeps
        self.chi_max = chi_max
        self.cutoff = cutoff
        self.update_iters = update_iters
        self.loss_grad = loss_grad
        self.optimizer = optimizer
        self.eta = eta
        self.rescale = rescale
        self.train_separate = train_separate
        self.mixing_alpha = mixing_alpha
        self.d = d
        self.encoding = encoding
        self.project = project
        self.aux_basis_dim = aux_basis_dim
        self.chi_init = chi_init
        self.dtype = dtype
        self.random_state = random_state
        self.batch_size = batch_size
        self.num_workers = num_workers
        self.exit_early = exit_early
        self.balance_classes = balance_classes
        self.sigmoid_transform = sigmoid_transform
        self.early_stopping = early_stopping
        self.verbose = verbose

    def _options(self):
        params = self.get_params()
        params['verbosity'] = params.pop('verbose')
        return TrainingOptions.from_dict(params)

    def fit(self, X, y, X_val=None, y_val=None):
        options = self._options()
        datasets, self.scaler_ = prepare_datasets(X, y, X_val, y_val, options=options)
        train = datasets['train']
        self.classes_ = train.classes
        self.encoding_args_ = train.encoding_args
        self.basis_ = train.basis

        self._early_stopper = None
        if self.early_stopping > 0:
            if datasets['valid'] is None:
                raise ValueError("early_stopping needs a validation set")
            self._early_stopper = EarlyStopping(
                get_model_weights=lambda: self.controller_.mps.copy().state_dict(),
                early_stopping=self.early_stopping,
                verbose=self.verbose,
            )

        self.controller_ = SweepController(options, train, valid=datasets['valid'], sweep_callback=self._early_stopper)
        self.mps_, self.history_ = self.controller_.fit()

        # Load best weights
        if self._early_stopper is not None and self._early_stopper.best_state_dict is not None:
            self.mps_ = MPS.from_state_dict(self._early_stopper.best_state_dict).normalize()
        return self

    def _states(self, X):
        X = np.asarray(X, dtype=np.float64)
        if self.scaler_ is not None:
            X = self.scaler_.transform(X)
        return encode_states(X, self.basis_, self.d, self.dtype, self.encoding_args_)

    def predict_proba(self, X):
        return predict_proba(self.mps_, self._states(X)).numpy()

    def predict(self, X):
        return self.classes_[np.argmax(self.predict_proba(X), axis=1)]

    def score(self, X, y):
        return accuracy_score(y, self.predict(X))
