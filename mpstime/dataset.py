import numpy as np
import torch
from mpstime.encodings import Basis, get_basis

SPLITS = ('train', 'valid', 'test')

class EncodedDataset:
    """
    A label-sorted collection of product states.

    states has shape (M, N, d): sample, site, local dimension. labels holds class indices
    (0..C-1) into classes, ids the row of each sample in the raw matrix it was encoded from.
    Samples are sorted by label, so every class occupies one contiguous range.
    """
    def __init__(self, states, labels, ids, split, classes, basis=None, encoding_args=None):
        self.states = states
        self.labels = labels
        self.ids = ids
        self.split = split
        self.classes = np.asarray(classes)
        self.basis = basis
        self.encoding_args = encoding_args

    def __len__(self):
        return self.states.shape[0]

    @property
    def num_sites(self):
        return self.states.shape[1]

    @property
    def d(self):
        return self.states.shape[2]

    @property
    def num_classes(self):
        return len(self.classes)

    @property
    def dtype(self):
        return self.states.dtype

    def class_distribution(self):
        """Returns [(class_index, start, stop)] for every class present, in label order."""
        counts = torch.bincount(self.labels, minlength=self.num_classes).tolist()
        ranges = []
        start = 0
        for c, n in enumerate(counts):
            if n > 0:
                ranges.append((c, start, start + n))
            start += n
        return ranges

    def class_counts(self):
        return {c: stop - start for c, start, stop in self.class_distribution()}

    def is_balanced(self):
        return len(set(self.class_counts().values())) <= 1

    def onehot(self):
        return torch.nn.functional.one_hot(self.labels, self.num_classes).to(self.dtype)

    def __getitem__(self, index):
        """Product state(s) of the given sample(s) with their labels."""
        return self.states[index], self.labels[index]

    def __repr__(self):
        return f"EncodedDataset(split={self.split}, samples={len(self)}, sites={self.num_sites}, d={self.d}, classes={self.num_classes})"

def balance_classes(X, y, random_state=None):
    """Subsamples every class down to the minority count and shuffles the result."""
    rng = np.random.default_rng(random_state)
    classes, counts = np.unique(y, return_counts=True)
    min_s = counts.min()
    rows = np.concatenate([rng.choice(np.flatnonzero(y == c), min_s, replace=False) for c in classes])
    rows = rng.permutation(rows)
    return X[rows], y[rows]

def encode_states(X, basis, d, dtype=torch.complex128, encoding_args=None):
    """Encodes an (M, N) matrix into an (M, N, d) tensor of product states, without labels."""
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"Expected a 2D data matrix, got shape {X.shape}")
    basis.check_domain(X)
    np_dtype = np.complex128 if dtype.is_complex else np.float64
    states = np.empty((X.shape[0], X.shape[1], d), dtype=np_dtype)
    for j in range(X.shape[1]):
        enc = basis.encode(X[:, j], d, j, encoding_args)
        states[:, j, :] = enc if dtype.is_complex else np.real(enc)
    return torch.from_numpy(states).to(dtype)

def encode_dataset(X, y, basis, d=2, split='train', dtype=torch.complex128, encoding_args=None, classes=None, balance=False, random_state=None, verbose=0):
    """
    Encodes every row of X into a product state.

    Args:
        X: (M, N) array of values already rescaled into the basis domain.
        y: (M,) integer labels.
        basis: Basis or name of a basis.
        encoding_args: data driven basis arguments. Computed from (X, y) when None and the basis
            has an initialiser, which is what the train split does; validation/test splits pass
            the train dataset's encoding_args.
        classes: label values, defaults to the sorted unique labels of y.
        balance: compute data driven arguments on a class-balanced subsample.
    """
    if split not in SPLITS:
        raise ValueError(f"Invalid dataset split {split}. Must be one of {SPLITS}.")
    if not isinstance(basis, Basis):
        basis = get_basis(basis)
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y)
    if X.ndim != 2:
        raise ValueError(f"Expected a 2D data matrix, got shape {X.shape}")
    if X.shape[0] != y.shape[0]:
        raise ValueError(f"Got {X.shape[0]} rows but {y.shape[0]} labels")
    if basis.is_complex and not dtype.is_complex:
        raise ValueError(f"{basis.name} encoding is complex valued but dtype is {dtype}")
    basis.validate_d(d)
    basis.check_domain(X)

    classes = np.unique(y) if classes is None else np.asarray(classes)
    unknown = np.setdiff1d(np.unique(y), classes)
    if len(unknown) > 0:
        raise ValueError(f"Labels {unknown.tolist()} are not among the known classes {classes.tolist()}")
    y_idx = np.searchsorted(classes, y)

    if verbose > 0:
        print(f"Initialising {split} states.")
        _, counts = np.unique(y_idx, return_counts=True)
        if len(set(counts.tolist())) > 1:
            print("Classes are not balanced:", dict(zip(classes.tolist(), counts.tolist())))

    if encoding_args is None and basis.init is not None:
        if balance:
            X_init, y_init = balance_classes(X, y_idx, random_state)
            if verbose > 0:
                print(f"Balancing encoding initialisation by cutting to {len(y_init) // len(np.unique(y_idx))} samples in each class")
        else:
            X_init, y_init = X, y_idx
        encoding_args = basis.init(X_init, y_init, d)

    states = encode_states(X, basis, d, dtype, encoding_args)

    order = np.argsort(y_idx, kind='stable')
    return EncodedDataset(
        states[torch.from_numpy(order)],
        torch.from_numpy(y_idx[order]).long(),
        torch.from_numpy(order),
        split,
        classes,
        basis=basis,
        encoding_args=encoding_args,
    )
