from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional
import numpy as np
from scipy.integrate import trapezoid
from scipy.special import eval_legendre
from scipy.stats import gaussian_kde

@dataclass(frozen=True)
class Basis:
    """
    A feature map taking scalar time-series values to local vectors of dimension d.

    encode_fn(x, d, site, args) maps a 1-D array of values to an array of shape (len(x), d).
    Time independent bases ignore site. Data driven bases compute args once over the training
    set with init(X, y, d) and read the per-site entry back at encoding time.
    """
    name: str
    encode_fn: Callable
    domain: tuple = (0.0, 1.0)
    is_complex: bool = False
    is_time_dependent: bool = False
    init: Optional[Callable] = None
    valid_d: Optional[Callable] = None

    def encode(self, x, d, site=None, args=None):
        x = np.asarray(x, dtype=np.float64)
        if self.is_time_dependent and site is None:
            raise ValueError(f"{self.name} encoding is time dependent and needs a site index")
        return self.encode_fn(x, d, site, args)

    def validate_d(self, d):
        if d < 1:
            raise ValueError(f"Local dimension must be positive, got {d}")
        if self.valid_d is not None and not self.valid_d(d):
            raise ValueError(f"{self.name} encoding does not support d = {d}")

    def check_domain(self, X):
        a, b = self.domain
        X = np.asarray(X)
        if not np.all((a <= X) & (X <= b)):
            raise ValueError(f"Data must be rescaled between {a} and {b} before a {self.name} encoding.")

def angle_encode(x, d, site=None, args=None, periods=1/4):
    """Stoudenmire angle encoding, d = 2."""
    s1 = np.exp(1j * np.pi * 3 * x / 2) * np.cos(2 * np.pi * periods * x)
    s2 = np.exp(-1j * np.pi * 3 * x / 2) * np.sin(2 * np.pi * periods * x)
    return np.stack([s1, s2], axis=-1)

def fourier_freqs(d):
    """Frequencies 0, 1, -1, 2, -2, ... so that a d-dim basis is a subset of the (d+1)-dim one."""
    freqs = [0]
    i = 1
    while len(freqs) < d:
        freqs.extend([i, -i])
        i += 1
    return np.array(freqs[:d])

def fourier_encode(x, d, site=None, args=None):
    freqs = fourier_freqs(d) if args is None else np.asarray(args[site])
    return np.exp(1j * np.pi * np.outer(x, freqs)) / np.sqrt(d)

def normalized_legendre(x, order):
    return np.sqrt((2 * order + 1) / 2) * eval_legendre(order, x)

def legendre_encode(x, d, site=None, args=None, norm=True):
    if args is None:
        orders = np.arange(d)
        dmax = d
    else:
        orders = np.asarray(args[site])
        dmax = max(int(orders.max()), 1)
    ls = np.stack([normalized_legendre(x, l) for l in orders], axis=-1)
    if norm:
        ls = ls / np.sqrt(normalized_legendre(1.0, dmax) * dmax)
    return ls

def sahand_encode(x, d, site=None, args=None):
    dx = 2 / d
    out = np.zeros((len(x), d), dtype=np.complex128)
    for i in range(1, d + 1):
        interval = np.ceil(i / 2)
        startx = (interval - 1) * dx
        inside = (startx <= x) & (x <= interval * dx)
        if i % 2 == 1:
            s = np.exp(1j * np.pi * 3 * x / 2 / dx) * np.cos(0.5 * np.pi * (x - startx) / dx)
        else:
            s = np.exp(-1j * np.pi * 3 * x / 2 / dx) * np.sin(0.5 * np.pi * (x - startx) / dx)
        out[:, i - 1] = np.where(inside, s, 0)
    return out

def uniform_encode(x, d, site=None, args=None):
    """Constant basis, only meant as the auxiliary basis of a split encoding."""
    return np.ones((len(x), d)) / d

def rect(x):
    # a point on a bin boundary gets 0.5 from both bins, keeping the encoding normalised
    return np.where(np.abs(x) == 0.5, 0.5, 1.0 * (np.abs(x) <= 0.5))

def uniform_split(samples, nbins, a, b):
    return np.linspace(a, b, nbins + 1)

def hist_split(samples, nbins, a, b):
    """Bin edges placed so every bin holds (roughly) the same number of samples."""
    ds = np.sort(np.asarray(samples, dtype=np.float64))
    npts = len(ds)
    bin_pts = int(round(npts / nbins))
    bins = np.full(nbins + 1, float(b))
    bins[0] = a
    if bin_pts == 0:
        print("Less than one data point per bin! Putting the extra bins at the upper bound")
        return bins
    j = 1
    for i in range(bin_pts, npts, bin_pts):
        if j == nbins:
            break
        bins[j] = (ds[i - 1] + ds[i]) / 2
        j += 1
    return bins

def split_init(X, y, d, splitter, aux_dim, domain):
    nbins = d // aux_dim
    return [splitter(X[:, j], nbins, *domain) for j in range(X.shape[1])]

def split_encode(x, d, site, args, aux, aux_dim):
    bins = args[site]
    widths = np.diff(bins)
    out = np.zeros((len(x), d), dtype=np.complex128 if aux.is_complex else np.float64)
    for i, width in enumerate(widths):
        if width <= 0:
            continue
        u = (x - bins[i]) / width
        select = rect(u - 0.5)
        mask = select != 0
        # only evaluate the auxiliary basis inside its own bin
        if mask.any():
            out[mask, i * aux_dim:(i + 1) * aux_dim] = select[mask, None] * aux.encode(u[mask], aux_dim)
    return out

def kde_wavefunction(xs, domain, max_samples, bandwidth=None):
    xs_samp = np.linspace(domain[0], domain[1], max_samples)
    kde = gaussian_kde(xs, bw_method=bandwidth)
    return np.sqrt(kde(xs_samp)), xs_samp

def series_expand(basis_fns, xs, ys, d):
    """Indices of the d basis functions with the largest overlap with ys, sampled on xs."""
    coeffs = np.array([trapezoid(ys * np.conj(f(xs)), xs) for f in basis_fns])
    return np.argsort(-np.abs(coeffs) ** 2, kind='stable')[:d]

def project_init(X, y, d, series='fourier', max_series_terms=None, max_samples=None, bandwidth=None, domain=(-1.0, 1.0)):
    """Per-site series terms chosen by projecting a kernel density wavefunction onto the basis."""
    if series == 'fourier':
        terms = fourier_freqs(max_series_terms or 10 * d)
        basis_fns = [partial(lambda x, n: np.exp(1j * np.pi * n * x), n=n) for n in terms]
        default = fourier_freqs(d)
    else:
        terms = np.arange(max_series_terms or 7 * d)
        basis_fns = [partial(normalized_legendre, order=n) for n in terms]
        default = np.arange(d)

    args = []
    for j in range(X.shape[1]):
        xs = X[:, j]
        if np.ptp(xs) == 0:
            # a constant column has no density to project
            args.append(default)
            continue
        wf, xs_samp = kde_wavefunction(xs, domain, max_samples or max(200, 2 * len(xs)), bandwidth)
        args.append(terms[series_expand(basis_fns, xs_samp, wf, d)])
    return args

BASES = {
    'stoudenmire': Basis('stoudenmire', angle_encode, domain=(0.0, 1.0), is_complex=True, valid_d=lambda d: d == 2),
    'fourier': Basis('fourier', fourier_encode, domain=(-1.0, 1.0), is_complex=True),
    'legendre': Basis('legendre', legendre_encode, domain=(-1.0, 1.0)),
    'legendre_no_norm': Basis('legendre_no_norm', partial(legendre_encode, norm=False), domain=(-1.0, 1.0)),
    'sahand': Basis('sahand', sahand_encode, domain=(0.0, 1.0), is_complex=True, valid_d=lambda d: d % 2 == 0),
    'uniform': Basis('uniform', uniform_encode, domain=(-1.0, 1.0)),
}
BASES['angle'] = BASES['stoudenmire']

SPLITTERS = {
    'histogram_split': hist_split,
    'uniform_split': uniform_split,
}

def get_basis(name, project=False, aux_basis='uniform', aux_dim=2, domain=None, **init_kwargs):
    """
    Looks up a basis by name.

    Args:
        name: one of BASES or SPLITTERS.
        project: data driven, time dependent variant of 'fourier', 'legendre' or 'legendre_no_norm'.
        aux_basis, aux_dim: auxiliary basis carried by every bin of a split basis.
        domain: overrides the domain of projected and split bases.
        init_kwargs: forwarded to the data driven initialiser.
    """
    name = name.lower()
    if name in SPLITTERS:
        aux = get_basis(aux_basis)
        if aux.init is not None:
            raise ValueError("The auxiliary basis of a split encoding cannot be data driven")
        domain = domain or (-1.0, 1.0)
        return Basis(
            f'{name}({aux.name})',
            partial(split_encode, aux=aux, aux_dim=aux_dim),
            domain=domain,
            is_complex=aux.is_complex,
            is_time_dependent=True,
            init=partial(split_init, splitter=SPLITTERS[name], aux_dim=aux_dim, domain=domain),
            valid_d=lambda d: d % aux_dim == 0 and (aux.valid_d is None or aux.valid_d(aux_dim)),
        )
    if name not in BASES:
        raise ValueError(f"Unknown basis: {name}")
    basis = BASES[name]
    if not project:
        return basis
    if name not in ('fourier', 'legendre', 'legendre_no_norm'):
        raise ValueError(f"{name} encoding has no projected variant")
    domain = domain or basis.domain
    series = 'fourier' if name == 'fourier' else 'legendre'
    return Basis(
        f'{name}(projected)',
        basis.encode_fn,
        domain=domain,
        is_complex=basis.is_complex,
        is_time_dependent=True,
        init=partial(project_init, series=series, domain=domain, **init_kwargs),
    )
