import numpy as np
import torch
from scipy.integrate import cumulative_trapezoid, trapezoid
from mpstime.network import MPS
from mpstime.node import TensorNode

class DomainError(ValueError):
    """A reduced density matrix could not be corrected into a valid state."""

def encode_value(x, basis, d, site, args, dtype):
    enc = basis.encode(np.atleast_1d(x), d, site, args)[0]
    return torch.tensor(enc if dtype.is_complex else np.real(enc), dtype=dtype)

def rho_correct(rho, eigentol=None):
    """
    Clamps small negative eigenvalues of a density matrix.

    Eigenvalues below zero but within eigentol * max eigenvalue are lifted to that tolerance.
    Anything more negative, or a reconstruction that moves rho by more than the clamping can
    account for, raises DomainError.
    """
    eigvals, eigvecs = torch.linalg.eigh(rho)
    if eigentol is None:
        eigentol = torch.finfo(eigvals.dtype).eps
    rel_eigentol = eigvals.max().item() * eigentol
    if not (eigvals < 0).any():
        return rho
    out_of_tolerance = eigvals[eigvals < -rel_eigentol]
    if len(out_of_tolerance) > 0:
        raise DomainError(f"RDM contains large negative eigenvalues outside of the tolerance {rel_eigentol}: {out_of_tolerance.tolist()}")
    clamped = eigvals.clamp_min(rel_eigentol)
    rho_corrected = eigvecs @ torch.diag(clamped).to(eigvecs.dtype) @ eigvecs.conj().T
    delta_norm = torch.linalg.matrix_norm(rho - rho_corrected, 2).item()
    recontol = 2 * len(eigvals) * rel_eigentol + torch.finfo(eigvals.dtype).eps * rho.abs().max().item()
    if delta_norm > recontol:
        raise DomainError(f"RDM reconstruction error larger than tolerance {recontol}: {delta_norm}")
    return rho_corrected

def reduced_density_matrix(node, physical, correct=True):
    """rho[p, p'] = sum A[p, ...] conj(A[p', ...]) over every other index, normalised to unit trace."""
    bra = node.get_transposed_node(exclude={l for l in node.dim_labels if l != physical})
    rho = node.contract_with(bra).permute(physical, f'_{physical}').tensor
    rho = rho / torch.trace(rho).real
    return rho_correct(rho) if correct else rho

def one_site_rdm(mps, site):
    mps = mps.copy().orthogonalize(site)
    return reduced_density_matrix(mps[site], mps.physical_label(site))

def single_site_entropy(mps):
    """Von Neumann entropy of every one-site reduced density matrix."""
    entropy = np.zeros(len(mps))
    for i in range(len(mps)):
        eigvals = torch.linalg.eigvalsh(one_site_rdm(mps, i))
        eigvals = eigvals[eigvals > 0]
        entropy[i] = -(eigvals * torch.log(eigvals)).sum().item()
    return entropy

def von_neumann_entropy(mps):
    """Bipartite entanglement entropy across every bond."""
    entropy = np.zeros(len(mps) - 1)
    for j in range(len(mps) - 1):
        copy = mps.copy().orthogonalize(j)
        node = copy[j].copy()
        bond = copy.bond_label(j)
        matrix, _, _, _ = node.matricize([l for l in node.dim_labels if l != bond])
        s = torch.linalg.svdvals(matrix)
        p = s.pow(2) / s.pow(2).sum()
        p = p[p > 0]
        entropy[j] = -(p * torch.log(p)).sum().item()
    return entropy

def site_pdf(rho, grid, basis, d, site, args=None):
    """Unnormalised density p(x) = phi(x)^H rho phi(x) on a grid of values."""
    phi = basis.encode(grid, d, site, args)
    phi = torch.tensor(phi if rho.is_complex() else np.real(phi), dtype=rho.dtype)
    return torch.einsum('gi,ij,gj->g', phi.conj(), rho, phi).real.clamp_min(0).numpy()

def choose_value(pdf, grid, method='mode', rng=None):
    """Picks a value from a density on a grid: its mode, its mean or an inverse-transform sample."""
    if method == 'mode':
        return grid[np.argmax(pdf)]
    if method == 'mean':
        return trapezoid(grid * pdf, grid) / trapezoid(pdf, grid)
    if method == 'sample':
        rng = rng if rng is not None else np.random.default_rng()
        cdf = cumulative_trapezoid(pdf, grid, initial=0)
        cdf = cdf / cdf[-1]
        return np.interp(rng.uniform(), cdf, grid)
    raise ValueError(f"Unknown estimator: {method}")

def condition_on(mps, known, basis, d, args=None):
    """
    Projects known sites of a label-free MPS onto their encoded values.

    Every known site is contracted with conj(phi(x)) and the resulting matrices are absorbed into
    the next unknown site (or the previous one at the right edge). Returns the normalised
    chain over the unknown sites and the list of their original site indices, or (None, [])
    if every site is known.
    """
    if mps.label_site() is not None:
        raise ValueError("Slice the MPS to a single class before conditioning")
    nodes, sites = [], []
    pending = None
    for j in range(len(mps)):
        node = mps[j].copy()
        if j in known:
            phi = TensorNode(encode_value(known[j], basis, d, j, args, mps.dtype).conj(), [mps.physical_label(j)])
            m = node.contract_with(phi)
            pending = m if pending is None else pending.contract_with(m)
        else:
            if pending is not None:
                node = pending.contract_with(node)
                pending = None
            nodes.append(node)
            sites.append(j)
    if not nodes:
        return None, []
    if pending is not None:
        nodes[-1] = nodes[-1].contract_with(pending)
    return MPS(nodes, label=mps.label).normalize(), sites

def sample_sequential(mps, sites, basis, d, args=None, method='sample', num_points=1000, rng=None):
    """
    Draws values site by site from a normalised, label-free MPS.

    Each site's value is taken from the density of its reduced density matrix given every value
    chosen so far, then the site is measured and the remainder renormalised.
    """
    grid = np.linspace(basis.domain[0], basis.domain[1], num_points)
    mps = mps.copy().orthogonalize(0)
    A = mps[0]
    values = []
    for k in range(len(mps)):
        physical = mps.physical_label(k)
        # the last rdm is rank one; site_pdf clamps the density at zero
        rho = reduced_density_matrix(A, physical, correct=False)
        x = choose_value(site_pdf(rho, grid, basis, d, sites[k], args), grid, method, rng)
        values.append(x)
        if k < len(mps) - 1:
            phi = TensorNode(encode_value(x, basis, d, sites[k], args, mps.dtype).conj(), [physical])
            A = A.contract_with(phi).contract_with(mps[k + 1])
            A.tensor = A.tensor / A.norm()
    return np.array(values)

def sample_mps(class_mps, basis, d, args=None, num_points=1000, random_state=None):
    """Draws one time series from a class-sliced MPS."""
    rng = np.random.default_rng(random_state)
    return sample_sequential(class_mps, list(range(len(class_mps))), basis, d, args, 'sample', num_points, rng)

def impute(class_mps, series, basis, d, args=None, method='mode', num_points=1000, random_state=None):
    """
    Fills the NaN entries of a (rescaled) series from a class-sliced MPS.

    The known values are conditioned on first, then the missing sites are filled in order with
    the chosen estimator ('mode', 'mean' or 'sample').
    """
    series = np.asarray(series, dtype=np.float64)
    if len(series) != len(class_mps):
        raise ValueError(f"Series has {len(series)} points but the MPS has {len(class_mps)} sites")
    known = {j: x for j, x in enumerate(series) if not np.isnan(x)}
    basis.check_domain(list(known.values()))
    reduced, sites = condition_on(class_mps, known, basis, d, args)
    filled = series.copy()
    if reduced is None:
        return filled
    rng = np.random.default_rng(random_state)
    filled[sites] = sample_sequential(reduced, sites, basis, d, args, method, num_points, rng)
    return filled

def forecast(class_mps, known_values, basis, d, args=None, method='mode', num_points=1000, random_state=None):
    """Forecasts every site after the known prefix. Returns the full series."""
    known_values = np.asarray(known_values, dtype=np.float64)
    series = np.full(len(class_mps), np.nan)
    series[:len(known_values)] = known_values
    return impute(class_mps, series, basis, d, args, method, num_points, random_state)

def nearest_neighbour_impute(X_train, y_train, series, label, n_ts=1):
    """
    Baseline for impute and forecast: fills the NaN entries of series from the training series
    of the same class closest to it (mean squared error over the known sites).

    With n_ts > 1 the missing values are the average of the n_ts nearest series.
    """
    X_train = np.asarray(X_train, dtype=np.float64)
    y_train = np.asarray(y_train)
    series = np.asarray(series, dtype=np.float64)
    if X_train.ndim != 2 or X_train.shape[1] != len(series):
        raise ValueError(f"Training series have shape {X_train.shape}, expected (M, {len(series)})")
    candidates = X_train[y_train == label]
    if len(candidates) < n_ts:
        raise ValueError(f"Class {label} has {len(candidates)} training series, need at least {n_ts}")
    known = ~np.isnan(series)
    mses = np.mean((candidates[:, known] - series[known]) ** 2, axis=1)
    nearest = candidates[np.argsort(mses, kind='stable')[:n_ts]]
    filled = series.copy()
    filled[~known] = nearest[:, ~known].mean(axis=0)
    return filled
