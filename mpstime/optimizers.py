import torch
from scipy.optimize import minimize

def realise(tensor):
    """Complex tensor -> real tensor with a leading axis of size 2 holding (real, imag). Real tensors pass through."""
    if not tensor.is_complex():
        return tensor
    return torch.stack([tensor.real, tensor.imag], dim=0)

def complexify(tensor, dtype=torch.complex128):
    """Inverse of realise."""
    if not dtype.is_complex:
        return tensor.to(dtype)
    return torch.complex(tensor[0], tensor[1]).to(dtype)

def rescale(tensor):
    return tensor / torch.linalg.vector_norm(tensor)

class BondOptimizer:
    """Improves a bond tensor against a (loss, grad) function of the bond tensor alone."""
    name = None

    def __call__(self, bt, objective, iters):
        raise NotImplementedError

class GradientDescent(BondOptimizer):
    """Plain gradient descent with a fixed learning rate, B <- B - eta * grad."""
    name = 'gd'

    def __init__(self, eta=0.01):
        self.eta = eta

    def __call__(self, bt, objective, iters):
        dtype = bt.dtype
        x = realise(bt)
        for _ in range(iters):
            _, grad = objective(complexify(x, dtype))
            x = x - self.eta * realise(grad)
        return complexify(x, dtype)

class ScipyOptimizer(BondOptimizer):
    """
    Hands the flattened real representation of the bond tensor to scipy.optimize.minimize.

    Methods: 'CG' (nonlinear conjugate gradient), 'BFGS' and 'L-BFGS-B'; all use scipy's own
    line search and stop after iters iterations.
    """
    def __init__(self, method='CG', name=None, gtol=1e-12):
        self.method = method
        self.name = name or method.lower()
        self.gtol = gtol

    def __call__(self, bt, objective, iters):
        dtype = bt.dtype
        shape = realise(bt).shape

        def fun(x):
            real = torch.tensor(x).reshape(shape)
            loss, grad = objective(complexify(real, dtype))
            return float(loss), realise(grad).reshape(-1).double().numpy()

        x0 = realise(bt).reshape(-1).double().numpy()
        result = minimize(fun, x0, jac=True, method=self.method, options={'maxiter': iters, 'gtol': self.gtol})
        return complexify(torch.tensor(result.x).reshape(shape), dtype)

OPTIMIZERS = {
    'gd': lambda eta: GradientDescent(eta),
    'cg': lambda eta: ScipyOptimizer('CG', name='cg'),
    'bfgs': lambda eta: ScipyOptimizer('BFGS', name='bfgs'),
    'lbfgs': lambda eta: ScipyOptimizer('L-BFGS-B', name='lbfgs'),
}

def get_optimizer(name, eta=0.01):
    if isinstance(name, BondOptimizer):
        return name
    if name not in OPTIMIZERS:
        raise ValueError(f"Unknown optimizer: {name}")
    return OPTIMIZERS[name](eta)

def optimize_bond(bt, objective, optimizer, iters, rescale_flags=(False, True)):
    """Runs one bond update with optional renormalisation before and after."""
    pre, post = rescale_flags
    if pre:
        bt = rescale(bt)
    bt = optimizer(bt, objective, iters)
    if post:
        bt = rescale(bt)
    return bt
