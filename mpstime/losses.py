import torch
from torch import nn
from mpstime.network import LABEL, SAMPLE_DIM

class LossFunction(nn.Module):
    """
    A per-sample loss of the network output yhat (shape (s, c)) against class labels.

    forward returns the real per-sample loss and d_loss, a tensor shaped like yhat such that the
    gradient of the loss with respect to a bond tensor B (with yhat = B . phi) is
    sum_s d_loss[s, c] * conj(phi[s]), i.e. twice the Wirtinger derivative. Mapping that
    gradient through realise() gives the exact gradient with respect to the real and imaginary
    parts of B.
    """
    name = None

    def forward(self, yhat, labels):
        raise NotImplementedError

class MSELoss(LossFunction):
    name = 'mse'

    def forward(self, yhat, labels):
        y = nn.functional.one_hot(labels, yhat.shape[-1]).to(yhat.dtype)
        diff = yhat - y
        loss = 0.5 * diff.abs().pow(2).sum(dim=-1)
        return loss, diff

class KLDLoss(LossFunction):
    """
    -log |f|^2, with f the overlap with the true class.

    d_loss is -2 / conj(f), the exact gradient of this loss. The Stoudenmire-style update
    -conj(phi / f) is half of it. To reproduce a run tuned for that update, halve eta and
    double the MixedLoss alpha.
    """
    name = 'kld'

    def forward(self, yhat, labels):
        f = yhat.gather(1, labels.unsqueeze(1)).squeeze(1)
        prob = f.abs().pow(2)
        floor = torch.finfo(prob.dtype).tiny
        # overlaps below the floor are lifted onto it instead of dividing by zero
        small = prob < floor
        f = torch.where(small, torch.full_like(f, floor ** 0.5), f)
        loss = -torch.log(prob.clamp_min(floor))
        d_loss = torch.zeros_like(yhat)
        d_loss.scatter_(1, labels.unsqueeze(1), (-2 / f.conj()).unsqueeze(1))
        return loss, d_loss

class MixedLoss(LossFunction):
    """KLD + alpha * MSE."""
    name = 'mixed'

    def __init__(self, alpha=5.0):
        super().__init__()
        self.alpha = alpha
        self.kld = KLDLoss()
        self.mse = MSELoss()

    def forward(self, yhat, labels):
        kld_loss, kld_d = self.kld(yhat, labels)
        mse_loss, mse_d = self.mse(yhat, labels)
        return kld_loss + self.alpha * mse_loss, kld_d + self.alpha * mse_d

LOSSES = {
    'mse': MSELoss,
    'kld': KLDLoss,
    'mixed': MixedLoss,
}

def get_loss(name, alpha=5.0):
    if isinstance(name, LossFunction):
        return name
    if name not in LOSSES:
        raise ValueError(f"Unknown loss: {name}")
    return MixedLoss(alpha) if name == 'mixed' else LOSSES[name]()

def phi_tilde(cache, j):
    """
    Projected product states seen by the bond (j, j+1).

    Outer product of conj(phi_j), conj(phi_{j+1}) and the left/right environments, batched over
    the samples. Labels: 's' plus every non-label index of the bond tensor.
    """
    phi = cache.state_node(j).contract_with(cache.state_node(j + 1), [])
    left, right = cache.left_env(j), cache.right_env(j + 1)
    if left is not None:
        phi = phi.contract_with(left, [])
    if right is not None:
        phi = phi.contract_with(right, [])
    return phi

class BondObjective:
    """
    Loss and gradient of one bond tensor over an encoded dataset.

    The batch reduction is a chunked sum, so chunks can be evaluated by any number of workers
    and combined in any order. In merged mode every sample is weighted 1/M. In separated mode
    each class is weighted by the inverse of its own count and the result is averaged over the
    classes, so both modes coincide on a balanced dataset.
    """
    def __init__(self, loss_fn, phi, bt_labels, labels, class_ranges, separate=False, batch_size=-1, executor=None):
        self.loss_fn = loss_fn
        self.bt_labels = list(bt_labels)
        if self.bt_labels[-1] != LABEL:
            raise ValueError(f"Bond tensor labels must end with the class label, got {self.bt_labels}")
        self.phi = phi.relabel({}).permute(SAMPLE_DIM, *self.bt_labels[:-1]).tensor
        self.labels = labels
        self.class_ranges = class_ranges
        self.separate = separate
        self.batch_size = batch_size
        self.executor = executor

    def yhat(self, bt, start=0, stop=None):
        return torch.einsum('s...,...c->sc', self.phi[start:stop], bt)

    def _chunk(self, bt, start, stop):
        yhat = self.yhat(bt, start, stop)
        loss, d_loss = self.loss_fn(yhat, self.labels[start:stop])
        grad = torch.einsum('sc,s...->...c', d_loss, self.phi[start:stop].conj())
        return loss.sum(), grad

    def _reduce(self, bt, start, stop):
        size = stop - start
        batch_size = size if self.batch_size <= 0 else self.batch_size
        chunks = [(b, min(b + batch_size, stop)) for b in range(start, stop, batch_size)]
        fn = lambda chunk: self._chunk(bt, *chunk)
        results = self.executor.map(fn, chunks) if self.executor is not None else map(fn, chunks)
        loss, grad = None, None
        for chunk_loss, chunk_grad in results:
            loss = chunk_loss if loss is None else loss + chunk_loss
            grad = chunk_grad if grad is None else grad + chunk_grad
        return loss, grad

    def class_contributions(self, bt):
        """Weighted (class, loss, gradient) terms whose sum is the objective."""
        total = sum(stop - start for _, start, stop in self.class_ranges)
        contributions = []
        for c, start, stop in self.class_ranges:
            loss, grad = self._reduce(bt, start, stop)
            weight = 1.0 / ((stop - start) * len(self.class_ranges)) if self.separate else 1.0 / total
            contributions.append((c, loss * weight, grad * weight))
        return contributions

    def __call__(self, bt):
        """Returns (real scalar loss, gradient shaped like bt)."""
        if self.separate:
            contributions = self.class_contributions(bt)
            loss = sum(l for _, l, _ in contributions)
            grad = sum(g for _, _, g in contributions)
        else:
            start = self.class_ranges[0][1]
            stop = self.class_ranges[-1][2]
            loss, grad = self._reduce(bt, start, stop)
            loss, grad = loss / (stop - start), grad / (stop - start)
        return loss, grad
