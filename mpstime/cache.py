from mpstime.node import TensorNode
from mpstime.network import LABEL, SAMPLE_DIM

class EnvironmentCache:
    """
    Left and right environments of an MPS against every sample of an EncodedDataset.

    left_stacks[j] is the contraction of sites 0..j with conj(phi) of each sample, labels
    ['s', <right bond of j>]. right_stacks[j] mirrors it for sites j..N-1. Only the entries on
    the side already swept over are valid; the rest are None until the next build.
    """
    def __init__(self, mps, dataset):
        if dataset.num_sites != len(mps):
            raise ValueError(f"Dataset has {dataset.num_sites} sites but the MPS has {len(mps)}")
        self.mps = mps
        self.dataset = dataset
        self.left_stacks = [None] * len(mps)
        self.right_stacks = [None] * len(mps)

    def state_node(self, j):
        """conj(phi_j) for every sample."""
        return TensorNode(self.dataset.states[:, j, :].conj(), [SAMPLE_DIM, self.mps.physical_label(j)])

    def _fold(self, stack, node, j):
        """Extends an environment by one site."""
        contracted = node if stack is None else stack.contract_with(node, [l for l in stack.dim_labels if l != SAMPLE_DIM])
        physical = self.mps.physical_label(j)
        if not contracted.has_label(physical):
            raise ValueError(f"{node} does not carry the physical label {physical}")
        return contracted.contract_with(self.state_node(j), [physical]).permute_first(SAMPLE_DIM)

    def build(self, direction='left'):
        """
        Builds the environments needed to sweep in the given direction from scratch.

        Going left the sweep starts at the right end, so every left environment up to (not
        including) the last site is needed and right environments are reset. Going right is
        the mirror image.
        """
        n = len(self.mps)
        self.left_stacks = [None] * n
        self.right_stacks = [None] * n
        if direction not in ('left', 'right'):
            raise ValueError(f"Unknown sweep direction: {direction}")
        folded = range(n - 1) if direction == 'left' else range(n - 1, 0, -1)
        carrier = next((j for j in folded if self.mps[j].has_label(LABEL)), None)
        if carrier is not None:
            edge = 'last' if direction == 'left' else 'first'
            raise ValueError(f"build('{direction}') needs the label on the {edge} site, found it on site {carrier}")
        for j in folded:
            if direction == 'left':
                self.left_stacks[j] = self._fold(self.left_env(j), self.mps[j], j)
            else:
                self.right_stacks[j] = self._fold(self.right_env(j), self.mps[j], j)
        return self

    def update(self, left_node, right_node, bond, going_left):
        """
        Patches the environment next to a freshly optimised bond (bond, bond+1).

        Going left the new right site is folded into right_stacks[bond+1]; going right the new
        left site is folded into left_stacks[bond]. Nodes are passed explicitly so the cache can
        be patched before or after they are written into the MPS.
        """
        if going_left:
            j = bond + 1
            self.right_stacks[j] = self._fold(self.right_env(j), right_node, j)
        else:
            j = bond
            self.left_stacks[j] = self._fold(self.left_env(j), left_node, j)

    def left_env(self, j):
        """Left environment of site j (sites 0..j-1), None at the left edge."""
        return self.left_stacks[j - 1] if j > 0 else None

    def right_env(self, j):
        """Right environment of site j (sites j+1..N-1), None at the right edge."""
        return self.right_stacks[j + 1] if j < len(self.mps) - 1 else None
