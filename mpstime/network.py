import torch
from mpstime.node import TensorNode

LABEL = 'c'
SAMPLE_DIM = 's'

def physical(j):
    return f'p{j}'

def bond(j):
    """Label of the bond between sites j and j+1."""
    return f'r{j}'

class MPS:
    """An owned chain of TensorNodes.

    Site j carries the physical label p{j}, the bond between sites j and j+1 is r{j}, boundary
    bonds are squeezed away and at most one site carries the class label 'c'. Generic chains
    (e.g. the conditioned chains used for imputation) only need neighbouring sites to share
    exactly one label.
    """
    def __init__(self, nodes, label=LABEL):
        self.nodes = list(nodes)
        self.label = label
        self.center = None

    def __len__(self):
        return len(self.nodes)

    def __getitem__(self, i):
        return self.nodes[i]

    def __setitem__(self, i, node):
        self.set(i, node)

    def get(self, i):
        return self.nodes[i]

    def set(self, i, node):
        """Replaces site i. Invalidates the cached orthogonality center."""
        self.nodes[i] = node
        self.center = None

    @property
    def dtype(self):
        return self.nodes[0].dtype

    def copy(self):
        mps = MPS([n.copy() for n in self.nodes], label=self.label)
        mps.center = self.center
        return mps

    def bond_label(self, j):
        """Returns the label shared by sites j and j+1."""
        shared = self.nodes[j].shared_labels(self.nodes[j + 1])
        if len(shared) != 1:
            raise ValueError(f"Sites {j} and {j+1} share {len(shared)} labels ({shared}), expected exactly one")
        return shared[0]

    def bond_dims(self):
        return [self.nodes[j].dim_size(self.bond_label(j)) for j in range(len(self) - 1)]

    def physical_label(self, j):
        exclude = {self.label}
        if j > 0:
            exclude.add(self.bond_label(j - 1))
        if j < len(self) - 1:
            exclude.add(self.bond_label(j))
        labels = [l for l in self.nodes[j].dim_labels if l not in exclude]
        if len(labels) != 1:
            raise ValueError(f"Site {j} has {len(labels)} physical labels: {labels}")
        return labels[0]

    def label_site(self):
        """Index of the site carrying the class label, or None."""
        for i, node in enumerate(self.nodes):
            if node.has_label(self.label):
                return i
        return None

    def num_classes(self):
        i = self.label_site()
        return None if i is None else self.nodes[i].dim_size(self.label)

    def norm(self):
        """Returns the 2-norm of the full contraction of the chain (label index included)."""
        if self.center is not None:
            return self.nodes[self.center].norm().real
        env = None
        for j, node in enumerate(self.nodes):
            bonds = self._bond_labels(j)
            bra = node.get_transposed_node(exclude={l for l in node.dim_labels if l not in bonds})
            env = node if env is None else env.contract_with(node)
            env = env.contract_with(bra)
        return env.tensor.real.sqrt()

    def _bond_labels(self, j):
        labels = []
        if j > 0:
            labels.append(self.bond_label(j - 1))
        if j < len(self) - 1:
            labels.append(self.bond_label(j))
        return labels

    def normalize(self):
        """Rescales the chain to unit norm, spreading the factor over all sites."""
        norm = self.norm()
        factor = norm ** (1.0 / len(self))
        if self.center is not None:
            self.nodes[self.center].tensor = self.nodes[self.center].tensor / norm
            return self
        for node in self.nodes:
            node.tensor = node.tensor / factor
        return self

    def orthogonalize(self, center):
        """
        Moves the orthogonality center to the given site.

        Every site left of center becomes left-isometric and every site right of it becomes
        right-isometric, using QR decompositions swept in from the current center (or from both
        ends if the current center is unknown).
        """
        if not 0 <= center < len(self):
            raise ValueError(f"Center {center} out of range for an MPS of length {len(self)}")
        if self.center is None:
            left_start, right_start = 0, len(self) - 1
        else:
            left_start, right_start = self.center, self.center
        for j in range(left_start, center):
            self.node_orthonormalize_left(j)
        for j in range(right_start, center, -1):
            self.node_orthonormalize_right(j)
        self.center = center
        return self

    def node_orthonormalize_left(self, index):
        if index >= len(self) - 1:
            return
        node = self.nodes[index]
        right_bond = self.bond_label(index)
        node.permute_last(right_bond)

        # Flatten into a 2D matrix: (left combined, right bond)
        original_shape = node.shape
        Q, R = torch.linalg.qr(node.tensor.reshape(-1, original_shape[-1]), mode='reduced')
        node.tensor = Q.reshape(tuple(original_shape[:-1]) + (Q.shape[-1],))

        # Push R into the next node's left bond
        next_node = self.nodes[index + 1]
        next_node.permute_first(right_bond)
        next_node.tensor = torch.einsum('ij,j...->i...', R, next_node.tensor)

    def node_orthonormalize_right(self, index):
        if index <= 0:
            return
        node = self.nodes[index]
        left_bond = self.bond_label(index - 1)
        node.permute_last(left_bond)

        # Rows combine the non-bond dims, columns the left bond
        original_shape = node.shape
        Q, R = torch.linalg.qr(node.tensor.reshape(-1, original_shape[-1]), mode='reduced')
        node.tensor = Q.reshape(tuple(original_shape[:-1]) + (Q.shape[-1],))

        # Push R into the previous node's right bond
        prev_node = self.nodes[index - 1]
        prev_node.permute_last(left_bond)
        prev_node.tensor = torch.einsum('...j,ij->...i', prev_node.tensor, R)

    def bond_tensor(self, j):
        """Contracts sites j and j+1 over their shared bond."""
        return self.nodes[j].contract_with(self.nodes[j + 1], [self.bond_label(j)])

    def contract(self, states):
        """
        Overlap of the chain with every encoded sample.

        Args:
            states: complex/real tensor of shape (M, N, d) (or an EncodedDataset).
        Returns:
            Tensor of shape (M, C) if a site carries the label, else (M,).
        """
        states = getattr(states, 'states', states)
        if states.shape[1] != len(self):
            raise ValueError(f"Samples have {states.shape[1]} sites but the MPS has {len(self)}")
        env = None
        for j, node in enumerate(self.nodes):
            p = self.physical_label(j)
            phi = TensorNode(states[:, j, :].conj(), [SAMPLE_DIM, p])
            env = node if env is None else env.contract_with(node, [self.bond_label(j - 1)])
            env = env.contract_with(phi, [p])
        if env.has_label(self.label):
            env.permute(SAMPLE_DIM, self.label)
        return env.tensor

    def slice_class(self, class_index):
        """Returns a normalized copy of the chain with the label index projected onto one class."""
        site = self.label_site()
        if site is None:
            raise ValueError("MPS has no label index to slice")
        num_classes = self.nodes[site].dim_size(self.label)
        if not 0 <= class_index < num_classes:
            raise ValueError(f"Class {class_index} out of range for {num_classes} classes")
        mps = self.copy()
        selector = torch.zeros(num_classes, dtype=mps.dtype)
        selector[class_index] = 1
        mps.nodes[site] = mps.nodes[site].contract_with(TensorNode(selector, [self.label]))
        mps.center = self.center if site == self.center else None
        return mps.normalize()

    def state_dict(self):
        """Returns the site tensors and their labels."""
        return {
            'label': self.label,
            'center': self.center,
            'tensors': [n.tensor for n in self.nodes],
            'dim_labels': [n.dim_labels for n in self.nodes],
        }

    @classmethod
    def from_state_dict(cls, state):
        mps = cls([TensorNode(t, labels) for t, labels in zip(state['tensors'], state['dim_labels'])], label=state['label'])
        mps.center = state['center']
        return mps

    def save(self, path):
        torch.save(self.state_dict(), path)

    @classmethod
    def load(cls, path):
        return cls.from_state_dict(torch.load(path))

    def __repr__(self):
        return f"MPS(sites={len(self)}, bond_dims={self.bond_dims()}, label_site={self.label_site()})"

def random_mps(num_sites, d, chi_init, num_classes, dtype=torch.complex128, random_state=None, constrict_bond=True):
    """
    Builds a random MPS with uniform initial bond dimension and the label on the last site.

    With constrict_bond the bond dimensions are capped by the dimension of the smaller side of
    the cut, so no bond starts out rank deficient.
    """
    if num_sites < 2:
        raise ValueError("An MPS needs at least two sites")
    if random_state is not None:
        torch.manual_seed(random_state)

    def build_left(j):
        return min(chi_init, d ** (j + 1)) if constrict_bond else chi_init

    def build_right(j):
        return min(chi_init, d ** (num_sites - j - 1) * num_classes) if constrict_bond else chi_init

    dims = [min(build_left(j), build_right(j)) for j in range(num_sites - 1)]

    nodes = []
    for j in range(num_sites):
        labels, shape = [], []
        if j > 0:
            labels.append(bond(j - 1))
            shape.append(dims[j - 1])
        labels.append(physical(j))
        shape.append(d)
        if j < num_sites - 1:
            labels.append(bond(j))
            shape.append(dims[j])
        else:
            labels.append(LABEL)
            shape.append(num_classes)
        nodes.append(TensorNode(tuple(shape), labels, name=f"A{j}", dtype=dtype))
    return MPS(nodes)

def _site_order(labels, j):
    """Canonical site layout: left bond, physical, right bond, label."""
    order = [bond(j - 1), physical(j), bond(j), LABEL]
    return [l for l in order if l in labels]

def split_bond(bond_tensor, j, going_left, chi_max, cutoff=0.0):
    """
    Splits a two-site bond tensor back into two site tensors with a truncated SVD.

    Going left, the label index (if present) goes to the left tensor together with the singular
    values, so it travels with the orthogonality center; the right tensor is right-isometric.
    Going right, the label goes to the right tensor together with the singular values and the
    left tensor is left-isometric. The new shared index is always named r{j}.

    Truncation keeps at most chi_max singular values and discards the smallest ones as long as
    their relative squared weight stays within cutoff. At least one value is kept.

    Returns:
        (left_node, right_node, truncation_error)
    """
    left_labels = [l for l in bond_tensor.dim_labels if l in (bond(j - 1), physical(j))]
    right_labels = [l for l in bond_tensor.dim_labels if l in (physical(j + 1), bond(j + 1))]
    if bond_tensor.has_label(LABEL):
        (left_labels if going_left else right_labels).append(LABEL)

    node = bond_tensor.copy()
    matrix, left_shape, right_shape, right_labels = node.matricize(left_labels)
    u, s, vh = torch.linalg.svd(matrix, full_matrices=False)

    rank = truncation_rank(s, chi_max, cutoff)
    weight = s.pow(2)
    error = (weight[rank:].sum() / weight.sum()).item() if weight.sum() > 0 else 0.0
    u, s, vh = u[:, :rank], s[:rank], vh[:rank]

    if going_left:
        u = u * s.to(u.dtype)
    else:
        vh = s.to(vh.dtype).unsqueeze(1) * vh

    new_bond = bond(j)
    left = TensorNode(u.reshape(left_shape + (rank,)), left_labels + [new_bond], name=f"A{j}")
    right = TensorNode(vh.reshape((rank,) + right_shape), [new_bond] + right_labels, name=f"A{j+1}")
    left.permute(*_site_order(left.dim_labels, j))
    right.permute(*_site_order(right.dim_labels, j + 1))
    return left, right, error

def truncation_rank(s, chi_max, cutoff=0.0):
    """Number of singular values (sorted descending) to keep under the chi_max and cutoff policies."""
    weight = s.pow(2)
    total = weight.sum()
    rank = len(s)
    if cutoff > 0 and total > 0:
        # discarded[k] = relative weight thrown away when keeping the first k values
        discarded = torch.flip(torch.cumsum(torch.flip(weight, dims=[0]), 0), dims=[0]) / total
        keep = (discarded > cutoff).sum().item()
        rank = min(rank, keep)
    return max(min(rank, chi_max), 1)
