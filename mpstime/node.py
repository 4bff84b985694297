import torch
from mpstime.utils import EinsumLabeler

class TensorNode:
    def __init__(self, tensor_or_shape, dim_labels, name=None, dtype=None):
        """Initializes a TensorNode object with the given tensor (or random tensor of the given shape) and dimension labels."""
        if isinstance(tensor_or_shape, tuple) or isinstance(tensor_or_shape, list):
            self.tensor = torch.randn(tensor_or_shape, dtype=dtype)
        else:
            self.tensor = tensor_or_shape if dtype is None else tensor_or_shape.to(dtype=dtype)
        self.dim_labels = list(dim_labels)
        self.name = name or ''
        if len(self.dim_labels) != self.tensor.ndim:
            raise ValueError(f"Got {len(self.dim_labels)} labels {self.dim_labels} for a tensor of order {self.tensor.ndim}")
        if len(set(self.dim_labels)) != len(self.dim_labels):
            raise ValueError(f"Repeated labels in {self.dim_labels}")

    def shared_labels(self, other_node):
        """Returns the labels present in both nodes, in the order of self."""
        return [l for l in self.dim_labels if l in other_node.dim_labels]

    def contract_with(self, other_node, contract_labels=None):
        """Contracts self with other_node over the given labels.

        By default all shared labels are summed over. Shared labels that are left out of
        contract_labels are kept once in the output and act as batch dimensions, which is how
        the sample dimension 's' travels through environment contractions.
        """
        shared = self.shared_labels(other_node)
        if contract_labels is None:
            contract_labels = shared
        contract_labels = [contract_labels] if isinstance(contract_labels, str) else list(contract_labels)

        for label in contract_labels:
            if label not in shared:
                raise ValueError(f"Cannot contract over '{label}': not shared by {self} and {other_node}")
        for label in shared:
            if self.dim_size(label) != other_node.dim_size(label):
                raise ValueError(f"Dimension mismatch on '{label}': {self.dim_size(label)} != {other_node.dim_size(label)}")

        # Ordered dedupe so the output layout is deterministic
        labeler = EinsumLabeler()
        einsum_self = ''.join(labeler[label] for label in self.dim_labels)
        einsum_other = ''.join(labeler[label] for label in other_node.dim_labels)
        new_dim_labels = [label for label in dict.fromkeys(self.dim_labels + other_node.dim_labels) if label not in contract_labels]
        einsum_output = ''.join(labeler[label] for label in new_dim_labels)

        contracted_tensor = torch.einsum(f"{einsum_self},{einsum_other}->{einsum_output}", self.tensor, other_node.tensor)
        return TensorNode(contracted_tensor, new_dim_labels, name=f"{self.name}_{other_node.name}" if self.name or other_node.name else None)

    def to(self, device=None, dtype=None):
        """Moves the tensor to the given device and dtype."""
        self.tensor = self.tensor.to(device=device, dtype=dtype)
        return self

    @property
    def shape(self):
        """Returns the shape of the tensor."""
        return self.tensor.shape

    @property
    def dtype(self):
        return self.tensor.dtype

    def dim_size(self, label):
        """Returns the size of the dimension corresponding to the given label."""
        return self.tensor.shape[self.dim_labels.index(label)]

    def has_label(self, label):
        return label in self.dim_labels

    def norm(self):
        """Frobenius norm of the tensor."""
        return torch.linalg.vector_norm(self.tensor)

    def conj(self):
        """Returns a new node holding the complex conjugate. Labels are unchanged."""
        return TensorNode(self.tensor.conj().resolve_conj(), self.dim_labels.copy(), name=self.name)

    def relabel(self, mapping):
        """Returns a new node (sharing the tensor) with labels renamed according to mapping."""
        return TensorNode(self.tensor, [mapping.get(l, l) for l in self.dim_labels], name=self.name)

    def get_transposed_node(self, exclude=set()):
        """Returns the conjugated node with dummy dimension labels, except for the labels in exclude."""
        return self.conj().relabel({l: f'_{l}' for l in self.dim_labels if l not in exclude})

    def copy(self):
        """Returns a copy of the node."""
        return TensorNode(self.tensor.clone(), self.dim_labels.copy(), name=self.name)

    def update_node(self, step, lr=1.0):
        """Updates the tensor of the node with the given step size."""
        self.tensor = self.tensor + lr * step
        return self

    def set_tensor(self, tensor):
        """Sets the tensor of the node to the given tensor."""
        if tensor.ndim != len(self.dim_labels):
            raise ValueError(f"Tensor of order {tensor.ndim} does not match labels {self.dim_labels}")
        self.tensor = tensor
        return self

    def permute_first(self, *labels):
        """Permutes the tensor so that the given labels are first."""
        new_labels = list(labels) + [l for l in self.dim_labels if l not in labels]
        return self.permute(*new_labels)

    def permute_last(self, *labels):
        """Permutes the tensor so that the given labels are last."""
        new_labels = [l for l in self.dim_labels if l not in labels] + list(labels)
        return self.permute(*new_labels)

    def permute(self, *labels):
        """Permutes the tensor according to the given labels."""
        if sorted(labels) != sorted(self.dim_labels):
            raise ValueError(f"Cannot permute {self.dim_labels} into {list(labels)}")
        permute = [self.dim_labels.index(l) for l in labels]
        self.tensor = self.tensor.permute(*permute)
        self.dim_labels = list(labels)
        return self

    def squeeze(self, exclude=set()):
        """Squeezes the tensor and removes singleton dimensions."""
        singleton = [s == 1 and l not in exclude for s, l in zip(self.shape, self.dim_labels)]
        if any(singleton):
            squeezed_indices = [i for i, s in enumerate(singleton) if s]
            self.dim_labels = [label for label, s in zip(self.dim_labels, singleton) if not s]
            self.tensor = self.tensor.squeeze(squeezed_indices)
        return self

    def matricize(self, row_labels):
        """Permutes row_labels first and returns (matrix, row_shape, col_shape, col_labels)."""
        row_labels = list(row_labels)
        self.permute_first(*row_labels)
        col_labels = self.dim_labels[len(row_labels):]
        row_shape = tuple(self.shape[:len(row_labels)])
        col_shape = tuple(self.shape[len(row_labels):])
        rows = 1
        for s in row_shape:
            rows *= s
        return self.tensor.reshape(rows, -1), row_shape, col_shape, col_labels

    def __repr__(self):
        """String representation of the TensorNode."""
        return f"TensorNode(name={self.name}, shape={tuple(self.shape)}, labels={self.dim_labels})"
