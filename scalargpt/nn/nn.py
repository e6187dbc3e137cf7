# Neural network building blocks on top of our autograd: weight matrices, linear layers, softmax and norms

import numpy as np

from ..autograd import Value, leaf, add, mul, sub, div, exp, pow, zero_grad, AllocationFailure

#############################################################
## Weight matrix
#############################################################

class Matrix:
    '''
    A rows x cols grid of leaf Values (row-major), one row per output of a linear layer
    '''

    def __init__(self, entries: list[list[Value]]):
        assert len(entries) > 0 and len(entries[0]) > 0, "empty matrix"
        assert all(len(row) == len(entries[0]) for row in entries), "ragged matrix"
        self.entries = entries

    @property
    def rows(self) -> int:
        return len(self.entries)

    @property
    def cols(self) -> int:
        return len(self.entries[0])

    @staticmethod
    def from_lists(values: list[list[float]]) -> "Matrix":
        return Matrix([[leaf(float(v)) for v in row] for row in values])

    def __getitem__(self, i: int) -> list[Value]:
        # row selection, this is the embedding table lookup
        return self.entries[i]

    def __len__(self) -> int:
        return self.rows

    def __iter__(self):
        return iter(self.entries)

    def parameters(self) -> list[Value]:
        return [p for row in self.entries for p in row]

    def tolist(self) -> list[list[float]]:
        return [[p.data for p in row] for row in self.entries]

    def __repr__(self):
        return f"Matrix({self.rows}x{self.cols})"


def init_matrix(rows: int, cols: int, std: float) -> Matrix:
    '''
    Matrix of fresh leaves drawn from N(0, std^2), std == 0 gives an all zero matrix
    '''
    assert rows > 0 and cols > 0
    assert std >= 0.0
    try:
        # KEY IDEA: draw from the numpy global RNG so reset_seeds() makes the model reproducible
        weights = np.random.normal(0.0, std, size=(rows, cols))
        return Matrix([[Value(float(w)) for w in row] for row in weights])
    except MemoryError as e:
        raise AllocationFailure(f"can not allocate a {rows}x{cols} matrix") from e


#############################################################
## Layers
#############################################################

# Mimic the PyTorch API
class Module:
    def zero_grad(self):
        zero_grad(self.parameters())

    def parameters(self) -> list[Value]:
        return []


def linear(x: list[Value], w: Matrix) -> list[Value]:
    '''
    y = W x, one dot product per row of w, each output is its own chain of mul and add nodes
    '''
    assert len(x) == w.cols, f"input size {len(x)} does not match {w!r}"
    out: list[Value] = []
    for row in w:
        r = mul(row[0], x[0])
        for wi, xi in zip(row[1:], x[1:]):
            r = add(r, mul(wi, xi))
        out.append(r)
    return out


def softmax(logits: list[Value]) -> list[Value]:
    '''Convert raw scores into a probability distribution'''
    # KEY IDEA: subtract the max for numerical stability, as a constant it does not change the gradients
    max_val = max(v.data for v in logits)
    exps = [exp(sub(v, max_val)) for v in logits]
    total = exps[0]
    for e in exps[1:]:
        total = add(total, e)
    return [div(e, total) for e in exps]


def rmsnorm(x: list[Value], eps: float = 1e-5) -> list[Value]:
    '''Root Mean Square Normalization: rescale to unit RMS'''
    ms = mul(x[0], x[0])
    for xi in x[1:]:
        ms = add(ms, mul(xi, xi))
    scale = pow(add(div(ms, len(x)), eps), -0.5)
    return [mul(xi, scale) for xi in x]
