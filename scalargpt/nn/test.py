# Tests for the matrix and layer helpers, run with: pytest scalargpt/nn/test.py

import math
import random

import numpy as np
import pytest
import torch

from ..autograd import Value, backward
from .nn import Matrix, init_matrix, Module, linear, softmax, rmsnorm


def reset_seeds(seed: int = 0):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def test_init_matrix_shape():
    reset_seeds()
    m = init_matrix(3, 4, std=0.08)
    assert (m.rows, m.cols) == (3, 4)
    assert len(m) == 3
    assert all(len(row) == 4 for row in m)
    assert all(isinstance(p, Value) and p.is_leaf for p in m.parameters())
    assert len(m.parameters()) == 12


def test_init_matrix_zero_std():
    m = init_matrix(5, 2, std=0.0)
    assert all(p.data == 0.0 for p in m.parameters())


def test_init_matrix_distribution():
    reset_seeds()
    values = np.array([p.data for p in init_matrix(100, 100, std=0.5).parameters()])
    assert abs(values.mean()) < 0.02
    assert abs(values.std() - 0.5) < 0.02


def test_init_matrix_reproducible():
    reset_seeds(1)
    a = init_matrix(4, 4, std=1.0).tolist()
    reset_seeds(1)
    b = init_matrix(4, 4, std=1.0).tolist()
    assert a == b


def test_linear():
    x = [Value(1.0), Value(2.0)]
    w = Matrix.from_lists([[3.0, 4.0], [5.0, 6.0]])
    result = linear(x, w)
    assert len(result) == 2
    assert result[0].data == 11.0  # 3*1 + 4*2
    assert result[1].data == 17.0  # 5*1 + 6*2


def test_linear_size_mismatch():
    w = Matrix.from_lists([[1.0, 2.0, 3.0]])
    with pytest.raises(AssertionError):
        linear([Value(1.0), Value(2.0)], w)


def test_linear_gradients_against_torch():
    ''' Gradients of sum(relu(W x)^2) wrt W and x, compare with PyTorch '''
    reset_seeds()
    w_np = np.random.normal(0.0, 1.0, size=(3, 4))
    x_np = np.random.normal(0.0, 1.0, size=4)

    w_t = torch.tensor(w_np, dtype=torch.float64, requires_grad=True)
    x_t = torch.tensor(x_np, dtype=torch.float64, requires_grad=True)
    loss_t = ((w_t @ x_t).relu() ** 2).sum()
    loss_t.backward()

    w = Matrix.from_lists(w_np.tolist())
    x = [Value(float(v)) for v in x_np]
    y = [yi.relu() ** 2 for yi in linear(x, w)]
    loss = sum(y[1:], y[0])
    backward(loss)

    assert math.isclose(loss.data, loss_t.item(), rel_tol=1e-12)
    assert w_t.grad is not None and x_t.grad is not None
    assert np.allclose(np.array([[p.grad for p in row] for row in w]), w_t.grad.numpy(), rtol=1e-10, atol=1e-12)
    assert np.allclose(np.array([xi.grad for xi in x]), x_t.grad.numpy(), rtol=1e-10, atol=1e-12)


def test_softmax_sums_to_one():
    logits = [Value(1.0), Value(2.0), Value(3.0)]
    probs = softmax(logits)
    assert len(probs) == 3
    assert abs(sum(p.data for p in probs) - 1.0) < 1e-12


def test_softmax_ordering():
    logits = [Value(1.0), Value(3.0), Value(2.0)]
    probs = softmax(logits)
    assert probs[1].data > probs[2].data > probs[0].data


def test_softmax_large_logits():
    probs = softmax([Value(1000.0), Value(1000.0)])
    assert [p.data for p in probs] == [0.5, 0.5]


def test_softmax_gradients_against_torch():
    ''' Cross-entropy through softmax, compare with PyTorch '''
    raw = [0.5, -1.0, 2.0, 0.1]
    logits_t = torch.tensor(raw, dtype=torch.float64, requires_grad=True)
    loss_t = -torch.softmax(logits_t, dim=0)[2].log()
    loss_t.backward()

    logits = [Value(v) for v in raw]
    loss = -softmax(logits)[2].log()
    backward(loss)

    assert math.isclose(loss.data, loss_t.item(), rel_tol=1e-12)
    assert logits_t.grad is not None
    assert np.allclose([v.grad for v in logits], logits_t.grad.numpy(), rtol=1e-10, atol=1e-12)


def test_rmsnorm_unit_rms():
    x = [Value(3.0), Value(4.0)]
    normed = rmsnorm(x)
    rms = math.sqrt(sum(v.data**2 for v in normed) / len(normed))
    assert abs(rms - 1.0) < 1e-3


def test_rmsnorm_gradients_against_torch():
    raw = [0.3, -1.2, 2.0]
    x_t = torch.tensor(raw, dtype=torch.float64, requires_grad=True)
    y_t = x_t * ((x_t * x_t).mean() + 1e-5) ** -0.5
    (y_t * torch.tensor([1.0, 2.0, 3.0], dtype=torch.float64)).sum().backward()

    x = [Value(v) for v in raw]
    y = rmsnorm(x)
    out = y[0] * 1.0 + y[1] * 2.0 + y[2] * 3.0
    backward(out)

    assert x_t.grad is not None
    assert np.allclose([v.data for v in y], y_t.detach().numpy(), rtol=1e-12)
    assert np.allclose([v.grad for v in x], x_t.grad.numpy(), rtol=1e-9, atol=1e-12)


def test_module_zero_grad():
    class TwoMatrices(Module):
        def __init__(self):
            self.a = init_matrix(2, 2, std=1.0)
            self.b = init_matrix(2, 2, std=1.0)

        def parameters(self):
            return self.a.parameters() + self.b.parameters()

    model = TwoMatrices()
    for p in model.parameters():
        p.grad = 3.0
    model.zero_grad()
    assert all(p.grad == 0.0 for p in model.parameters())
