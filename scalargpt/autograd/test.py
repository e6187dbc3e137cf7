
# Tests for the autograd engine, run with: pytest scalargpt/autograd/test.py

import math
import random

import numpy as np
import pytest
import torch

from .autograd import Value, leaf, add, mul, sub, div, pow, log, exp, relu, neg, AutogradError, DivisionByZero, DomainError, AllocationFailure
from .graph import topological_sort, backward, zero_grad, graph_stats
from .gradcheck import numerical_grad


def reset_seeds(seed: int = 0):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)


def test_arithmetic():
    ''' Test a simple arithmetic, compare with PyTorch '''

    def forward(x):
        z = 2 * x + 2 + x # use x twice
        q = z.relu() + z * x
        h = (z * z).relu()
        y = h + q + q * x
        y.backward()
        return x, y

    x0 = torch.Tensor([-4.0]).double()
    x0.requires_grad = True
    x0, y0 = forward(x0)

    x1 = Value(-4.0)
    x1, y1 = forward(x1)

    # forward pass went well
    assert y1.data == y0.data.item()
    # backward pass went well
    assert x0.grad is not None
    assert x1.grad == x0.grad.item()


def test_transcendental_against_torch():
    ''' Division, power, log and exp, compare with PyTorch '''

    def forward(x, y):
        a = (x / y).exp()
        b = (x * x + 1).log()
        c = y ** 3 / (x - 0.5)
        d = (x + y) ** -0.5
        out = a * b - c + d - y / x
        out.backward()
        return out

    xt = torch.tensor([1.5], dtype=torch.float64, requires_grad=True)
    yt = torch.tensor([0.7], dtype=torch.float64, requires_grad=True)
    out_t = forward(xt, yt)

    x = Value(1.5)
    y = Value(0.7)
    out = forward(x, y)

    assert math.isclose(out.data, out_t.item(), rel_tol=1e-12)
    assert xt.grad is not None and yt.grad is not None
    assert math.isclose(x.grad, xt.grad.item(), rel_tol=1e-9)
    assert math.isclose(y.grad, yt.grad.item(), rel_tol=1e-9)


def test_mul_gradients_are_the_other_operand():
    reset_seeds()
    for _ in range(20):
        a = leaf(random.uniform(-5, 5))
        b = leaf(random.uniform(-5, 5))
        backward(mul(a, b))
        assert a.grad == b.data
        assert b.grad == a.data


def test_add_same_value_twice():
    ''' a is used twice: the gradients of both paths sum up '''
    for v in [-3.0, 0.0, 2.5]:
        a = leaf(v)
        backward(add(a, a))
        assert a.grad == 2.0


def test_mul_end_to_end():
    a = leaf(3.0)
    b = leaf(4.0)
    c = mul(a, b)
    assert c.data == 12.0
    backward(c)
    assert a.grad == 4.0
    assert b.grad == 3.0


def test_negate_end_to_end():
    a = leaf(3.0)
    b = leaf(4.0)
    f = add(b, neg(a))
    assert f.data == 1.0
    backward(f)
    assert a.grad == -1.0
    assert b.grad == 1.0


def test_local_derivatives_match_closed_form():
    a, b = leaf(3.0), leaf(-2.0)
    assert add(a, b).local_grads == (1.0, 1.0)
    assert mul(a, b).local_grads == (-2.0, 3.0)
    assert sub(a, b).local_grads == (1.0, -1.0)
    assert div(a, b).local_grads == (1.0 / -2.0, -3.0 / 4.0)
    assert pow(a, 3).local_grads == (27.0,)
    assert log(a).local_grads == (1.0 / 3.0,)
    assert exp(a).local_grads == (math.exp(3.0),)
    assert relu(a).local_grads == (1.0,)
    assert relu(b).local_grads == (0.0,)
    assert relu(b).data == 0.0


def test_composed_subtraction_matches_primitive():
    ''' b + (-a) has the same gradients as the sub primitive '''
    a1, b1 = leaf(3.0), leaf(4.0)
    backward(sub(b1, a1))
    a2, b2 = leaf(3.0), leaf(4.0)
    backward(add(b2, neg(a2)))
    assert (a1.grad, b1.grad) == (a2.grad, b2.grad) == (-1.0, 1.0)


def test_python_operators_build_the_same_graph():
    a, b = leaf(6.0), leaf(2.0)
    assert (a + b).op == "add"
    assert (a - b).op == "sub"
    assert (a * b).op == "mul"
    assert (a / b).op == "div"
    assert (a ** 2).op == "pow"
    assert (10 - a).data == 4.0
    assert (12 / a).data == 2.0
    assert (-a).data == -6.0


def test_finite_differences():
    ''' Analytic gradients of random small graphs match central differences '''
    reset_seeds()
    # squashed arguments keep the values small, so central differences stay accurate
    unary = [
        lambda a: log(a * a + 1),
        lambda a: exp(a / (a * a + 1)),
        relu,
        lambda a: pow(a / (a * a + 1), 3),
        lambda a: pow(a * a + 0.5, -0.5),
        neg,
    ]
    binary = [add, mul, sub, lambda a, b: div(a, b * b + 1)]

    for _ in range(50):
        leaves = [leaf(random.uniform(-1.5, 1.5)) for _ in range(3)]
        # fix the shape of the graph once, f() rebuilds it from the leaves
        plan = [(random.randrange(len(binary)), random.randrange(len(unary)), random.randrange(3), random.randrange(3)) for _ in range(4)]

        def f():
            nodes = list(leaves)
            for bi, ui, i, j in plan:
                nodes.append(unary[ui](binary[bi](nodes[i], nodes[-1 - j])))
            return nodes[-1] + nodes[-2] * nodes[0]

        # relu has no derivative at 0, keep away from the kink
        if any(n.op == "relu" and abs(n.children[0].data) < 1e-3 for n in topological_sort(f())):
            continue

        zero_grad(leaves)
        f().backward()
        expected = numerical_grad(f, leaves)
        for x, g in zip(leaves, expected):
            assert abs(x.grad - g) <= 1e-4 * max(1.0, abs(g)), f"{x.grad} != {g}"


def test_topological_order_is_valid():
    a, b = leaf(2.0), leaf(3.0)
    c = a * b
    d = c + a
    e = (d * c).exp() / (b + 1)
    order = topological_sort(e)
    position = {n: i for i, n in enumerate(order)}
    assert order[-1] is e
    for n in order:
        for child in n.children:
            assert position[child] < position[n]


def test_diamond_nodes_appear_once():
    a = leaf(2.0)
    b = a * 3
    c = a + 1
    d = b * c # a reaches d through b and c
    order = topological_sort(d)
    assert len(order) == len(set(order))
    assert order.count(a) == 1
    d.backward()
    assert a.grad == 3 * c.data + b.data # d(b*c)/da = 3c + b


def test_topological_sort_is_repeatable():
    ''' Nothing is left behind on the nodes, sorting again after a backward pass gives the same order '''
    a, b = leaf(1.0), leaf(2.0)
    y = (a * b + a).relu() * (b - a)
    before = topological_sort(y)
    backward(y)
    after = topological_sort(y)
    assert before == after
    # a second pass over the same graph is not skipped either
    # intermediate nodes hold gradients too, so all of them are zeroed before running it again
    zero_grad(after)
    backward(y)
    assert a.grad == 1.0 * (2.0 + 1.0) - 3.0
    assert b.grad == 1.0 * 1.0 + 3.0


def test_gradients_accumulate_until_zeroed():
    a = leaf(5.0)
    y = a * a
    y.backward()
    y.backward()
    assert a.grad == 20.0
    zero_grad([a])
    y.backward()
    assert a.grad == 10.0


def test_deep_graph():
    ''' A long chain must not hit the recursion limit '''
    x = leaf(1.0)
    total = leaf(0.0)
    for _ in range(20000):
        total = total + x
    total.backward()
    assert total.data == 20000.0
    assert x.grad == 20000.0


def test_divide_by_zero():
    with pytest.raises(DivisionByZero):
        div(leaf(5.0), leaf(0.0))
    with pytest.raises(ZeroDivisionError):
        leaf(1.0) / 0
    with pytest.raises(DivisionByZero):
        pow(leaf(0.0), -1)


def test_domain_errors():
    with pytest.raises(DomainError):
        log(leaf(0.0))
    with pytest.raises(DomainError):
        log(leaf(-1.0))
    with pytest.raises(DomainError):
        pow(leaf(-2.0), 0.5)
    with pytest.raises(DomainError):
        exp(leaf(1000.0))
    with pytest.raises(ValueError):
        leaf(-1.0).log()


def test_overflow_never_enters_the_graph():
    # every case would otherwise store inf as a value or a local derivative
    with pytest.raises(DomainError):
        add(leaf(1.7e308), leaf(1.7e308))
    with pytest.raises(DomainError):
        mul(leaf(1e200), leaf(1e200))
    with pytest.raises(DomainError):
        div(leaf(1e300), leaf(1e-10))
    with pytest.raises(DomainError):
        pow(leaf(10.0), 308) # 1e308 fits, the derivative 308e307 does not
    with pytest.raises(DomainError):
        pow(leaf(1e-300), -1)
    with pytest.raises(DomainError):
        log(leaf(1e-320)) # subnormal, 1/a overflows
    with pytest.raises(AutogradError):
        leaf(1e308) * 10


def test_divide_by_tiny_denominator():
    # b*b underflows to 0 here, the derivative must still be computed or rejected with a typed error
    with pytest.raises(DomainError):
        div(leaf(1.0), leaf(1e-200))
    a, b = leaf(1e-100), leaf(1e-100)
    y = div(a, b)
    y.backward()
    assert y.data == 1.0
    assert math.isclose(a.grad, 1e100)
    assert math.isclose(b.grad, -1e100)


def test_out_of_memory_while_building_a_node(monkeypatch):
    a, b = leaf(1.0), leaf(2.0)

    def out_of_memory(self, *args, **kwargs):
        raise MemoryError

    monkeypatch.setattr(Value, "__init__", out_of_memory)
    with pytest.raises(AllocationFailure):
        add(a, b)
    with pytest.raises(AllocationFailure):
        leaf(3.0)


def test_pow_edge_cases():
    a = leaf(-2.0)
    y = a ** 3
    y.backward()
    assert y.data == -8.0
    assert a.grad == 12.0

    b = leaf(4.0)
    z = b ** 0
    z.backward()
    assert z.data == 1.0
    assert b.grad == 0.0


def test_graph_stats():
    a, b = leaf(2.0), leaf(3.0)
    y = (a * b + a).exp()
    stats = graph_stats(y)
    assert stats["nodes"] == 5
    assert stats["edges"] == 5
    assert stats["leaves"] == 2
    assert stats["max_fan_in"] == 2
    assert stats["max_fan_out"] == 2 # a feeds both mul and add
    assert stats["operations"] == {"leaf": 2, "mul": 1, "add": 1, "exp": 1}


def test_linear_regression():
    ''' Test linear regression '''

    # prepare data
    # y = a * x + b
    x = np.linspace(-10, 10, 100)
    a0 = 3.0
    b0 = 1.0
    y = a0 * x + b0

    # initial values
    a = Value(1.0)
    b = Value(0.0)

    for i in range(1000):
        y_est = [a * float(x_i) + b for x_i in x] # our autograd doesn't support vectorized operations
        loss = [(ye - float(y_i)) * (ye - float(y_i)) for ye, y_i in zip(y_est, y)]
        total_loss = Value(0.0)
        for l in loss:
            total_loss += l
        avg_loss = total_loss / len(loss)
        zero_grad([a, b])
        avg_loss.backward()

        lr = 0.01
        a.data -= lr * a.grad
        b.data -= lr * b.grad

    assert abs(a.data - a0) < 1e-5
    assert abs(b.data - b0) < 1e-5
