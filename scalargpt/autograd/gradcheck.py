
# Numerical gradients by central differences, used to check the analytic gradients

from typing import Callable

from .autograd import Value


def numerical_grad(f: Callable[[], Value], leaves: list[Value], eps: float = 1e-6) -> list[float]:
    '''
    Estimate d(f)/d(leaf) for each leaf as (f(x + eps) - f(x - eps)) / (2 * eps).
    f must rebuild its graph from the leaves on every call, leaf values are restored afterwards.
    '''
    grads: list[float] = []
    for x in leaves:
        original = x.data
        try:
            x.data = original + eps
            f_plus = f().data
            x.data = original - eps
            f_minus = f().data
        finally:
            x.data = original
        grads.append((f_plus - f_minus) / (2 * eps))
    return grads
