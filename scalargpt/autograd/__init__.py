from .autograd import (
    Value,
    leaf,
    add,
    mul,
    sub,
    div,
    pow,
    log,
    exp,
    relu,
    neg,
    AutogradError,
    DivisionByZero,
    DomainError,
    AllocationFailure,
)
from .graph import topological_sort, backward, zero_grad, graph_stats
from .gradcheck import numerical_grad

__all__ = [
    "Value", "leaf",
    "add", "mul", "sub", "div", "pow", "log", "exp", "relu", "neg",
    "AutogradError", "DivisionByZero", "DomainError", "AllocationFailure",
    "topological_sort", "backward", "zero_grad", "graph_stats",
    "numerical_grad",
]
