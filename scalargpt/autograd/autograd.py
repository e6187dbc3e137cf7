
# Automatic Differentiation Library
# Scalar reverse-mode autodiff, every node records its operands and the local derivatives

import math
from typing import Literal

# Tag of the operation that produced a node
Op = Literal["leaf", "add", "mul", "sub", "div", "pow", "log", "exp", "relu"]


#############################################################
## Errors
#############################################################

class AutogradError(Exception):
    '''Base class for numerical failures detected while building the graph'''

class DivisionByZero(AutogradError, ZeroDivisionError):
    pass

class DomainError(AutogradError, ValueError):
    pass

class AllocationFailure(AutogradError, MemoryError):
    pass


#############################################################
## Scalar node
#############################################################

class Value:
    '''
    A numeric atom node in the computation graph
    '''

    __slots__ = ("data", "grad", "label", "_op", "_children", "_local_grads")

    def __init__(self, data: float | int, label: str = "", _op: Op = "leaf", _children: tuple["Value", ...] = (), _local_grads: tuple[float, ...] = ()):
        assert isinstance(data, (float, int)), f"Value only wraps numbers, got {type(data)}"
        assert len(_children) == len(_local_grads)

        # Node label
        self.label = label
        # Node value
        self.data = float(data)

        # Gradient of the final output with respect to this node, filled by backward()
        self.grad = 0.0

        # KEY IDEA: instead of a backward closure, store the inputs and d(self)/d(input) evaluated right now
        # backward() only has to multiply and accumulate, no operator specific code runs there
        self._op = _op
        self._children = _children
        self._local_grads = _local_grads

    def __repr__(self):
        '''Pretty print the node'''
        label = f"{self.label}: " if self.label != "" else ""
        return f"Value({label}{self.data}, grad={self.grad})"

    @property
    def op(self) -> Op:
        return self._op

    @property
    def children(self) -> tuple["Value", ...]:
        return self._children

    @property
    def local_grads(self) -> tuple[float, ...]:
        return self._local_grads

    @property
    def is_leaf(self) -> bool:
        return len(self._children) == 0

    def __add__(self, other: "Value | float | int") -> "Value":
        return add(self, other)

    def __radd__(self, left: "Value | float | int") -> "Value":
        return add(left, self)

    def __sub__(self, other: "Value | float | int") -> "Value":
        return sub(self, other)

    def __rsub__(self, left: "Value | float | int") -> "Value":
        return sub(left, self)

    def __mul__(self, other: "Value | float | int") -> "Value":
        return mul(self, other)

    def __rmul__(self, left: "Value | float | int") -> "Value":
        return mul(left, self)

    def __truediv__(self, other: "Value | float | int") -> "Value":
        return div(self, other)

    def __rtruediv__(self, left: "Value | float | int") -> "Value":
        return div(left, self)

    def __pow__(self, exponent: float | int) -> "Value":
        return pow(self, exponent)

    def __neg__(self) -> "Value":
        return neg(self)

    def log(self) -> "Value":
        return log(self)

    def exp(self) -> "Value":
        return exp(self)

    def relu(self) -> "Value":
        return relu(self)

    def backward(self):
        '''Accumulate d(self)/d(node) into every node of the graph, see graph.backward'''
        from .graph import backward
        backward(self)


#############################################################
## Operator library
#############################################################

def _allocate(data: float | int, label: str = "", _op: Op = "leaf", _children: tuple[Value, ...] = (), _local_grads: tuple[float, ...] = ()) -> Value:
    try:
        return Value(data, label=label, _op=_op, _children=_children, _local_grads=_local_grads)
    except MemoryError as e:
        raise AllocationFailure(f"out of memory while creating a {_op} node") from e

def _node(data: float, _op: Op, _children: tuple[Value, ...], _local_grads: tuple[float, ...]) -> Value:
    # KEY IDEA: every operator result goes through here, an inf/NaN value or derivative never becomes a node
    if not math.isfinite(data):
        raise DomainError(f"{_op} produced a non-finite value: {data}")
    if not all(math.isfinite(g) for g in _local_grads):
        raise DomainError(f"{_op} produced a non-finite derivative: {_local_grads}")
    return _allocate(data, _op=_op, _children=_children, _local_grads=_local_grads)

def leaf(data: float | int, label: str = "") -> Value:
    '''Create a node without operands: a constant, an input or a trainable parameter'''
    return _allocate(data, label=label)

def _as_value(x: "Value | float | int") -> Value:
    # plain numbers become constant leaves, their gradient is computed but never read
    return x if isinstance(x, Value) else leaf(x)

def add(a: "Value | float | int", b: "Value | float | int") -> Value:
    a, b = _as_value(a), _as_value(b)
    # the derivative of a + b wrt a and b are both 1, gradient flows 1:1 to the inputs
    return _node(a.data + b.data, "add", (a, b), (1.0, 1.0))

def mul(a: "Value | float | int", b: "Value | float | int") -> Value:
    a, b = _as_value(a), _as_value(b)
    return _node(a.data * b.data, "mul", (a, b), (b.data, a.data))

def sub(a: "Value | float | int", b: "Value | float | int") -> Value:
    a, b = _as_value(a), _as_value(b)
    return _node(a.data - b.data, "sub", (a, b), (1.0, -1.0))

def div(a: "Value | float | int", b: "Value | float | int") -> Value:
    a, b = _as_value(a), _as_value(b)
    if b.data == 0.0:
        raise DivisionByZero(f"division by zero: {a.data} / {b.data}")
    r = a.data / b.data
    # -a/b^2 written as -(a/b)/b, b*b underflows to 0 for tiny b
    return _node(r, "div", (a, b), (1.0 / b.data, -r / b.data))

def pow(a: "Value | float | int", exponent: float | int) -> Value:
    '''a ** exponent, the exponent is a plain number and not part of the graph'''
    assert isinstance(exponent, (float, int)), f"exponent must be a number, got {type(exponent)}"
    a = _as_value(a)
    if a.data == 0.0 and exponent < 0:
        raise DivisionByZero(f"zero raised to a negative power: {a.data} ** {exponent}")
    if a.data < 0.0 and not float(exponent).is_integer():
        raise DomainError(f"negative base with fractional exponent: {a.data} ** {exponent}")
    if a.data == 0.0 and 0 < exponent < 1:
        raise DomainError(f"unbounded derivative: {a.data} ** {exponent}")
    try:
        r = a.data ** exponent
        # d(a^p)/da = p * a^(p-1), for p == 0 the result is the constant 1 and the derivative 0
        local_grad = exponent * a.data ** (exponent - 1) if exponent != 0 else 0.0
    except OverflowError as e:
        raise DomainError(f"pow overflow: {a.data} ** {exponent}") from e
    return _node(r, "pow", (a,), (local_grad,))

def log(a: "Value | float | int") -> Value:
    a = _as_value(a)
    if a.data <= 0.0:
        raise DomainError(f"log of a non-positive value: {a.data}")
    return _node(math.log(a.data), "log", (a,), (1.0 / a.data,))

def exp(a: "Value | float | int") -> Value:
    a = _as_value(a)
    try:
        r = math.exp(a.data)
    except OverflowError as e:
        raise DomainError(f"exp overflow: exp({a.data})") from e
    # derivative of e^a is e^a itself
    return _node(r, "exp", (a,), (r,))

def relu(a: "Value | float | int") -> Value:
    a = _as_value(a)
    # derivative of relu is 1 if a > 0, 0 otherwise (also 0 at exactly 0)
    r = a.data if a.data > 0 else 0.0
    return _node(r, "relu", (a,), (1.0 if a.data > 0 else 0.0,))

def neg(a: "Value | float | int") -> Value:
    # KEY IDEA: negation is not a primitive, -a = a * (-1) and the chain rule gives d(-a)/da = -1
    return mul(a, leaf(-1.0))
