
# Graph traversal: topological sort and back-propagation over Value nodes

from collections import Counter
from typing import Iterable

import numpy as np

from .autograd import Value


def topological_sort(root: Value) -> list[Value]:
    '''
    Every node reachable from root exactly once, each node after all of its children (reverse postorder)
    '''
    sorted_nodes: list[Value] = []
    # KEY IDEA: the visited set belongs to this call only, nothing is left on the nodes to be reset afterwards
    # so sorting the same graph twice, or two graphs sharing leaves, can not see stale markers
    visited: set[Value] = set()

    # KEY IDEA: iterative post-order DFS, a transformer loss is thousands of nodes deep which a recursive
    # version would turn into a RecursionError. (node, expanded) pairs: expanded means all children are done
    stack: list[tuple[Value, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            sorted_nodes.append(node)
            continue
        if node in visited:
            continue
        visited.add(node)
        stack.append((node, True))
        # push in reverse so children are visited in their recorded order
        for child in reversed(node.children):
            if child not in visited:
                stack.append((child, False))

    return sorted_nodes


def backward(root: Value) -> None:
    '''
    Back-propagate from root: after the call node.grad holds d(root)/d(node) for every node of the graph,
    added on top of whatever node.grad held before.

    Gradients are accumulated, never reset here. Parameters reused across training steps must be zeroed
    by the caller (see zero_grad) or they will silently sum the gradients of several steps.
    '''
    # the derivative of the final output node wrt itself is 1
    root.grad = 1.0

    # reverse: start from the output to inputs, a node is only read once all its consumers pushed into it
    for node in reversed(topological_sort(root)):
        for child, local_grad in zip(node.children, node.local_grads):
            # KEY IDEA: use += to accumulate the gradient if a child node is used in multiple operations
            child.grad += local_grad * node.grad


def zero_grad(params: Iterable[Value]) -> None:
    for p in params:
        p.grad = 0.0


def graph_stats(root: Value) -> dict:
    '''
    Size of the graph behind root: node and edge counts, fan-in/fan-out and the operation breakdown
    '''
    nodes = topological_sort(root)
    fan_ins = [len(node.children) for node in nodes]
    fan_outs = Counter(child for node in nodes for child in node.children)
    op_counter = Counter(node.op for node in nodes)

    return {
        "nodes": len(nodes),
        "edges": sum(fan_ins),
        "leaves": op_counter["leaf"],
        "max_fan_in": max(fan_ins),
        "max_fan_out": max(fan_outs.values(), default=0),
        "avg_fan_out": float(np.mean(list(fan_outs.values()))) if fan_outs else 0.0,
        "operations": dict(op_counter),
    }
