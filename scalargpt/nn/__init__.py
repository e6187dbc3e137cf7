from .nn import Matrix, init_matrix, Module, linear, softmax, rmsnorm

__all__ = ["Matrix", "init_matrix", "Module", "linear", "softmax", "rmsnorm"]
