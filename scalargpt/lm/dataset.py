# Dataset of documents for the language model: one document (e.g. a name) per line of a text file

import os

import numpy as np


def load_dataset(path: str) -> list[str]:
    '''Non-empty lines of the file, stripped'''
    if not os.path.exists(path):
        raise FileNotFoundError(f"dataset file {path} not found")
    with open(path) as f:
        docs = [line.strip() for line in f]
    return [doc for doc in docs if doc]


def shuffle_dataset(docs: list[str]) -> list[str]:
    # KEY IDEA: use the numpy global RNG, reproducible after reset_seeds()
    permutation = np.random.permutation(len(docs))
    return [docs[i] for i in permutation]
