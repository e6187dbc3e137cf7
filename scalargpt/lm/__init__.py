from .tokenizer import CharacterTokenizer
from .dataset import load_dataset, shuffle_dataset
from .gpt import GPTLanguageModel, cross_entropy, document_loss, train_gpt_model, sample_from_gpt_model, reset_seeds

__all__ = [
    "CharacterTokenizer",
    "load_dataset", "shuffle_dataset",
    "GPTLanguageModel", "cross_entropy", "document_loss", "train_gpt_model", "sample_from_gpt_model", "reset_seeds",
]
