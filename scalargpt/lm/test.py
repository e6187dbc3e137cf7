# Test script for the character level GPT model, run with: pytest scalargpt/lm/test.py

import math

import numpy as np
import pytest
import torch

from .dataset import load_dataset, shuffle_dataset
from .gpt import GPTLanguageModel, cross_entropy, document_loss, train_gpt_model, sample_from_gpt_model, reset_seeds
from .tokenizer import CharacterTokenizer
from ..autograd import Value


def make_tiny_model(n_layer: int = 1) -> tuple[list[str], CharacterTokenizer, GPTLanguageModel]:
    reset_seeds()
    torch.manual_seed(0)
    docs = ["ab", "ba", "aa", "bb"]
    tokenizer = CharacterTokenizer()
    tokenizer.train(docs)
    model = GPTLanguageModel(vocab_size=tokenizer.vocab_size, embed_size=4, max_context_size=8, n_layer=n_layer, n_heads=2)
    return docs, tokenizer, model


#############################################################
## Tokenizer
#############################################################

def test_tokenizer_first_seen_order():
    tokenizer = CharacterTokenizer()
    tokenizer.train(["cab", "bad"])
    assert tokenizer.c2i == {"c": 0, "a": 1, "b": 2, "d": 3}
    assert tokenizer.bos_token == 4
    assert tokenizer.vocab_size == 5


def test_tokenizer_keeps_only_ascii():
    tokenizer = CharacterTokenizer()
    tokenizer.train(["a\tb\n", "é~ z"])
    assert set(tokenizer.c2i) == {"a", "b", "~", " ", "z"}


def test_encode_wraps_with_bos():
    tokenizer = CharacterTokenizer()
    tokenizer.train(["ab"])
    encoded = tokenizer.encode("ab")
    assert encoded == [tokenizer.bos_token, 0, 1, tokenizer.bos_token]
    assert tokenizer.decode(encoded) == "ab"


def test_encode_unknown_character():
    tokenizer = CharacterTokenizer()
    tokenizer.train(["ab"])
    with pytest.raises(KeyError):
        tokenizer.encode("abc")


def test_tokenizer_roundtrip():
    tokenizer = CharacterTokenizer()
    tokenizer.train(["hello", "world"])
    for word in ["hello", "world", "hold", "well", ""]:
        assert tokenizer.decode(tokenizer.encode(word)) == word


#############################################################
## Dataset
#############################################################

def test_load_dataset_skips_blank_lines(tmp_path):
    input_file = tmp_path / "names.txt"
    input_file.write_text("alice\n\n  \nbob\ncharlie  \n")
    assert load_dataset(str(input_file)) == ["alice", "bob", "charlie"]


def test_load_dataset_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_dataset(str(tmp_path / "missing.txt"))


def test_shuffle_dataset():
    docs = [f"doc{i}" for i in range(20)]
    reset_seeds(3)
    a = shuffle_dataset(docs)
    reset_seeds(3)
    b = shuffle_dataset(docs)
    assert a == b
    assert sorted(a) == sorted(docs)
    assert docs == [f"doc{i}" for i in range(20)] # input untouched


#############################################################
## Model
#############################################################

def test_parameter_count():
    ''' vocab 27 (a-z plus BOS) with the default config '''
    model = GPTLanguageModel(vocab_size=27)
    assert len(model.parameters()) == 4192


def test_state_dict_keys():
    model = GPTLanguageModel(vocab_size=10, n_layer=2)
    keys = set(model.state_dict())
    assert {"wte", "wpe", "lm_head"} <= keys
    for i in range(2):
        for suffix in ["attn_wq", "attn_wk", "attn_wv", "attn_wo", "mlp_fc1", "mlp_fc2"]:
            assert f"layer{i}.{suffix}" in keys
    assert len(keys) == 3 + 6 * 2


def test_output_projections_start_at_zero():
    _, _, model = make_tiny_model()
    sd = model.state_dict()
    assert all(p.data == 0.0 for p in sd["layer0.attn_wo"].parameters())
    assert all(p.data == 0.0 for p in sd["layer0.mlp_fc2"].parameters())
    assert any(p.data != 0.0 for p in sd["layer0.attn_wq"].parameters())


def test_output_shape_and_kv_cache():
    _, tokenizer, model = make_tiny_model(n_layer=2)
    keys, values = model.make_kv_cache()
    for pos in range(3):
        logits = model(tokenizer.bos_token, pos, keys, values)
        assert len(logits) == tokenizer.vocab_size
    for li in range(2):
        assert len(keys[li]) == 3
        assert len(values[li]) == 3


def test_position_out_of_context():
    _, tokenizer, model = make_tiny_model()
    keys, values = model.make_kv_cache()
    with pytest.raises(AssertionError):
        model(tokenizer.bos_token, model.max_context_size, keys, values)


def test_cross_entropy_uniform():
    logits = [Value(0.5) for _ in range(4)]
    assert math.isclose(cross_entropy(logits, 2).data, math.log(4))


def torch_document_loss(sd: dict[str, torch.Tensor], tokens: list[int], n_layer: int, n_heads: int, max_context_size: int) -> torch.Tensor:
    ''' The same forward pass written with PyTorch tensors '''

    def rmsnorm(x):
        return x * ((x * x).mean() + 1e-5) ** -0.5

    n = min(max_context_size, len(tokens) - 1)
    keys = [[] for _ in range(n_layer)]
    values = [[] for _ in range(n_layer)]
    losses = []
    for pos in range(n):
        x = rmsnorm(sd["wte"][tokens[pos]] + sd["wpe"][pos]) # (C,)
        for li in range(n_layer):
            x_residual = x
            xn = rmsnorm(x)
            keys[li].append(sd[f"layer{li}.attn_wk"] @ xn)
            values[li].append(sd[f"layer{li}.attn_wv"] @ xn)
            q = sd[f"layer{li}.attn_wq"] @ xn # (C,)
            k = torch.stack(keys[li]) # (T, C)
            v = torch.stack(values[li]) # (T, C)
            head_size = q.shape[0] // n_heads
            heads = []
            for h in range(n_heads):
                s = slice(h * head_size, (h + 1) * head_size)
                weights = torch.softmax(k[:, s] @ q[s] / head_size**0.5, dim=0) # (T,)
                heads.append(weights @ v[:, s]) # (H,)
            x = sd[f"layer{li}.attn_wo"] @ torch.cat(heads) + x_residual

            x_residual = x
            x = sd[f"layer{li}.mlp_fc2"] @ torch.relu(sd[f"layer{li}.mlp_fc1"] @ rmsnorm(x)) + x_residual
        logits = sd["lm_head"] @ x # (V,)
        losses.append(-torch.log_softmax(logits, dim=0)[tokens[pos + 1]])
    return torch.stack(losses).mean()


def test_document_loss_against_torch():
    ''' Loss and every parameter gradient match a PyTorch implementation of the same model '''
    _, tokenizer, model = make_tiny_model(n_layer=2)
    # the zero initialized projections would hide most of the gradients, use random weights everywhere
    for p in model.parameters():
        p.data = float(np.random.normal(0.0, 0.5))

    tokens = tokenizer.encode("abba")
    loss = document_loss(model, tokens)
    loss.backward()

    sd_t = {name: torch.tensor(m.tolist(), dtype=torch.float64, requires_grad=True) for name, m in model.state_dict().items()}
    loss_t = torch_document_loss(sd_t, tokens, n_layer=2, n_heads=2, max_context_size=model.max_context_size)
    loss_t.backward()

    assert math.isclose(loss.data, loss_t.item(), rel_tol=1e-9)
    for name, m in model.state_dict().items():
        grad_t = sd_t[name].grad
        assert grad_t is not None
        grad = np.array([[p.grad for p in row] for row in m])
        assert np.allclose(grad, grad_t.numpy(), rtol=1e-7, atol=1e-10), name


def test_logits_are_differentiable():
    _, tokenizer, model = make_tiny_model()
    keys, values = model.make_kv_cache()
    logits = model(tokenizer.bos_token, 0, keys, values)
    loss = sum(logits[1:], logits[0])
    loss.backward()
    assert any(p.grad != 0.0 for p in model.parameters())


#############################################################
## Training and sampling
#############################################################

def test_train_returns_losses():
    docs, tokenizer, model = make_tiny_model()
    losses = train_gpt_model(model, docs, tokenizer, steps=4)
    assert len(losses) == 4
    assert all(isinstance(loss, float) and loss > 0 for loss in losses)


def test_loss_decreases():
    _, tokenizer, model = make_tiny_model()
    tokens = tokenizer.encode("ab")
    before = document_loss(model, tokens).data
    train_gpt_model(model, ["ab"], tokenizer, steps=30, learning_rate=0.05)
    after = document_loss(model, tokens).data
    assert after < before


def test_gradients_reset_after_step():
    docs, tokenizer, model = make_tiny_model()
    train_gpt_model(model, docs, tokenizer, steps=2)
    assert all(p.grad == 0.0 for p in model.parameters())


def test_training_changes_parameters():
    docs, tokenizer, model = make_tiny_model()
    before = [p.data for p in model.parameters()]
    train_gpt_model(model, docs, tokenizer, steps=1)
    after = [p.data for p in model.parameters()]
    assert before != after


def test_sample_only_produces_valid_chars():
    docs, tokenizer, model = make_tiny_model()
    train_gpt_model(model, docs, tokenizer, steps=10)
    samples = sample_from_gpt_model(model, tokenizer, n_samples=10, temperature=0.8)
    assert len(samples) == 10
    for sample in samples:
        assert isinstance(sample, str)
        assert len(sample) <= model.max_context_size
        assert set(sample) <= set(tokenizer.c2i)
