# GPT-2 like Language Model, built from scalar Values only
# Run with: python -m scalargpt.lm.gpt

import datetime
import random

import numpy as np

from ..autograd import Value, add, relu, log, graph_stats
from ..nn import Matrix, Module, init_matrix, linear, softmax, rmsnorm
from .dataset import load_dataset, shuffle_dataset
from .tokenizer import CharacterTokenizer

# Dimension Notations:
# T: Sequence length (positions seen so far)
# max(T): Maximum sequence length
# C: Embedding dimension
# H: Attention Head size
# V: Vocabulary size
# F: feed forward network hidden layer size

DEFAULT_EMBED_SIZE = 16
DEFAULT_N_HEADS = 4
DEFAULT_N_LAYER = 1
DEFAULT_MAX_CONTEXT_SIZE = 16
DEFAULT_INIT_STD = 0.08

# [layer][position][C], one entry per processed token, grows as the model is called
KVCache = list[list[list[Value]]]


def reset_seeds(seed: int = 0):
    random.seed(seed)
    np.random.seed(seed)


def _residual(x: list[Value], x_residual: list[Value]) -> list[Value]:
    return [add(a, b) for a, b in zip(x, x_residual)]


class FeedForward(Module):
    def __init__(self, embed_size: int, ff_hidden_size: int | None = None, init_std: float = DEFAULT_INIT_STD):
        if ff_hidden_size is None:
            ff_hidden_size = 4 * embed_size # Magic number 4 is from the GPT-2 paper

        self.linear_expand = init_matrix(ff_hidden_size, embed_size, init_std) # (F, C)
        # KEY IDEA: zero init, the block output is 0 and the residual path passes x through unchanged at the start
        self.linear_shrink = init_matrix(embed_size, ff_hidden_size, 0.0) # (C, F)

    def __call__(self, x: list[Value]) -> list[Value]:
        # x: (C,)
        x = linear(x, self.linear_expand) # (F,)
        x = [relu(xi) for xi in x] # (F,)
        x = linear(x, self.linear_shrink) # (C,)
        return x

    def parameters(self) -> list[Value]:
        return self.linear_expand.parameters() + self.linear_shrink.parameters()


class CausalSelfAttention(Module):
    '''
    Multi-head self attention over the positions stored in the KV cache
    '''

    def __init__(self, embed_size: int, n_heads: int, init_std: float = DEFAULT_INIT_STD):
        # effectively splits the embedding dimension into n_heads
        assert embed_size % n_heads == 0, "embed_size must be divisible by n_heads"
        self.n_heads = n_heads
        self.head_size = embed_size // n_heads # H

        # pure matrix multiplication, no bias
        self.q = init_matrix(embed_size, embed_size, init_std) # query, (C, C)
        self.k = init_matrix(embed_size, embed_size, init_std) # key, (C, C)
        self.v = init_matrix(embed_size, embed_size, init_std) # value, (C, C)
        self.proj = init_matrix(embed_size, embed_size, 0.0) # (C, C), zero init as in FeedForward

    def __call__(self, x: list[Value], keys: list[list[Value]], values: list[list[Value]]) -> list[Value]:
        # x: (C,)
        q = linear(x, self.q) # (C,)
        k = linear(x, self.k) # (C,)
        v = linear(x, self.v) # (C,)

        # KEY IDEA: causal masking for free, the cache only holds the current and past positions
        # keys/values are mutated in place so the next position can attend to this one
        keys.append(k) # (T, C)
        values.append(v) # (T, C)

        heads_out: list[Value] = []
        for h in range(self.n_heads):
            hs = h * self.head_size
            q_h = q[hs : hs + self.head_size] # (H,)
            k_h = [ki[hs : hs + self.head_size] for ki in keys] # (T, H)
            v_h = [vi[hs : hs + self.head_size] for vi in values] # (T, H)

            # scale to maintain the variance of the output
            weights = [sum((qj * kj for qj, kj in zip(q_h, k_t)), Value(0.0)) / self.head_size**0.5 for k_t in k_h] # (T,)
            weights = softmax(weights) # (T,)
            out = [sum((weights[t] * v_h[t][j] for t in range(len(v_h))), Value(0.0)) for j in range(self.head_size)] # (H,)
            heads_out.extend(out)

        return linear(heads_out, self.proj) # (C,)

    def parameters(self) -> list[Value]:
        return self.q.parameters() + self.k.parameters() + self.v.parameters() + self.proj.parameters()


class TransformerBlock(Module):
    def __init__(self, embed_size: int, n_heads: int, init_std: float = DEFAULT_INIT_STD):
        self.attention = CausalSelfAttention(embed_size, n_heads, init_std)
        self.feed_forward = FeedForward(embed_size, init_std=init_std)

    def __call__(self, x: list[Value], keys: list[list[Value]], values: list[list[Value]]) -> list[Value]:
        # KEY IDEA: residual/skip connection around the attention block, normalization before each block
        x = _residual(self.attention(rmsnorm(x), keys, values), x) # (C,)
        x = _residual(self.feed_forward(rmsnorm(x)), x) # (C,)
        return x

    def parameters(self) -> list[Value]:
        return self.attention.parameters() + self.feed_forward.parameters()


class GPTLanguageModel(Module):

    def __init__(self, vocab_size: int, embed_size: int = DEFAULT_EMBED_SIZE, max_context_size: int = DEFAULT_MAX_CONTEXT_SIZE, n_layer: int = DEFAULT_N_LAYER, n_heads: int = DEFAULT_N_HEADS, init_std: float = DEFAULT_INIT_STD):
        # each token reads off its embedding vector from a lookup table
        self.token_embedding_table = init_matrix(vocab_size, embed_size, init_std) # (V, C)
        self.position_embedding_table = init_matrix(max_context_size, embed_size, init_std) # (max(T), C)

        self.blocks = [TransformerBlock(embed_size, n_heads, init_std) for _ in range(n_layer)]

        self.lm_head = init_matrix(vocab_size, embed_size, init_std) # (V, C)

        self.vocab_size = vocab_size
        self.embed_size = embed_size
        self.max_context_size = max_context_size

    def __call__(self, token: int, position: int, keys: KVCache, values: KVCache) -> list[Value]:
        '''
        Logits (V,) for the token following `token`, which sits at `position`.
        Processes one token at a time: call it for positions 0, 1, 2... with the same caches.
        '''
        assert 0 <= position < self.max_context_size, f"position {position} out of context"

        token_embed = self.token_embedding_table[token] # (C,)
        pos_embed = self.position_embedding_table[position] # (C,)
        x = _residual(token_embed, pos_embed) # (C,)
        x = rmsnorm(x)

        for block, block_keys, block_values in zip(self.blocks, keys, values):
            x = block(x, block_keys, block_values) # (C,)

        logits = linear(x, self.lm_head) # (V,)
        return logits

    def make_kv_cache(self) -> tuple[KVCache, KVCache]:
        keys: KVCache = [[] for _ in self.blocks]
        values: KVCache = [[] for _ in self.blocks]
        return keys, values

    def state_dict(self) -> dict[str, Matrix]:
        '''All weight matrices by name (borrowing PyTorch's terminology)'''
        sd = {
            "wte": self.token_embedding_table,
            "wpe": self.position_embedding_table,
        }
        for i, block in enumerate(self.blocks):
            sd[f"layer{i}.attn_wq"] = block.attention.q
            sd[f"layer{i}.attn_wk"] = block.attention.k
            sd[f"layer{i}.attn_wv"] = block.attention.v
            sd[f"layer{i}.attn_wo"] = block.attention.proj
            sd[f"layer{i}.mlp_fc1"] = block.feed_forward.linear_expand
            sd[f"layer{i}.mlp_fc2"] = block.feed_forward.linear_shrink
        sd["lm_head"] = self.lm_head
        return sd

    def parameters(self) -> list[Value]:
        return [p for matrix in self.state_dict().values() for p in matrix.parameters()]


def cross_entropy(logits: list[Value], target: int) -> Value:
    # -log(p(correct token))
    probs = softmax(logits)
    return -log(probs[target])


def document_loss(model: GPTLanguageModel, tokens: list[int]) -> Value:
    '''Average next-token loss over one document, truncated to the context size'''
    n = min(model.max_context_size, len(tokens) - 1) # -1 because we're predicting the next token
    assert n > 0, "a document needs at least 2 tokens"

    # fresh KV cache per document, each document is an independent sequence
    keys, values = model.make_kv_cache()
    losses = [cross_entropy(model(tokens[pos], pos, keys, values), tokens[pos + 1]) for pos in range(n)]
    return sum(losses[1:], losses[0]) / n


def train_gpt_model(model: GPTLanguageModel, docs: list[str], tokenizer: CharacterTokenizer, steps: int = 1000, learning_rate: float = 0.01, beta1: float = 0.85, beta2: float = 0.99, eps: float = 1e-8, log_every: int = 10) -> list[float]:
    '''
    One document per step, Adam with a linearly decaying learning rate. Returns the loss of every step.
    '''
    params = model.parameters()

    # initialize Adam optimizer states
    m = np.zeros(len(params))
    v = np.zeros(len(params))

    losses: list[float] = []
    for step in range(steps):
        tokens = tokenizer.encode(docs[step % len(docs)])

        # forward pass: a brand new graph from the parameters to the loss
        loss = document_loss(model, tokens)
        if step == 0:
            stats = graph_stats(loss)
            print(f'{datetime.datetime.now().strftime("%d/%m/%Y, %H:%M:%S")} Graph of the first step: {stats["nodes"]:,} nodes, {stats["edges"]:,} edges')

        # backward pass, the parameter gradients start at zero
        loss.backward()

        # Adam optimizer
        lr_t = learning_rate * (1 - step / steps)
        grad = np.array([p.grad for p in params])
        m = beta1 * m + (1 - beta1) * grad
        v = beta2 * v + (1 - beta2) * grad ** 2
        m_hat = m / (1 - beta1 ** (step + 1))
        v_hat = v / (1 - beta2 ** (step + 1))
        update = lr_t * m_hat / (np.sqrt(v_hat) + eps)
        for p, u in zip(params, update):
            p.data -= float(u)

        # KEY IDEA: backward() only accumulates, reset here or the next step sums up both gradients
        model.zero_grad()

        losses.append(loss.data)
        if (step + 1) % log_every == 0:
            print(f'{datetime.datetime.now().strftime("%d/%m/%Y, %H:%M:%S")} Step [{step+1}/{steps}], Loss: {loss.data:.4f}')

    return losses


def sample_from_gpt_model(model: GPTLanguageModel, tokenizer: CharacterTokenizer, n_samples: int = 20, temperature: float = 0.5) -> list[str]:
    '''
    Start from BOS and feed each sampled token back in, until BOS comes out again or the context is full.
    Lower temperature is more conservative, higher gives more diverse output.
    '''
    assert temperature > 0

    generated_samples = []
    for _ in range(n_samples):
        keys, values = model.make_kv_cache()
        token = tokenizer.bos_token
        content_tokens: list[int] = []
        for position in range(model.max_context_size):
            logits = model(token, position, keys, values)
            probs = softmax([logit / temperature for logit in logits])
            p = np.array([prob.data for prob in probs])
            token = int(np.random.choice(len(p), p=p / p.sum()))
            if token == tokenizer.bos_token:
                break
            content_tokens.append(token)
        generated_samples.append(tokenizer.decode(content_tokens))

    return generated_samples


def main(dataset_path: str, steps: int, n_samples: int, temperature: float):
    reset_seeds()

    docs = shuffle_dataset(load_dataset(dataset_path))
    tokenizer = CharacterTokenizer()
    tokenizer.train(docs)
    # documents with characters the tokenizer ignores can not be encoded
    docs = [doc for doc in docs if all(c in tokenizer.c2i for c in doc)]
    print(f"Documents: {len(docs)}, Vocab size: {tokenizer.vocab_size}")

    model = GPTLanguageModel(vocab_size=tokenizer.vocab_size)
    print("Parameter count: ", len(model.parameters()))

    losses = train_gpt_model(model, docs, tokenizer, steps=steps)
    print(f"Loss: {losses[0]:.4f} -> {losses[-1]:.4f}")

    samples = sample_from_gpt_model(model, tokenizer, n_samples=n_samples, temperature=temperature)
    for i, sample in enumerate(samples):
        print(f"sample {i + 1:2d}: {sample}")


if __name__ == "__main__":
    main(dataset_path="input.txt", steps=1000, n_samples=20, temperature=0.5)
