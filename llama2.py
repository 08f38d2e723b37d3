import math
import logging

import numba
import numpy as np

import config as model_config
import utils as model_utils
from errors import InvalidInput

logger = logging.getLogger(__name__)


def softmax(x):
    """
    Computes softmax along the last dimension.

    Formula: softmax(x_i) = exp(x_i - max(x)) / sum_j(exp(x_j - max(x)))

    Shape:
        x: (..., n)
        output: (..., n) with values in range [0, 1] summing to 1 along last dimension
    """
    x_max = np.max(x, axis=-1, keepdims=True)
    exp_x = np.exp(x - x_max)
    return exp_x / np.sum(exp_x, axis=-1, keepdims=True)


def softmax_(x):
    """In-place softmax of a 1-D buffer, used on logits and attention rows."""
    x -= np.max(x)
    np.exp(x, out=x)
    x /= np.sum(x)
    return x


def silu(x):
    """
    SiLU (Sigmoid Linear Unit) activation function.

    Formula: silu(x) = x * sigmoid(x) = x * (1 / (1 + exp(-x)))
    """
    with np.errstate(over="ignore"):
        return x * (1.0 / (1.0 + np.exp(-x)))


def rms_norm(x, weight, eps=model_config.NORM_EPS):
    """
    Root Mean Square (RMS) Layer Normalization.

    Formula: norm(x) = x / sqrt(mean(x²) + eps) * weight

    Shape:
        x: (..., dim)
        weight: (dim,)
        output: same shape as x
    """
    return x / np.sqrt(np.mean(x ** 2, axis=-1, keepdims=True) + eps) * weight


def compute_cos_sin_cache(dim, head_size, max_seq_len, base=model_config.ROPE_THETA):
    """
    Precomputes cosine and sine values for rotary position embeddings.

    Pair ``p`` covers elements (2p, 2p+1) of the full query vector, so its
    frequency is base^(-((2p) mod head_size) / head_size).

    Returns:
        cos, sin: (max_seq_len, dim // 2)
    """
    head_dim = np.arange(0, dim - 1, 2) % head_size
    inv_freq = 1.0 / (base ** (head_dim / head_size))
    t = np.arange(max_seq_len, dtype=np.float64)
    freqs = np.outer(t, inv_freq)
    return np.cos(freqs).astype(model_config.NP_DTYPE), np.sin(freqs).astype(model_config.NP_DTYPE)


def rotate_pairs(vec, cos, sin):
    """Rotate consecutive pairs (vec[2p], vec[2p+1]) in place by the given angles."""
    n = len(cos)
    v0 = vec[0:2 * n:2].copy()
    v1 = vec[1:2 * n:2].copy()
    vec[0:2 * n:2] = v0 * cos - v1 * sin
    vec[1:2 * n:2] = v0 * sin + v1 * cos


def apply_rotary_emb(q, k, cos, sin):
    """
    RoPE relative positional encoding for a single position.

    The query is rotated across its full width. The key is only as wide as
    kv_dim under multiquery attention, so it only takes the leading pairs.
    """
    rotate_pairs(q, cos, sin)
    n_k = len(k) // 2
    rotate_pairs(k, cos[:n_k], sin[:n_k])


def matmul(xout, x, w):
    """
    W (d, n) @ x (n,) -> xout (d,)

    Rows are independent; numpy hands this to BLAS, which splits them
    across threads and SIMD lanes.
    """
    np.matmul(w, x, out=xout)
    return xout


@numba.njit(parallel=True, fastmath=True)
def matmul_jit(xout, x, w):
    d, n = w.shape
    upper = n - n % 4
    for i in numba.prange(d):
        # four partial sums per row, reduced at the end
        s0 = np.float32(0.0)
        s1 = np.float32(0.0)
        s2 = np.float32(0.0)
        s3 = np.float32(0.0)
        for j in range(0, upper, 4):
            s0 += w[i, j] * x[j]
            s1 += w[i, j + 1] * x[j + 1]
            s2 += w[i, j + 2] * x[j + 2]
            s3 += w[i, j + 3] * x[j + 3]
        val = s0 + s1 + s2 + s3
        for j in range(upper, n):
            val += w[i, j] * x[j]
        xout[i] = val
    return xout


def attention(xb, att, q, key_cache, value_cache, pos, n_heads, n_kv_heads, head_size):
    """
    Multi-head attention over timesteps [0, pos] with grouped-query sharing.

    Query head h reads key/value head h // kv_mul. Each head writes only its
    own row of ``att`` and its own head_size slice of ``xb``.

    Shape:
        q: (n_heads * head_size,)
        key_cache, value_cache: (seq_len, n_kv_heads * head_size) for one layer
        att: (n_heads, seq_len)
        xb: (n_heads * head_size,)
    """
    kv_mul = n_heads // n_kv_heads
    t = pos + 1
    xq = q.reshape(n_kv_heads, kv_mul, head_size)
    k_seq = key_cache[:t].reshape(t, n_kv_heads, head_size)
    v_seq = value_cache[:t].reshape(t, n_kv_heads, head_size)

    scores = np.einsum('gmd,tgd->gmt', xq, k_seq) / np.float32(math.sqrt(head_size))
    scores = softmax(scores.reshape(n_heads, t))
    att[:, :t] = scores

    out = np.einsum('gmt,tgd->gmd', scores.reshape(n_kv_heads, kv_mul, t), v_seq)
    xb[:] = out.reshape(-1)
    return xb


@numba.njit(parallel=True, fastmath=True)
def attention_jit(xb, att, q, key_cache, value_cache, pos, n_heads, n_kv_heads, head_size):
    kv_mul = n_heads // n_kv_heads
    scale = np.float32(1.0 / math.sqrt(head_size))
    for h in numba.prange(n_heads):
        q_off = h * head_size
        kv_off = (h // kv_mul) * head_size

        # attention scores for this head
        max_val = -np.inf
        for t in range(pos + 1):
            score = np.float32(0.0)
            for i in range(head_size):
                score += q[q_off + i] * key_cache[t, kv_off + i]
            score *= scale
            att[h, t] = score
            if score > max_val:
                max_val = score

        # softmax from 0..pos inclusively
        total = np.float32(0.0)
        for t in range(pos + 1):
            e = np.exp(att[h, t] - max_val)
            att[h, t] = e
            total += e
        for t in range(pos + 1):
            att[h, t] /= total

        # weighted sum of the values
        for i in range(head_size):
            xb[q_off + i] = 0.0
        for t in range(pos + 1):
            a = att[h, t]
            for i in range(head_size):
                xb[q_off + i] += a * value_cache[t, kv_off + i]
    return xb


class RunState:
    """Buffers for the wave of activations in the forward pass, plus the kv cache."""

    def __init__(self, config):
        dtype = model_config.NP_DTYPE
        kv_dim = config.kv_dim
        self.x = np.zeros(config.dim, dtype=dtype)             # activation at current time stamp
        self.xb = np.zeros(config.dim, dtype=dtype)            # same, but inside a residual branch
        self.xb2 = np.zeros(config.dim, dtype=dtype)           # an additional buffer just for convenience
        self.hb = np.zeros(config.hidden_dim, dtype=dtype)     # buffer for hidden dimension in the ffn
        self.hb2 = np.zeros(config.hidden_dim, dtype=dtype)
        self.q = np.zeros(config.dim, dtype=dtype)
        self.k = np.zeros(kv_dim, dtype=dtype)
        self.v = np.zeros(kv_dim, dtype=dtype)
        self.att = np.zeros((config.n_heads, config.seq_len), dtype=dtype)
        self.logits = np.zeros(config.vocab_size, dtype=dtype)
        # position pos of layer l lives at key_cache[l, pos]
        self.key_cache = np.zeros((config.n_layers, config.seq_len, kv_dim), dtype=dtype)
        self.value_cache = np.zeros_like(self.key_cache)


class Transformer:
    """
    Weights shared read-only across sessions, and the RunState of the current one.

    ``use_jit`` selects the numba kernels for matmul and attention instead of
    the numpy/BLAS path.
    """

    def __init__(self, config, weights, use_jit=False, checkpoint=None):
        self.config = config
        self.weights = weights
        self.use_jit = use_jit
        # keeps the memory mapping alive for as long as the weights are used
        self.checkpoint = checkpoint
        self.cos, self.sin = compute_cos_sin_cache(config.dim, config.head_size, config.seq_len)
        self.state = RunState(config)
        self._matmul = matmul_jit if use_jit else matmul
        self._attention = attention_jit if use_jit else attention
        logger.info(f"Transformer ready: {config.n_layers} layers, dim {config.dim}, "
                    f"{'numba' if use_jit else 'numpy'} kernels")

    def new_state(self):
        """Fresh buffers and an empty kv cache for a new session."""
        return RunState(self.config)

    def reset(self):
        self.state = self.new_state()

    def forward(self, token, pos, state=None):
        """
        Logits for the token following ``token`` at position ``pos``.

        Writes the key/value projections of every layer into the cache at
        ``pos``. Callers must feed positions 0, 1, 2, ... in order within a
        session; attention reads cache entries [0, pos] as already written.
        """
        p, w = self.config, self.weights
        s = self.state if state is None else state
        if not 0 <= token < p.vocab_size:
            raise InvalidInput(f"token {token} outside vocabulary of {p.vocab_size}")
        if not 0 <= pos < p.seq_len:
            raise InvalidInput(f"position {pos} outside sequence length {p.seq_len}")

        matmul = self._matmul
        x = s.x
        cos, sin = self.cos[pos], self.sin[pos]

        # copy the token embedding into x
        x[:] = w.token_embedding_table[token]

        for l in range(p.n_layers):
            # attention rmsnorm
            s.xb[:] = rms_norm(x, w.rms_att_weight[l])

            # qkv matmuls for this position
            matmul(s.q, s.xb, w.wq[l])
            matmul(s.k, s.xb, w.wk[l])
            matmul(s.v, s.xb, w.wv[l])

            apply_rotary_emb(s.q, s.k, cos, sin)

            # save key, value at this time step to the kv cache
            s.key_cache[l, pos] = s.k
            s.value_cache[l, pos] = s.v

            self._attention(s.xb, s.att, s.q, s.key_cache[l], s.value_cache[l],
                            pos, p.n_heads, p.n_kv_heads, p.head_size)

            # output of the attention, residual connection back into x
            matmul(s.xb2, s.xb, w.wo[l])
            x += s.xb2

            # ffn rmsnorm
            s.xb[:] = rms_norm(x, w.rms_ffn_weight[l])

            # w2(silu(w1(x)) * w3(x))
            matmul(s.hb, s.xb, w.w1[l])
            matmul(s.hb2, s.xb, w.w3[l])
            s.hb[:] = silu(s.hb) * s.hb2
            matmul(s.xb, s.hb, w.w2[l])

            # residual connection
            x += s.xb

        x[:] = rms_norm(x, w.rms_final_weight)

        # classifier into logits
        matmul(s.logits, x, w.wcls)
        return s.logits


def load_model(checkpoint_path, use_jit=False) -> Transformer:
    checkpoint = model_utils.load_checkpoint(checkpoint_path)
    return Transformer(checkpoint.config, checkpoint.weights, use_jit=use_jit, checkpoint=checkpoint)
