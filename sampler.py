import heapq
import time
import logging

import numpy as np

from errors import InvalidInput
from llama2 import softmax_

logger = logging.getLogger(__name__)

MASK64 = (1 << 64) - 1
XORSHIFT_MULTIPLIER = 0x2545F4914F6CDD1D


def sample_argmax(probabilities):
    """Index of the highest value; the first one wins ties."""
    return int(np.argmax(probabilities))


def sample_mult(probabilities, coin):
    """Sample an index from probabilities that sum to 1, ``coin`` in [0, 1)."""
    cdf = np.cumsum(probabilities)
    i = int(np.searchsorted(cdf, coin, side="right"))
    # in case of rounding errors
    return min(i, len(probabilities) - 1)


def sample_topp(probabilities, topp, indices, coin):
    """
    Top-p (nucleus) sampling.

    Samples from the smallest set of tokens whose cumulative probability
    exceeds ``topp``, so very unlikely tokens never get picked.

    Values below (1 - topp) / (n - 1) cannot be part of the result, so they
    are cropped out before the heap is built and parked at the tail of
    ``indices``. The remaining candidates go into a max-heap and are popped
    until their cumulative probability passes ``topp``.
    """
    n = len(probabilities)
    if n == 1:
        return 0
    cutoff = (1.0 - topp) / (n - 1)
    keep = probabilities >= cutoff
    head = np.flatnonzero(keep)
    n0 = len(head)
    indices[:n0] = head
    indices[n0:] = np.flatnonzero(~keep)[::-1]
    if n0 == 0:
        # nothing passed the cutoff, take the last cropped index
        return int(indices[0])

    heap = [(-float(probabilities[i]), int(i)) for i in indices[:n0]]
    heapq.heapify(heap)

    # truncate the list where cumulative probability of the largest k elements exceeds topp
    cumulative_prob = 0.0
    selected = []
    while heap:
        neg_prob, i = heapq.heappop(heap)
        cumulative_prob -= neg_prob
        selected.append(i)
        if cumulative_prob > topp:
            break

    # sample from the truncated list
    r = coin * cumulative_prob
    cdf = 0.0
    for i in selected:
        cdf += float(probabilities[i])
        if r < cdf:
            return i
    return selected[-1]


class Sampler:
    """Turns logits into the next token; owns a xorshift rng."""

    def __init__(self, vocab_size, temperature, top_p, rng_seed):
        if rng_seed & MASK64 == 0:
            raise InvalidInput("xorshift rng cannot be seeded with 0")
        self.vocab_size = vocab_size
        self.temperature = temperature
        self.top_p = top_p
        self.rng_seed = rng_seed & MASK64
        # buffer only used with nucleus sampling
        self.probindex = np.zeros(vocab_size, dtype=np.int64)

    def random_u32(self):
        # xorshift rng: https://en.wikipedia.org/wiki/Xorshift#xorshift.2A
        s = self.rng_seed
        s ^= s >> 12
        s ^= (s << 25) & MASK64
        s ^= s >> 27
        self.rng_seed = s
        return ((s * XORSHIFT_MULTIPLIER) & MASK64) >> 32

    def random_f32(self):
        """Random float in [0, 1)."""
        return (self.random_u32() >> 8) / 16777216.0

    def sample(self, logits):
        """
        Sample the next token id. When temperature > 0 ``logits`` is
        overwritten in place with the tempered probabilities.
        """
        if self.temperature == 0.0:
            return sample_argmax(np.asarray(logits)[:self.vocab_size])

        logits = np.asarray(logits, dtype=np.float32)[:self.vocab_size]
        logits /= self.temperature
        softmax_(logits)
        coin = self.random_f32()
        if self.top_p <= 0 or self.top_p >= 1:
            return sample_mult(logits, coin)
        return sample_topp(logits, self.top_p, self.probindex, coin)


def make_sampler(vocab_size, temperature, top_p, seed) -> Sampler:
    if seed <= 0:
        seed = int(time.time() * 1000)
        logger.info(f"Seeding sampler with wall clock {seed}")
    return Sampler(vocab_size, temperature, top_p, seed)
