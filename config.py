from dataclasses import dataclass
import os
import struct
import time
import logging
import numpy as np

logger = logging.getLogger(__name__)

# Base directory
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Model paths
CHECKPOINT_PATH = os.path.join(BASE_DIR, "stories15M.bin")
TOKENIZER_PATH = os.path.join(BASE_DIR, "tokenizer.bin")

# Data type configuration: checkpoints store little-endian float32
NP_DTYPE = np.float32

# Checkpoint header: dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size, seq_len
HEADER_FORMAT = "<7i"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

# Special tokens (sentencepiece Llama vocabulary)
UNK_ID = 0
BOS_ID = 1
EOS_ID = 2
BYTE_FALLBACK_OFFSET = 3     # raw byte b lives at token id b + 3

NORM_EPS = 1e-5
ROPE_THETA = 10000.0

# Llama 2 chat schema
CHAT_SYSTEM_TEMPLATE = "[INST] <<SYS>>\n{system}\n<</SYS>>\n\n{user} [/INST]"
CHAT_USER_TEMPLATE = "[INST] {user} [/INST]"


@dataclass(frozen=True)
class Config:
    """Hyperparameters read from the checkpoint header."""
    dim: int                 # transformer dimension
    hidden_dim: int          # for ffn layers
    n_layers: int            # number of layers
    n_heads: int             # number of query heads
    n_kv_heads: int          # number of key/value heads (can be < query heads because of multiquery)
    vocab_size: int          # vocabulary size, always the absolute value of the header field
    seq_len: int             # max sequence length
    shared_weights: bool     # classifier aliases the token embedding table

    @classmethod
    def from_header(cls, buffer, offset=0):
        dim, hidden_dim, n_layers, n_heads, n_kv_heads, vocab_size, seq_len = \
            struct.unpack_from(HEADER_FORMAT, buffer, offset)
        # the sign of vocab_size only encodes whether the classifier is shared
        return cls(dim, hidden_dim, n_layers, n_heads, n_kv_heads,
                   abs(vocab_size), seq_len, shared_weights=vocab_size > 0)

    def to_header(self) -> bytes:
        vocab_size = self.vocab_size if self.shared_weights else -self.vocab_size
        return struct.pack(HEADER_FORMAT, self.dim, self.hidden_dim, self.n_layers,
                           self.n_heads, self.n_kv_heads, vocab_size, self.seq_len)

    @property
    def head_size(self) -> int:
        return self.dim // self.n_heads

    @property
    def kv_dim(self) -> int:
        return (self.dim * self.n_kv_heads) // self.n_heads

    @property
    def kv_mul(self) -> int:
        # integer multiplier of the kv sharing in multiquery
        return self.n_heads // self.n_kv_heads


class RunArgs:
    def __init__(self):
        # Sampling parameters
        self.temperature = 1.0       # 0.0 = greedy deterministic, 1.0 = original distribution
        self.top_p = 0.9             # top-p in nucleus sampling, 1.0 = off
        self.seed = 0                # 0 seeds the rng with the wall clock

        # Runtime parameters
        self.steps = 256             # max number of steps to run for, 0 = use seq_len
        self.use_jit = False         # numba kernels for matmul and attention

    def validate(self, seq_len):
        """Apply the parameter overrides used before building a session."""
        if self.seed <= 0:
            self.seed = int(time.time() * 1000)
        if self.temperature < 0.0:
            logger.warning(f"Negative temperature {self.temperature}, using greedy decoding")
            self.temperature = 0.0
        if self.top_p < 0.0 or self.top_p > 1.0:
            logger.warning(f"top_p {self.top_p} outside [0, 1], using 0.9")
            self.top_p = 0.9
        if self.steps <= 0 or self.steps > seq_len:
            self.steps = seq_len
        return self
