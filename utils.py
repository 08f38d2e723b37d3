import mmap
import os
import sys
import logging
from dataclasses import dataclass

import numpy as np

from config import Config, HEADER_SIZE, NP_DTYPE
from errors import InvalidCheckpoint

logger = logging.getLogger(__name__)

FLOAT_BYTES = np.dtype(NP_DTYPE).itemsize


@dataclass(frozen=True)
class Weights:
    """
    Read-only views over the mapped checkpoint, one per logical tensor.

    Matmul weights are row-major (out_dim, in_dim). Per-layer tensors are
    stacked on a leading layer axis, so ``wq[l]`` is the query projection of
    layer ``l``.
    """
    token_embedding_table: np.ndarray   # (vocab_size, dim)
    rms_att_weight: np.ndarray          # (layer, dim)
    wq: np.ndarray                      # (layer, n_heads * head_size, dim)
    wk: np.ndarray                      # (layer, n_kv_heads * head_size, dim)
    wv: np.ndarray                      # (layer, n_kv_heads * head_size, dim)
    wo: np.ndarray                      # (layer, dim, n_heads * head_size)
    rms_ffn_weight: np.ndarray          # (layer, dim)
    w1: np.ndarray                      # (layer, hidden_dim, dim)
    w2: np.ndarray                      # (layer, dim, hidden_dim)
    w3: np.ndarray                      # (layer, hidden_dim, dim)
    rms_final_weight: np.ndarray        # (dim,)
    wcls: np.ndarray                    # (vocab_size, dim), aliases the embedding table when shared


@dataclass(frozen=True)
class Checkpoint:
    """Owns the memory mapping; every tensor in ``weights`` is a view into ``data``."""
    path: str
    config: Config
    weights: Weights
    data: mmap.mmap
    file_size: int


def validate_config(config: Config):
    dims = {
        "dim": config.dim, "hidden_dim": config.hidden_dim, "n_layers": config.n_layers,
        "n_heads": config.n_heads, "n_kv_heads": config.n_kv_heads,
        "vocab_size": config.vocab_size, "seq_len": config.seq_len,
    }
    for name, value in dims.items():
        if value <= 0:
            raise InvalidCheckpoint(f"Header field {name} must be positive, got {value}")
    if config.dim % config.n_heads != 0:
        raise InvalidCheckpoint(f"dim {config.dim} is not divisible by n_heads {config.n_heads}")
    if config.n_kv_heads > config.n_heads or config.n_heads % config.n_kv_heads != 0:
        raise InvalidCheckpoint(
            f"n_heads {config.n_heads} is not a multiple of n_kv_heads {config.n_kv_heads}")


def rope_table_size(config: Config) -> int:
    """Floats in each of the two legacy freq_cis regions."""
    return config.seq_len * config.head_size // 2


def checkpoint_nbytes(config: Config) -> int:
    """Total file size implied by the header, header included."""
    dim, hidden_dim, n_layers = config.dim, config.hidden_dim, config.n_layers
    n_floats = (
        config.vocab_size * dim                 # token_embedding_table
        + n_layers * dim                        # rms_att_weight
        + n_layers * dim * dim                  # wq
        + 2 * n_layers * config.kv_dim * dim    # wk, wv
        + n_layers * dim * dim                  # wo
        + n_layers * dim                        # rms_ffn_weight
        + 3 * n_layers * hidden_dim * dim       # w1, w2, w3
        + dim                                   # rms_final_weight
        + 2 * rope_table_size(config)           # freq_cis_real, freq_cis_imag
    )
    if not config.shared_weights:
        n_floats += config.vocab_size * dim     # wcls
    return HEADER_SIZE + n_floats * FLOAT_BYTES


def take_floats(data, position, *shape):
    """Slice a view of ``shape`` floats at ``position[0]`` and advance the cursor."""
    count = int(np.prod(shape))
    view = np.frombuffer(data, dtype=NP_DTYPE, count=count, offset=position[0]).reshape(shape)
    position[0] += count * FLOAT_BYTES
    return view


def memory_map_weights(config: Config, data, offset=HEADER_SIZE) -> Weights:
    """Lay the tensors out in checkpoint order without copying."""
    p = config
    position = [offset]
    token_embedding_table = take_floats(data, position, p.vocab_size, p.dim)
    rms_att_weight = take_floats(data, position, p.n_layers, p.dim)
    wq = take_floats(data, position, p.n_layers, p.n_heads * p.head_size, p.dim)
    wk = take_floats(data, position, p.n_layers, p.n_kv_heads * p.head_size, p.dim)
    wv = take_floats(data, position, p.n_layers, p.n_kv_heads * p.head_size, p.dim)
    wo = take_floats(data, position, p.n_layers, p.dim, p.n_heads * p.head_size)
    rms_ffn_weight = take_floats(data, position, p.n_layers, p.dim)
    w1 = take_floats(data, position, p.n_layers, p.hidden_dim, p.dim)
    w2 = take_floats(data, position, p.n_layers, p.dim, p.hidden_dim)
    w3 = take_floats(data, position, p.n_layers, p.hidden_dim, p.dim)
    rms_final_weight = take_floats(data, position, p.dim)

    # skip what used to be freq_cis_real and freq_cis_imag (for RoPE)
    position[0] += 2 * rope_table_size(p) * FLOAT_BYTES

    if p.shared_weights:
        wcls = token_embedding_table
    else:
        wcls = take_floats(data, position, p.vocab_size, p.dim)

    return Weights(token_embedding_table, rms_att_weight, wq, wk, wv, wo,
                   rms_ffn_weight, w1, w2, w3, rms_final_weight, wcls)


def load_checkpoint(path) -> Checkpoint:
    """Map a checkpoint read-only and expose its config and weights."""
    logger.info(f"Loading checkpoint from {path}")
    if sys.byteorder != "little":
        logger.warning("Host is big-endian; checkpoint floats are read without byte swapping")

    with open(path, "rb") as f:
        file_size = os.fstat(f.fileno()).st_size
        if file_size < HEADER_SIZE:
            raise InvalidCheckpoint(
                f"{path}: {file_size} bytes is shorter than the {HEADER_SIZE}-byte header")
        # the mapping stays valid after the file object is closed
        data = mmap.mmap(f.fileno(), 0, access=mmap.ACCESS_READ)

    config = Config.from_header(data)
    try:
        validate_config(config)
        expected = checkpoint_nbytes(config)
        if file_size < expected:
            raise InvalidCheckpoint(
                f"{path}: header implies {expected} bytes but the file has {file_size}")
    except InvalidCheckpoint:
        data.close()
        raise
    if file_size > expected:
        logger.warning(f"{path}: ignoring {file_size - expected} trailing bytes")

    logger.info(f"{config}")
    weights = memory_map_weights(config, data)
    if config.shared_weights:
        logger.info("Using shared embedding weights for the classifier.")
    else:
        logger.info("Using separate classifier weights.")
    return Checkpoint(str(path), config, weights, data, file_size)
