import os
import struct
import sys

import numpy as np
import pytest

# Add repo root to path to import from root directory
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config, HEADER_SIZE
from utils import checkpoint_nbytes

TINY_CONFIG = Config(dim=8, hidden_dim=16, n_layers=1, n_heads=2, n_kv_heads=2,
                     vocab_size=32, seq_len=16, shared_weights=True)

GQA_CONFIG = Config(dim=16, hidden_dim=24, n_layers=2, n_heads=4, n_kv_heads=2,
                    vocab_size=40, seq_len=12, shared_weights=False)


def n_floats(config):
    return (checkpoint_nbytes(config) - HEADER_SIZE) // 4


def write_checkpoint(path, config, values=None, seed=0):
    """Header plus every tensor in file order; random N(0, 0.5) unless ``values`` is given."""
    if values is None:
        rng = np.random.default_rng(seed)
        values = rng.normal(0.0, 0.5, n_floats(config))
    with open(path, "wb") as f:
        f.write(config.to_header())
        np.asarray(values, dtype="<f4").tofile(f)
    return str(path)


def write_vocab(path, pieces, scores=None, header=False):
    if scores is None:
        scores = [0.0] * len(pieces)
    with open(path, "wb") as f:
        if header:
            f.write(struct.pack("<i", max(len(p.encode("utf-8")) for p in pieces)))
        for piece, score in zip(pieces, scores):
            data = piece.encode("utf-8")
            f.write(struct.pack("<fi", score, len(data)))
            f.write(data)
    return str(path)


def byte_level_vocab(size, extra=()):
    """<unk>, <s>, </s>, 256 byte tokens, then ``extra`` pieces, padded to ``size``."""
    pieces = ["<unk>", "\n<s>\n", "\n</s>\n"] + [f"<0x{b:02X}>" for b in range(256)]
    pieces += list(extra)
    pieces += [f"<pad{i}>" for i in range(size - len(pieces))]
    return pieces[:size]


@pytest.fixture
def make_checkpoint(tmp_path):
    def _make(config=TINY_CONFIG, values=None, seed=0, name="model.bin"):
        return write_checkpoint(tmp_path / name, config, values=values, seed=seed)
    return _make


@pytest.fixture
def make_vocab(tmp_path):
    def _make(pieces, scores=None, header=False, name="tokenizer.bin"):
        return write_vocab(tmp_path / name, pieces, scores, header=header)
    return _make


@pytest.fixture
def tiny_checkpoint(make_checkpoint):
    return make_checkpoint(TINY_CONFIG)


@pytest.fixture
def gqa_checkpoint(make_checkpoint):
    return make_checkpoint(GQA_CONFIG, seed=1)
