import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "scripts"))

from inspect_checkpoint import header_table, tensor_table
from utils import load_checkpoint


def test_header_table(gqa_checkpoint):
    table = header_table(load_checkpoint(gqa_checkpoint))
    assert "n_kv_heads" in table
    assert "kv_dim" in table
    assert "shared_weights" in table


def test_tensor_table_with_stats(gqa_checkpoint):
    table = tensor_table(load_checkpoint(gqa_checkpoint))
    assert "(2, 8, 16)" in table      # wk of the 2-layer GQA model
    assert "Std" in table
    assert "shared with" not in table


def test_tensor_table_shared_classifier(tiny_checkpoint):
    table = tensor_table(load_checkpoint(tiny_checkpoint), stats=False)
    assert "shared with token_embedding_table" in table
    assert "Mean" not in table
