import os
import sys
import dataclasses

import numpy as np
from tabulate import tabulate

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import CHECKPOINT_PATH
from utils import load_checkpoint


def header_table(checkpoint):
    config = checkpoint.config
    rows = [[f.name, getattr(config, f.name)] for f in dataclasses.fields(config)]
    rows += [["head_size", config.head_size], ["kv_dim", config.kv_dim],
             ["file_size", checkpoint.file_size]]
    return tabulate(rows, headers=["Field", "Value"], tablefmt="grid")


def tensor_table(checkpoint, stats=True):
    """One row per tensor: shape and, optionally, value statistics."""
    rows = []
    weights = checkpoint.weights
    for field in dataclasses.fields(weights):
        tensor = getattr(weights, field.name)
        row = [field.name, str(tensor.shape)]
        if field.name == "wcls" and tensor is weights.token_embedding_table:
            row.append("shared with token_embedding_table")
        elif stats:
            t = tensor.astype(np.float64)
            row += [f"{t.min():.4f}", f"{t.max():.4f}", f"{t.mean():.4f}", f"{t.std():.4f}"]
        rows.append(row)
    headers = ["Tensor", "Shape"] + (["Min", "Max", "Mean", "Std"] if stats else [])
    return tabulate(rows, headers=headers, tablefmt="grid")


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Print the header and tensors of a checkpoint")
    parser.add_argument("checkpoint", type=str, nargs="?", default=CHECKPOINT_PATH)
    parser.add_argument("--no-stats", action="store_true", help="skip min/max/mean/std (faster)")
    args = parser.parse_args()

    checkpoint = load_checkpoint(args.checkpoint)
    print(header_table(checkpoint))
    print()
    print(tensor_table(checkpoint, stats=not args.no_stats))


if __name__ == "__main__":
    main()
