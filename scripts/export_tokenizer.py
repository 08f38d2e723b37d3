import os
import struct
import sys

from transformers import AutoTokenizer

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import TOKENIZER_PATH


def export_tokenizer(model_path, output_path, header=False):
    """Write a sentencepiece Llama vocabulary as {score}{len}{bytes} records."""
    print(f"Loading tokenizer from {model_path}...")
    tokenizer = AutoTokenizer.from_pretrained(model_path, use_fast=False)
    sp = tokenizer.sp_model
    bos_id, eos_id = sp.bos_id(), sp.eos_id()

    tokens, scores = [], []
    for i in range(sp.vocab_size()):
        piece = sp.id_to_piece(i)
        if i == bos_id:
            piece = "\n<s>\n"
        elif i == eos_id:
            piece = "\n</s>\n"
        # sentencepiece uses U+2581 for spaces
        tokens.append(piece.replace("▁", " ").encode("utf-8"))
        scores.append(sp.get_score(i))

    print(f"Saving {len(tokens)} tokens to {output_path}")
    with open(output_path, "wb") as f:
        if header:
            f.write(struct.pack("<i", max(len(t) for t in tokens)))
        for piece, score in zip(tokens, scores):
            f.write(struct.pack("<fi", score, len(piece)))
            f.write(piece)

    print(f"BOS token: {tokens[bos_id]!r} (ID: {bos_id})")
    print(f"EOS token: {tokens[eos_id]!r} (ID: {eos_id})")
    print("Done!")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Export a Llama tokenizer to the binary vocabulary format")
    parser.add_argument("model_path", type=str, help="local Hugging Face model directory")
    parser.add_argument("output_path", type=str, nargs="?", default=TOKENIZER_PATH)
    parser.add_argument("--header", action="store_true",
                        help="prepend the int32 max_token_length llama2.c expects")
    args = parser.parse_args()

    if not os.path.exists(args.model_path):
        print(f"Error: tokenizer not found at {args.model_path}")
        sys.exit(1)

    export_tokenizer(args.model_path, args.output_path, args.header)
