import os
import sys
import logging

import numpy as np
import torch
from tqdm import tqdm
from transformers import AutoModelForCausalLM

# Add project root to Python path to import config
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from config import Config, NP_DTYPE, ROPE_THETA

TORCH_DTYPE = torch.float32

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def unpermute(w, n_heads, dim1, dim2):
    """Undo the HF q/k row order so consecutive pairs rotate together."""
    return w.view(n_heads, 2, dim1 // n_heads // 2, dim2).transpose(1, 2).reshape(dim1, dim2)


def serialize(f, tensor):
    if isinstance(tensor, torch.Tensor):
        tensor = tensor.detach().cpu().to(TORCH_DTYPE).numpy()
    np.ascontiguousarray(tensor, dtype=NP_DTYPE).astype("<f4").tofile(f)


def export(model_path, output_path, max_seq_len=None):
    """Write a Hugging Face Llama model as a flat float32 checkpoint."""
    logger.info(f"Loading model from {model_path}...")
    model = AutoModelForCausalLM.from_pretrained(model_path, torch_dtype=TORCH_DTYPE)
    model = model.eval()
    hf = model.config

    n_kv_heads = getattr(hf, "num_key_value_heads", None) or hf.num_attention_heads
    seq_len = max_seq_len or hf.max_position_embeddings
    embed = model.model.embed_tokens.weight
    lm_head = model.lm_head.weight
    shared = bool(torch.equal(embed, lm_head))

    config = Config(
        dim=hf.hidden_size,
        hidden_dim=hf.intermediate_size,
        n_layers=hf.num_hidden_layers,
        n_heads=hf.num_attention_heads,
        n_kv_heads=n_kv_heads,
        vocab_size=hf.vocab_size,
        seq_len=seq_len,
        shared_weights=shared,
    )
    logger.info(f"{config}")
    layers = model.model.layers
    dim, kv_dim = config.dim, config.kv_dim

    with open(output_path, "wb") as f:
        f.write(config.to_header())
        serialize(f, embed)
        for layer in layers:
            serialize(f, layer.input_layernorm.weight)
        for layer in tqdm(layers, desc="wq"):
            serialize(f, unpermute(layer.self_attn.q_proj.weight, config.n_heads, dim, dim))
        for layer in tqdm(layers, desc="wk"):
            serialize(f, unpermute(layer.self_attn.k_proj.weight, config.n_kv_heads, kv_dim, dim))
        for layer in tqdm(layers, desc="wv"):
            serialize(f, layer.self_attn.v_proj.weight)
        for layer in tqdm(layers, desc="wo"):
            serialize(f, layer.self_attn.o_proj.weight)
        for layer in layers:
            serialize(f, layer.post_attention_layernorm.weight)
        for layer in tqdm(layers, desc="w1"):
            serialize(f, layer.mlp.gate_proj.weight)
        for layer in tqdm(layers, desc="w2"):
            serialize(f, layer.mlp.down_proj.weight)
        for layer in tqdm(layers, desc="w3"):
            serialize(f, layer.mlp.up_proj.weight)
        serialize(f, model.model.norm.weight)

        # legacy freq_cis_real / freq_cis_imag regions, skipped by the loader
        head_size = config.head_size
        inv_freq = 1.0 / (ROPE_THETA ** (np.arange(0, head_size, 2)[: head_size // 2] / head_size))
        freqs = np.outer(np.arange(seq_len), inv_freq)
        serialize(f, np.cos(freqs))
        serialize(f, np.sin(freqs))

        if not shared:
            serialize(f, lm_head)

    logger.info(f"Wrote {output_path} ({os.path.getsize(output_path)} bytes)")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Export a Hugging Face Llama model to a .bin checkpoint")
    parser.add_argument("model_path", type=str, help="local Hugging Face model directory")
    parser.add_argument("output_path", type=str, help="checkpoint to write")
    parser.add_argument("--max-seq-len", type=int, help="override max_position_embeddings")
    args = parser.parse_args()

    if not os.path.exists(args.model_path):
        logger.error(f"Error: HuggingFace model not found at {args.model_path}")
        sys.exit(1)

    export(args.model_path, args.output_path, args.max_seq_len)
