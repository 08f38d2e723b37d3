import pytest
import numpy as np
import torch
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from llama2 import matmul, matmul_jit


@pytest.mark.parametrize("kernel", [matmul, matmul_jit], ids=["numpy", "numba"])
@pytest.mark.parametrize("d,n", [(64, 128), (37, 29), (5, 3), (1, 1)])
def test_matmul_numpy_vs_torch(kernel, d, n):
    """
    W (d, n) @ x (n,) -> xout (d,) compared with torch.mv. The odd shapes
    exercise the tail after the four-lane accumulation.
    """
    np.random.seed(42)
    w = np.random.randn(d, n).astype(np.float32)
    x = np.random.randn(n).astype(np.float32)
    xout = np.zeros(d, dtype=np.float32)

    result = kernel(xout, x, w)

    with torch.no_grad():
        expected = torch.mv(torch.from_numpy(w), torch.from_numpy(x)).numpy()

    assert result is xout
    assert np.allclose(xout, expected, atol=1e-4, rtol=1e-4), \
        "matmul result does not match torch.mv"


@pytest.mark.parametrize("kernel", [matmul, matmul_jit], ids=["numpy", "numba"])
def test_matmul_read_only_weights(kernel):
    """Weights come from a read-only memory map."""
    w = np.arange(12, dtype=np.float32).reshape(3, 4)
    w.flags.writeable = False
    x = np.ones(4, dtype=np.float32)
    xout = np.zeros(3, dtype=np.float32)

    kernel(xout, x, w)

    assert np.array_equal(xout, np.array([6.0, 22.0, 38.0], dtype=np.float32))


if __name__ == "__main__":
    pytest.main([__file__])
