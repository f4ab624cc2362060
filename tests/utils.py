import numpy as np
import torch

from tapegrad.algebras import Graph1
from tapegrad.graph import Value

ATOL = 1e-6
RTOL = 1e-5

def _is_cupy(x):
    return x.__class__.__module__.startswith("cupy")

def to_numpy(x):
    if isinstance(x, Value):
        x = x.data
    if _is_cupy(x):
        import cupy as cp
        return cp.asnumpy(x)
    return np.asarray(x)

def make_array(x_np: np.ndarray, device: str = "cpu"):
    x_np = np.asarray(x_np, dtype=np.float64)
    if device == "cuda":
        import cupy as cp
        return cp.asarray(x_np)
    return x_np

def make_torch(x_np: np.ndarray, requires_grad: bool = True) -> torch.Tensor:
    return torch.tensor(np.asarray(x_np, dtype=np.float64), requires_grad=requires_grad)

def assert_close(a, b, atol=ATOL, rtol=RTOL):
    a = to_numpy(a)
    b = to_numpy(b)
    assert np.allclose(a, b, atol=atol, rtol=rtol), f"max|diff|={np.max(np.abs(a-b))}"

def backward(g, z: Value, seed=None):
    """Run the backward pass of ``g`` from ``z`` and return the gradient store.

    The seed defaults to ones shaped like ``z``. On higher-order tapes it is
    wrapped into a constant.
    """
    if seed is None:
        seed = g.eval().ones(z.data)
    if isinstance(g, Graph1):
        return g.evaluate_gradients(z.gid(), seed)
    return g.compute_gradients(z.gid(), g.constant(seed))

def estimate_gradient(f, x_np: np.ndarray, eps: float = 1e-6) -> np.ndarray:
    """Central finite differences of the scalar ``sum(f(x))`` at ``x_np``."""
    x_np = np.asarray(x_np, dtype=np.float64)
    grad = np.zeros_like(x_np)
    it = np.nditer(x_np, flags=["multi_index"])
    for _ in it:
        i = it.multi_index
        up = x_np.copy()
        up[i] += eps
        down = x_np.copy()
        down[i] -= eps
        grad[i] = (np.sum(f(up)) - np.sum(f(down))) / (2 * eps)
    return grad
