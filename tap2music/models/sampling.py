"""
Sampling strategies for choosing the next pitch from a logit vector.

Both strategies draw exactly one uniform number and pick a class by
inverse-CDF lookup, so a seeded ``numpy.random.Generator`` makes the whole
session reproducible.

    - Temperature: softmax(logits / T), then draw. T → 0 gives argmax.
    - Nucleus (top-p): keep the smallest set of most likely classes whose
      cumulative probability exceeds p (always at least the top-1),
      renormalize, then draw. p = 1 is plain categorical sampling.
"""

from typing import Iterable, Optional, Union

import numpy as np
import torch

from tap2music.data.schema import SamplingConfig


LogitsLike = Union[torch.Tensor, np.ndarray]


def _to_vector(logits: LogitsLike) -> np.ndarray:
    """Flatten a [1, V] or [V] logit array to float64 [V]."""
    if isinstance(logits, torch.Tensor):
        logits = logits.detach().cpu().numpy()
    vector = np.asarray(logits, dtype=np.float64).reshape(-1)
    if vector.size == 0:
        raise ValueError("Cannot sample from an empty logit vector")
    return vector


def softmax(logits: LogitsLike, temperature: float = 1.0) -> np.ndarray:
    """
    Temperature-scaled softmax in float64.

    Logits of -inf (masked classes) get probability 0. Subtracting the
    maximum before dividing by T keeps tiny temperatures from overflowing.
    """
    if temperature <= 0:
        raise ValueError(f"Temperature must be > 0. Got: {temperature}")
    z = _to_vector(logits)
    finite = np.isfinite(z)
    if not finite.any():
        raise ValueError("All logits are masked or non-finite")

    z = (z - z[finite].max()) / temperature
    exp = np.where(finite, np.exp(np.where(finite, z, 0.0)), 0.0)
    return exp / exp.sum()


def inverse_cdf(probs: np.ndarray, u: float) -> int:
    """
    Index of the first class whose cumulative probability exceeds u.

    Classes with zero probability can never be chosen. If rounding leaves the
    total below u, the last class with non-zero probability is returned.
    """
    cdf = np.cumsum(probs)
    idx = int(np.searchsorted(cdf, u, side='right'))
    if idx >= len(probs):
        idx = int(np.flatnonzero(probs > 0)[-1])
    return idx


def temperature_sample(
    logits: LogitsLike,
    temperature: float = 1.0,
    rng: Optional[np.random.Generator] = None
) -> int:
    """Draw one class from softmax(logits / temperature)."""
    rng = rng if rng is not None else np.random.default_rng()
    probs = softmax(logits, temperature)
    return inverse_cdf(probs, rng.random())


def nucleus_sample(
    logits: LogitsLike,
    top_p: float = 0.85,
    rng: Optional[np.random.Generator] = None
) -> int:
    """
    Draw one class from the top-p nucleus of softmax(logits).

    Args:
        logits: Logit vector [V] or [1, V]
        top_p: Cumulative probability threshold in (0, 1]
        rng: Random generator (fresh unseeded generator if None)

    Returns:
        Class index in the ORIGINAL vocabulary order
    """
    if not 0.0 < top_p <= 1.0:
        raise ValueError(f"top_p must be in (0, 1]. Got: {top_p}")
    rng = rng if rng is not None else np.random.default_rng()
    probs = softmax(logits)

    if top_p >= 1.0:
        return inverse_cdf(probs, rng.random())

    order = np.argsort(-probs, kind='stable')
    sorted_probs = probs[order]

    # Keep rank k while the mass before it has not yet exceeded p
    mass_before = np.cumsum(sorted_probs) - sorted_probs
    keep = mass_before <= top_p
    keep[0] = True

    filtered = np.where(keep, sorted_probs, 0.0)
    filtered = filtered / filtered.sum()

    rank = inverse_cdf(filtered, rng.random())
    return int(order[rank])


def mask_logits(logits: torch.Tensor, indices: Iterable[int]) -> torch.Tensor:
    """Copy of ``logits`` with the given classes set to -inf."""
    masked = logits.clone()
    for index in indices:
        masked[..., index] = float('-inf')
    return masked


def sample_pitch(
    logits: LogitsLike,
    config: SamplingConfig,
    rng: Optional[np.random.Generator] = None
) -> int:
    """Sample with whichever strategy ``config`` selects."""
    if config.strategy == "nucleus":
        return nucleus_sample(logits, top_p=config.top_p, rng=rng)
    return temperature_sample(logits, temperature=config.temperature, rng=rng)
