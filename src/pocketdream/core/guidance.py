"""Classifier-free guidance."""

from __future__ import annotations

import numpy as np


def combine(noise_pred: np.ndarray, guidance_scale: float) -> np.ndarray:
    """Blend the unconditional and conditional halves of a batched prediction.

    The noise predictor is run once on a batch of two, ordered
    ``[unconditional, conditional]``.  The guided prediction is
    ``uncond + guidance_scale * (cond - uncond)``; a scale of 1.0 gives back
    the conditional half unchanged.

    Args:
        noise_pred: Prediction with an even leading (batch) dimension.
        guidance_scale: Guidance weight, typically in [1, 20].

    Returns:
        Guided prediction with half the batch size.

    Raises:
        ValueError: If the batch dimension is odd.
    """
    batch = noise_pred.shape[0]
    if batch % 2 != 0:
        raise ValueError(f"guidance needs an even batch, got {batch}")

    uncond, cond = np.split(noise_pred, 2, axis=0)
    if guidance_scale == 1.0:
        return cond.copy()
    return uncond + np.float32(guidance_scale) * (cond - uncond)
