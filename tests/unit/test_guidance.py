"""Tests for pocketdream.core.guidance: classifier-free guidance."""

from __future__ import annotations

import numpy as np
import pytest

from pocketdream.core.guidance import combine


def _batch(uncond: float, cond: float) -> np.ndarray:
    return np.stack(
        [
            np.full((4, 2, 2), uncond, dtype=np.float32),
            np.full((4, 2, 2), cond, dtype=np.float32),
        ]
    )


class TestCombine:
    def test_scale_one_returns_conditional_half(self):
        noise = np.random.default_rng(0).standard_normal((2, 4, 3, 3)).astype(np.float32)
        guided = combine(noise, 1.0)
        np.testing.assert_array_equal(guided, noise[1:2])

    def test_scale_one_result_is_a_copy(self):
        noise = _batch(0.0, 1.0)
        guided = combine(noise, 1.0)
        guided[...] = 99.0
        assert noise[1, 0, 0, 0] == 1.0

    def test_guidance_formula(self):
        """uncond + g * (cond - uncond)."""
        guided = combine(_batch(1.0, 3.0), 7.5)
        np.testing.assert_allclose(guided, 1.0 + 7.5 * 2.0)
        assert guided.shape == (1, 4, 2, 2)

    def test_scale_zero_returns_unconditional(self):
        guided = combine(_batch(1.0, 3.0), 0.0)
        np.testing.assert_allclose(guided, 1.0)

    def test_odd_batch_rejected(self):
        with pytest.raises(ValueError, match="even batch"):
            combine(np.zeros((3, 4, 2, 2), dtype=np.float32), 7.5)
