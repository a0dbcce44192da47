"""Euler-discrete noise schedule and update rule.

This is a numpy port of the reference Euler-discrete sampler used by
Stable Diffusion 1.x pipelines, with a ``scaled_linear`` beta schedule and
``linspace`` timestep spacing.  The update is the explicit first-order
Euler step (no stochastic churn), so a fixed seed and model reproduce the
same latents step for step.

Schedule Math
-------------
- ``betas = linspace(sqrt(beta_start), sqrt(beta_end), T) ** 2``
- ``alphas_cumprod = cumprod(1 - betas)``
- ``sigma(t) = sqrt((1 - alphas_cumprod[t]) / alphas_cumprod[t])``
- ``timesteps = linspace(0, T - 1, steps)[::-1]``
- sigmas are interpolated at the (fractional) timesteps and a final
  ``0.0`` is appended, so the last step lands on a noise-free latent.

Usage
-----
::

    scheduler = EulerDiscreteScheduler()
    schedule = scheduler.set_schedule(20)
    latents = scheduler.sample_initial_latents((1, 4, 64, 64), seed=42)
    for i, t in enumerate(schedule.timesteps):
        model_input = scheduler.scale_model_input(latents, i)
        noise = predict(model_input, t)
        latents = scheduler.step(noise, i, latents)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduleState:
    """Timesteps and sigmas for one generation.

    Attributes:
        timesteps: ``steps`` strictly decreasing timesteps (float64).
        sigmas: ``steps + 1`` noise levels; ``sigmas[-1] == 0``.
        init_noise_sigma: Standard deviation of the initial latent noise.
    """

    timesteps: np.ndarray
    sigmas: np.ndarray
    init_noise_sigma: float

    @property
    def num_steps(self) -> int:
        return len(self.timesteps)


class EulerDiscreteScheduler:
    """Explicit Euler ODE solver over a discretised diffusion schedule.

    Args:
        num_train_timesteps: Length of the schedule the model was trained on.
        beta_start: First beta of the ``scaled_linear`` schedule.
        beta_end: Last beta of the ``scaled_linear`` schedule.
    """

    def __init__(
        self,
        num_train_timesteps: int = 1000,
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
    ) -> None:
        self.num_train_timesteps = num_train_timesteps

        betas = (
            np.linspace(beta_start**0.5, beta_end**0.5, num_train_timesteps, dtype=np.float64)
            ** 2
        )
        self.alphas_cumprod = np.cumprod(1.0 - betas)
        self._train_sigmas = np.sqrt((1.0 - self.alphas_cumprod) / self.alphas_cumprod)

        self._state: ScheduleState | None = None

    @property
    def state(self) -> ScheduleState:
        if self._state is None:
            raise RuntimeError("set_schedule() must be called before sampling")
        return self._state

    @property
    def timesteps(self) -> np.ndarray:
        return self.state.timesteps

    @property
    def init_noise_sigma(self) -> float:
        return self.state.init_noise_sigma

    def set_schedule(self, steps: int) -> ScheduleState:
        """Compute the timesteps and sigmas for *steps* denoising steps.

        Raises:
            ValueError: If *steps* is less than 1.
        """
        if steps < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")

        last = float(self.num_train_timesteps - 1)
        if steps == 1:
            timesteps = np.array([last], dtype=np.float64)
        else:
            timesteps = np.linspace(0.0, last, steps, dtype=np.float64)[::-1].copy()

        sigmas = np.interp(timesteps, np.arange(self.num_train_timesteps), self._train_sigmas)
        sigmas = np.concatenate([sigmas, [0.0]])
        init_noise_sigma = float(np.sqrt(sigmas.max() ** 2 + 1.0))

        self._state = ScheduleState(
            timesteps=timesteps,
            sigmas=sigmas,
            init_noise_sigma=init_noise_sigma,
        )
        logger.debug(
            "Schedule: %d steps, timesteps %s..., init_noise_sigma=%.4f",
            steps,
            timesteps[:5].round(2).tolist(),
            init_noise_sigma,
        )
        return self._state

    def sample_initial_latents(self, shape: tuple[int, ...], seed: int) -> np.ndarray:
        """Draw seeded standard-normal noise scaled to the first noise level.

        Args:
            shape: Latent shape, ``(batch, channels, height, width)``.
            seed: Non-negative integer seed.

        Returns:
            float32 latents of *shape*.
        """
        rng = np.random.default_rng(seed)
        noise = rng.standard_normal(shape, dtype=np.float32)
        return noise * np.float32(self.init_noise_sigma)

    def scale_model_input(self, latents: np.ndarray, step_index: int) -> np.ndarray:
        """Normalise *latents* to unit variance for the noise predictor."""
        sigma = self.state.sigmas[step_index]
        return (latents / np.sqrt(sigma**2 + 1.0)).astype(np.float32)

    def step(self, noise_pred: np.ndarray, step_index: int, latents: np.ndarray) -> np.ndarray:
        """Advance *latents* one Euler step using the predicted noise.

        Args:
            noise_pred: Guided noise prediction, same shape as *latents*.
            step_index: Index into the current schedule.
            latents: Latents at ``sigmas[step_index]``.

        Returns:
            Latents at ``sigmas[step_index + 1]``.
        """
        sigmas = self.state.sigmas
        sigma = sigmas[step_index]
        sigma_next = sigmas[step_index + 1]

        pred_original = latents - sigma * noise_pred
        derivative = (latents - pred_original) / sigma
        dt = sigma_next - sigma
        return (latents + derivative * dt).astype(np.float32)
