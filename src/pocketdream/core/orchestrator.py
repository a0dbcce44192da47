"""Denoising orchestrator: the text-to-image state machine.

:class:`DenoisingOrchestrator` drives one generation at a time through::

    IDLE -> PREPARING -> STEPPING -> DECODING -> COMPLETED
                 \\            \\           \\
                  +-> CANCELLED / FAILED <-+

Per generation it:

1. **Prepares**: encodes ``[negative_prompt, prompt]`` once, sets the Euler
   schedule, draws the seeded initial latents.
2. **Steps**: for every timestep scales the latents, duplicates them to
   match the two-way conditioning batch, runs the noise predictor through
   the model's :class:`~pocketdream.core.tensor_adapter.TensorBindingPlan`,
   applies classifier-free guidance and the Euler update, then publishes a
   :class:`~pocketdream.core.types.ProgressEvent`.  Every
   ``preview_interval`` steps (never on the first or last step) it also
   decodes a preview JPEG.
3. **Decodes** the final latents into an RGB image.

Cancellation is cooperative: :meth:`DenoisingOrchestrator.cancel` sets a
flag that the loop reads at the top of every step, so a cancel takes effect
within one step's compute time.  All per-generation state (latents,
embeddings, schedule, preview files, the event thread) lives inside
:meth:`DenoisingOrchestrator.generate` and is released on every exit path.

Usage
-----
::

    orchestrator = DenoisingOrchestrator(config)
    result = orchestrator.generate(
        loaded_model,
        GenerationRequest(prompt="a red cube", steps=20, seed=42),
        listener=print,
    )
    result.image.save("cube.png")
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import time
from pathlib import Path
from typing import Any

import numpy as np

from pocketdream.core.conditioning import TextConditioner
from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.decoder import LatentDecoder
from pocketdream.core.errors import (
    BusyError,
    ConfigurationError,
    GenerationCancelledError,
    InferenceError,
    NoModelLoadedError,
    PocketDreamError,
    PreviewError,
)
from pocketdream.core.events import EventChannel, EventListener
from pocketdream.core.guidance import combine
from pocketdream.core.scheduler import EulerDiscreteScheduler
from pocketdream.core.sessions import LoadedModel
from pocketdream.core.tensor_adapter import TensorBindingPlan, build_binding_plan
from pocketdream.core.types import (
    CompleteEvent,
    ErrorEvent,
    GenerationRequest,
    GenerationResult,
    GenerationState,
    PreviewEvent,
    ProgressEvent,
)

logger = logging.getLogger(__name__)

_SEED_MASK = 2**63 - 1


def resolve_seed(seed: int | None) -> int:
    """Return *seed*, or a clock-derived seed when it is ``None``."""
    if seed is not None:
        return seed
    return time.time_ns() & _SEED_MASK


def should_preview(step_index: int, total_steps: int, interval: int) -> bool:
    """Whether a preview is due after step *step_index* (0-based)."""
    if interval <= 0:
        return False
    if step_index == 0 or step_index >= total_steps - 1:
        return False
    return (step_index + 1) % interval == 0


class DenoisingOrchestrator:
    """Runs text-to-image generations, one at a time.

    Args:
        config: Latent constants, preview directory, event queue size and the
            per-step yield.
    """

    def __init__(self, config: PocketDreamConfig) -> None:
        self._config = config
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._state = GenerationState.IDLE

    # -- Control surface ----------------------------------------------------

    @property
    def state(self) -> GenerationState:
        return self._state

    def is_generating(self) -> bool:
        """Whether a generation is running and has not been cancelled."""
        return self._state.is_active and not self._cancel.is_set()

    def cancel(self) -> bool:
        """Ask the running generation to stop at the next step boundary.

        Safe to call from any thread.

        Returns:
            ``True`` if a generation was running, ``False`` otherwise.
        """
        with self._lock:
            if not self._state.is_active:
                return False
            self._cancel.set()
        logger.info("Cancellation requested")
        return True

    def generate(
        self,
        model: LoadedModel | None,
        request: GenerationRequest,
        listener: EventListener | None = None,
        binding_plan: TensorBindingPlan | None = None,
    ) -> GenerationResult:
        """Run one generation to completion.

        Args:
            model: Borrowed networks and tokenizer.  Must stay loaded for the
                duration of the call.
            request: What to generate.
            listener: Receives progress, preview, complete and error events.
            binding_plan: Cached plan for ``model.unet``.  Built on the fly
                when omitted.

        Returns:
            The :class:`GenerationResult`.

        Raises:
            NoModelLoadedError: If *model* is missing a network.
            BusyError: If a generation is already running.
            GenerationCancelledError: If :meth:`cancel` was called.
            ConfigurationError: If the noise predictor's inputs cannot be
                bound.
            InferenceError: If a network invocation failed.
        """
        if model is None or not model.is_complete:
            raise NoModelLoadedError("No model loaded. Call load_model first.")

        with self._lock:
            if self._state.is_active:
                raise BusyError("Image generation already in progress")
            self._state = GenerationState.PREPARING
            self._cancel.clear()

        channel = EventChannel(listener, maxsize=self._config.event_queue_size)
        preview_dir: Path | None = None
        started = time.perf_counter()

        try:
            preview_dir = Path(tempfile.mkdtemp(prefix="gen-", dir=self._config.previews_dir))
            result = self._run(model, request, channel, binding_plan, preview_dir)
            self._finish()
        except GenerationCancelledError:
            self._state = GenerationState.CANCELLED
            logger.info("Generation cancelled after %.1fs", time.perf_counter() - started)
            raise
        except PocketDreamError as exc:
            self._state = GenerationState.FAILED
            logger.exception("Error generating image")
            channel.publish(ErrorEvent(str(exc)))
            raise
        except Exception as exc:
            self._state = GenerationState.FAILED
            logger.exception("Error generating image")
            channel.publish(ErrorEvent(str(exc)))
            raise InferenceError(f"Failed to generate image: {exc}") from exc
        else:
            channel.publish(CompleteEvent(result))
            logger.info(
                "Image %s generated in %.1fs (seed=%d)",
                result.id,
                time.perf_counter() - started,
                result.seed,
            )
            return result
        finally:
            with self._lock:
                if self._state.is_active:
                    self._state = GenerationState.FAILED
            channel.close()
            if preview_dir is not None:
                shutil.rmtree(preview_dir, ignore_errors=True)

    # -- Internals ----------------------------------------------------------

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise GenerationCancelledError("Generation cancelled")

    def _finish(self) -> None:
        """Move to COMPLETED unless a cancel arrived first."""
        with self._lock:
            self._check_cancelled()
            self._state = GenerationState.COMPLETED

    def _run(
        self,
        model: LoadedModel,
        request: GenerationRequest,
        channel: EventChannel,
        binding_plan: TensorBindingPlan | None,
        preview_dir: Path,
    ) -> GenerationResult:
        cfg = self._config
        steps = request.steps
        guidance_scale = request.guidance_scale
        seed = resolve_seed(request.seed)

        if request.width % cfg.latent_scale_factor or request.height % cfg.latent_scale_factor:
            raise ConfigurationError(
                f"Image size {request.width}x{request.height} is not a multiple of "
                f"{cfg.latent_scale_factor}"
            )
        latent_shape = (
            1,
            cfg.latent_channels,
            request.height // cfg.latent_scale_factor,
            request.width // cfg.latent_scale_factor,
        )

        logger.info(
            "Starting image generation: %dx%d, %d steps, guidance=%.1f, seed=%d",
            request.width,
            request.height,
            steps,
            guidance_scale,
            seed,
        )

        # --- Preparing ------------------------------------------------------
        plan = binding_plan or build_binding_plan(model.unet.get_inputs())
        conditioner = TextConditioner(
            model.tokenizer, model.text_encoder, max_length=cfg.tokenizer_max_length
        )
        embeddings = conditioner.condition(request.prompt, request.negative_prompt)

        scheduler = EulerDiscreteScheduler()
        schedule = scheduler.set_schedule(steps)
        latents = scheduler.sample_initial_latents(latent_shape, seed)
        decoder = LatentDecoder(model.vae_decoder, vae_scale_factor=cfg.vae_scale_factor)

        logger.debug(
            "Initial latents: min=%.4f max=%.4f mean=%.4f",
            latents.min(),
            latents.max(),
            latents.mean(),
        )

        # --- Stepping -------------------------------------------------------
        self._check_cancelled()
        self._state = GenerationState.STEPPING
        unet_seconds = 0.0

        for step_index, timestep in enumerate(schedule.timesteps):
            self._check_cancelled()

            model_input = scheduler.scale_model_input(latents, step_index)
            batched = np.concatenate([model_input, model_input], axis=0)

            unet_start = time.perf_counter()
            noise_pred = self._predict_noise(
                model.unet, plan, batched, float(timestep), embeddings, guidance_scale, step_index
            )
            unet_seconds += time.perf_counter() - unet_start

            guided = combine(noise_pred, guidance_scale)
            latents = scheduler.step(guided, step_index, latents)

            step = step_index + 1
            channel.publish(ProgressEvent(step=step, total_steps=steps, progress=step / steps))

            if cfg.step_yield_seconds > 0:
                time.sleep(cfg.step_yield_seconds)

            if should_preview(step_index, steps, request.preview_interval):
                try:
                    path = self._write_preview(decoder, latents, request, preview_dir, step)
                except PreviewError as exc:
                    logger.warning("Failed to generate preview at step %d: %s", step, exc)
                else:
                    self._check_cancelled()
                    channel.publish(
                        PreviewEvent(
                            preview_path=str(path),
                            step=step,
                            total_steps=steps,
                            progress=step / steps,
                        )
                    )

        logger.debug(
            "Noise predictor total %.0fms, %.0fms per step",
            unet_seconds * 1000,
            unet_seconds * 1000 / steps,
        )

        # --- Decoding -------------------------------------------------------
        self._check_cancelled()
        self._state = GenerationState.DECODING
        image = decoder.decode(latents, request.width, request.height)

        return GenerationResult(
            image=image,
            width=request.width,
            height=request.height,
            seed=seed,
            steps=steps,
            prompt=request.prompt,
            negative_prompt=request.negative_prompt,
            guidance_scale=guidance_scale,
        )

    @staticmethod
    def _predict_noise(
        unet: Any,
        plan: TensorBindingPlan,
        latents: np.ndarray,
        timestep: float,
        embeddings: np.ndarray,
        guidance_scale: float,
        step_index: int,
    ) -> np.ndarray:
        feeds = plan.build_feeds(latents, timestep, embeddings, guidance_scale)
        try:
            outputs = unet.run(None, feeds)
        except Exception as exc:
            raise InferenceError(f"Noise prediction failed at step {step_index}: {exc}") from exc

        noise_pred = np.asarray(outputs[0], dtype=np.float32)
        if noise_pred.shape != latents.shape:
            raise InferenceError(
                f"Noise predictor returned shape {noise_pred.shape}, expected {latents.shape}"
            )
        return noise_pred

    @staticmethod
    def _write_preview(
        decoder: LatentDecoder,
        latents: np.ndarray,
        request: GenerationRequest,
        preview_dir: Path,
        step: int,
    ) -> Path:
        """Decode a copy of *latents* to ``preview_step_{step}.jpg``.

        Older previews of the same generation are removed first.

        Raises:
            PreviewError: On any decode or write failure.
        """
        try:
            image = decoder.decode(latents.copy(), request.width, request.height)
            for old in preview_dir.glob("preview_step_*.jpg"):
                old.unlink(missing_ok=True)
            path = preview_dir / f"preview_step_{step}.jpg"
            image.save(path, format="JPEG", quality=80)
        except Exception as exc:
            raise PreviewError(str(exc)) from exc
        return path
