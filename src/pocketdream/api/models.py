"""Pydantic request models for the PocketDream API.

These models define the JSON schema for the endpoints that accept a body.
FastAPI uses them for automatic request validation and OpenAPI
documentation.

Models
------
GenerateRequest
    Payload for ``POST /api/generate``.  Missing fields fall back to the
    configured generation defaults.
LoadModelRequest
    Payload for ``POST /api/model/load``.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.types import GenerationRequest


class GenerateRequest(BaseModel):
    """Request body for the ``POST /api/generate`` endpoint.

    Attributes:
        prompt: Text describing the desired image.
        negative_prompt: Text describing what to avoid.
        steps: Number of denoising steps.  ``None`` uses
            ``config.default_steps``.
        guidance_scale: Classifier-free guidance weight.  ``None`` uses
            ``config.default_guidance_scale``.
        seed: Random seed.  ``None`` means the server derives one.
        width: Image width in pixels (multiple of 8).
        height: Image height in pixels (multiple of 8).
        preview_interval: Emit a preview every N steps; 0 disables previews.
        model_dir: Optional model directory to load before generating.
    """

    prompt: str = Field(..., min_length=1, description="Text prompt.")
    negative_prompt: str = Field(default="", description="Negative prompt.")
    steps: int | None = Field(default=None, ge=1, le=100, description="Denoising steps.")
    guidance_scale: float | None = Field(
        default=None, ge=0.0, le=30.0, description="Classifier-free guidance scale."
    )
    seed: int | None = Field(
        default=None, ge=0, lt=2**64, description="Random seed (None = derived from clock)."
    )
    width: int | None = Field(default=None, ge=64, le=2048, description="Width in pixels.")
    height: int | None = Field(default=None, ge=64, le=2048, description="Height in pixels.")
    preview_interval: int | None = Field(
        default=None, ge=0, description="Preview every N steps (0 disables)."
    )
    model_dir: str | None = Field(
        default=None,
        description="Model directory to load lazily before generating.",
    )

    def to_generation_request(self, config: PocketDreamConfig) -> GenerationRequest:
        """Fill unset fields from *config* and build the pipeline request.

        Raises:
            pydantic.ValidationError: If a dimension is not a multiple of 8.
        """

        def _or(value, default):
            return default if value is None else value

        return GenerationRequest(
            prompt=self.prompt,
            negative_prompt=self.negative_prompt,
            steps=_or(self.steps, config.default_steps),
            guidance_scale=_or(self.guidance_scale, config.default_guidance_scale),
            seed=self.seed,
            width=_or(self.width, config.default_width),
            height=_or(self.height, config.default_height),
            preview_interval=_or(self.preview_interval, config.default_preview_interval),
        )


class LoadModelRequest(BaseModel):
    """Request body for ``POST /api/model/load``."""

    model_dir: str = Field(..., min_length=1, description="Path to the model directory.")
