"""Data models shared by the pipeline, its host and its tests.

- :class:`GenerationRequest` is the immutable input to one generation.
- :class:`GenerationResult` is created once, on success, and handed to the
  caller.
- :class:`GenerationState` names the orchestrator's state machine.
- :class:`ProgressEvent`, :class:`PreviewEvent`, :class:`CompleteEvent` and
  :class:`ErrorEvent` are the notifications delivered to a generation's
  listener.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Union

from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, field_validator

# Spatial downscale between pixel space and latent space.
LATENT_DOWNSCALE = 8


class GenerationRequest(BaseModel):
    """Parameters for one text-to-image generation.

    The model is frozen: once a generation starts nothing can change the
    request it is working from.

    Attributes:
        prompt: Text describing the desired image.
        negative_prompt: Text describing what to steer away from.  An empty
            string gives the plain unconditional branch.
        steps: Number of denoising steps (>= 1).
        guidance_scale: Classifier-free guidance weight.  1.0 means "use the
            conditional prediction only".
        seed: 64-bit seed for the initial noise.  ``None`` lets the
            orchestrator derive one from the clock.
        width: Output width in pixels, a multiple of 8.
        height: Output height in pixels, a multiple of 8.
        preview_interval: Emit a preview every N steps; 0 disables previews.
    """

    model_config = ConfigDict(frozen=True)

    prompt: str
    negative_prompt: str = ""
    steps: int = Field(default=20, ge=1)
    guidance_scale: float = 7.5
    seed: int | None = Field(default=None, ge=0, lt=2**64)
    width: int = Field(default=512, gt=0)
    height: int = Field(default=512, gt=0)
    preview_interval: int = Field(default=2, ge=0)

    @field_validator("width", "height")
    @classmethod
    def _multiple_of_downscale(cls, value: int) -> int:
        if value % LATENT_DOWNSCALE != 0:
            raise ValueError(f"must be a multiple of {LATENT_DOWNSCALE}, got {value}")
        return value


class GenerationState(str, enum.Enum):
    """States of the denoising orchestrator."""

    IDLE = "idle"
    PREPARING = "preparing"
    STEPPING = "stepping"
    DECODING = "decoding"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        """Whether a generation owns the orchestrator in this state."""
        return self in (
            GenerationState.PREPARING,
            GenerationState.STEPPING,
            GenerationState.DECODING,
        )


@dataclass
class GenerationResult:
    """A finished generation.

    Attributes:
        image: RGB image, 8 bits per channel.
        width: Final width in pixels.
        height: Final height in pixels.
        seed: The seed actually used (resolved when the request had none).
        steps: Number of denoising steps run.
        prompt: Prompt the image was generated from.
        negative_prompt: Negative prompt used for the unconditional branch.
        guidance_scale: Guidance weight used.
        id: Unique identifier (uuid4 string).
        created_at: Completion time, seconds since the epoch.
    """

    image: Image.Image
    width: int
    height: int
    seed: int
    steps: int
    prompt: str = ""
    negative_prompt: str = ""
    guidance_scale: float = 1.0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Return JSON-friendly metadata (the image itself is left out)."""
        return {
            "id": self.id,
            "width": self.width,
            "height": self.height,
            "seed": self.seed,
            "steps": self.steps,
            "prompt": self.prompt,
            "negative_prompt": self.negative_prompt,
            "guidance_scale": self.guidance_scale,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ProgressEvent:
    step: int
    total_steps: int
    progress: float

    kind = "progress"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "step": self.step,
            "total_steps": self.total_steps,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class PreviewEvent:
    preview_path: str
    step: int
    total_steps: int
    progress: float

    kind = "preview"

    def to_dict(self) -> dict:
        return {
            "type": self.kind,
            "preview_path": self.preview_path,
            "step": self.step,
            "total_steps": self.total_steps,
            "progress": self.progress,
        }


@dataclass(frozen=True)
class CompleteEvent:
    result: GenerationResult

    kind = "complete"

    def to_dict(self) -> dict:
        return {"type": self.kind, "result": self.result.to_dict()}


@dataclass(frozen=True)
class ErrorEvent:
    message: str

    kind = "error"

    def to_dict(self) -> dict:
        return {"type": self.kind, "message": self.message}


GenerationEvent = Union[ProgressEvent, PreviewEvent, CompleteEvent, ErrorEvent]
