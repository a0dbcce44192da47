"""PocketDream - on-device text-to-image generation with ONNX diffusion networks."""

__version__ = "0.1.0"

from pocketdream.core.config import PocketDreamConfig, config
from pocketdream.core.model_manager import ModelManager
from pocketdream.core.types import GenerationRequest, GenerationResult, GenerationState

__all__ = [
    "GenerationRequest",
    "GenerationResult",
    "GenerationState",
    "ModelManager",
    "PocketDreamConfig",
    "config",
]
