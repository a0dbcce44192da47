"""Core pipeline for on-device image generation.

Architecture Overview
---------------------
1. **Configuration** (config.py): pydantic-settings, ``POCKETDREAM_`` prefix.
2. **Model files and sessions** (model_files.py, sessions.py): validate a
   model directory, then build onnxruntime sessions and the CLIP tokenizer.
3. **Tensor adaptation** (tensor_adapter.py): bind the noise predictor's
   declared inputs to sample, timestep, conditioning and auxiliary roles.
4. **Denoising** (conditioning.py, scheduler.py, guidance.py, decoder.py,
   orchestrator.py): encode prompts, run the Euler schedule with
   classifier-free guidance, decode latents to RGB.
5. **Lifecycle** (model_manager.py, events.py, image_store.py): load and
   unload models, deliver events, persist results.

Usage Example
-------------
    from pocketdream.core import ModelManager, config
    from pocketdream.core.types import GenerationRequest

    manager = ModelManager(config)
    manager.load_model("models/sd15-onnx")
    result = manager.generate(GenerationRequest(prompt="a red cube", seed=42))
"""

from pocketdream.core.config import PocketDreamConfig, config
from pocketdream.core.image_store import ImageStore
from pocketdream.core.model_manager import ModelManager

__all__ = [
    "ImageStore",
    "ModelManager",
    "PocketDreamConfig",
    "config",
]
