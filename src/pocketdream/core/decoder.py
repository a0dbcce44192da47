"""Latent-to-pixel decoding through the VAE image decoder."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
from PIL import Image

from pocketdream.core.errors import InferenceError

logger = logging.getLogger(__name__)

DEFAULT_DECODER_INPUT_NAME = "latent_sample"


def to_pixels(decoded: np.ndarray) -> np.ndarray:
    """Map a channel-first ``[-1, 1]`` image to interleaved uint8 RGB.

    Each value becomes ``int((x + 1) / 2 * 255)`` clamped to ``[0, 255]``.

    Args:
        decoded: ``[3, H, W]`` or ``[1, 3, H, W]`` float array.

    Returns:
        ``[H, W, 3]`` uint8 array.
    """
    chw = decoded[0] if decoded.ndim == 4 else decoded
    scaled = np.trunc((chw.astype(np.float32) + 1.0) / 2.0 * 255.0)
    return np.clip(scaled, 0, 255).astype(np.uint8).transpose(1, 2, 0)


class LatentDecoder:
    """Decodes latents into RGB images.

    Safe to call mid-generation: the live latent tensor is read, never
    written.

    Args:
        vae_decoder: Image decoder inference session.
        vae_scale_factor: Latent scale constant of the model family.
    """

    def __init__(self, vae_decoder: Any, vae_scale_factor: float = 0.18215) -> None:
        self.vae_decoder = vae_decoder
        self.vae_scale_factor = vae_scale_factor

        inputs = vae_decoder.get_inputs()
        self._input_name = inputs[0].name if inputs else DEFAULT_DECODER_INPUT_NAME

    def decode(self, latents: np.ndarray, width: int, height: int) -> Image.Image:
        """Decode ``[1, 4, h, w]`` latents to a ``width x height`` RGB image.

        Raises:
            InferenceError: If the decoder output does not match the
                requested size.
        """
        scaled = (latents / np.float32(self.vae_scale_factor)).astype(np.float32)
        outputs = self.vae_decoder.run(None, {self._input_name: scaled})
        decoded = np.asarray(outputs[0])

        if decoded.shape[-2:] != (height, width):
            raise InferenceError(
                f"Image decoder returned shape {decoded.shape}, expected {height}x{width}"
            )

        return Image.fromarray(to_pixels(decoded))
