"""Model directory layout and validation.

A PocketDream model directory holds one folder per network plus the
tokenizer assets::

    my-model/
        text_encoder/model.ort   (or model.onnx)
        unet/model.ort           (or model.onnx)
        vae_decoder/model.ort    (or model.onnx)
        tokenizer/               (CLIP vocab.json + merges.txt)

``.ort`` files are preferred over ``.onnx`` when both exist.  Validation
happens before any session is created, so a broken directory never costs a
partial load.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pocketdream.core.errors import ConfigurationError

logger = logging.getLogger(__name__)

NETWORK_COMPONENTS = ("text_encoder", "unet", "vae_decoder")
MODEL_FILENAMES = ("model.ort", "model.onnx")
TOKENIZER_DIRNAME = "tokenizer"


@dataclass(frozen=True)
class ModelPaths:
    """Resolved file locations inside a validated model directory."""

    root: Path
    text_encoder: Path
    unet: Path
    vae_decoder: Path
    tokenizer: Path


def find_model_file(model_dir: Path, component: str) -> Path | None:
    """Return the network file for *component*, or ``None`` if absent."""
    for filename in MODEL_FILENAMES:
        candidate = model_dir / component / filename
        if candidate.is_file():
            return candidate
    return None


def resolve_model_paths(model_dir: str | Path) -> ModelPaths:
    """Validate *model_dir* and resolve the path of every required asset.

    Args:
        model_dir: Directory containing ``text_encoder/``, ``unet/``,
            ``vae_decoder/`` and ``tokenizer/``.

    Returns:
        The resolved :class:`ModelPaths`.

    Raises:
        ConfigurationError: If the directory does not exist, or any network
            or the tokenizer is missing.  ``missing`` lists every absent
            asset, not just the first one.
    """
    root = Path(model_dir)
    if not root.is_dir():
        raise ConfigurationError(f"Model directory not found: {root}")

    resolved: dict[str, Path] = {}
    missing: list[str] = []

    for component in NETWORK_COMPONENTS:
        path = find_model_file(root, component)
        if path is None:
            missing.append(f"{component}/model.ort or model.onnx")
        else:
            resolved[component] = path

    tokenizer_dir = root / TOKENIZER_DIRNAME
    if not tokenizer_dir.is_dir():
        missing.append(f"{TOKENIZER_DIRNAME}/")

    if missing:
        raise ConfigurationError(
            f"Missing model files: {', '.join(missing)}",
            missing=missing,
        )

    logger.debug("Resolved model files under %s: %s", root, resolved)
    return ModelPaths(
        root=root,
        text_encoder=resolved["text_encoder"],
        unet=resolved["unet"],
        vae_decoder=resolved["vae_decoder"],
        tokenizer=tokenizer_dir,
    )
