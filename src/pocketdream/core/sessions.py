"""Inference session loading for a model directory.

:func:`load_sessions` builds the three ``onnxruntime`` sessions and the CLIP
tokenizer for a validated model directory and bundles them in a
:class:`LoadedModel`.  ``onnxruntime`` and ``transformers`` are imported
lazily inside the function so that importing :mod:`pocketdream` stays cheap
and tests can inject doubles through ``sys.modules``.

Session Options
---------------
All sessions use full graph optimisation, memory pattern optimisation and
the thread counts from :class:`~pocketdream.core.config.PocketDreamConfig`.
The noise predictor runs on ``config.unet_providers`` (e.g. NNAPI or CUDA
first, CPU as fallback); the text encoder and image decoder run on
``config.cpu_providers``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.model_files import ModelPaths

logger = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    """The networks and tokenizer of one loaded model.

    Attributes:
        text_encoder: Text encoder session.
        unet: Noise predictor session.
        vae_decoder: Image decoder session.
        tokenizer: CLIP-style tokenizer.
        model_dir: Directory the model was loaded from.
    """

    text_encoder: Any
    unet: Any
    vae_decoder: Any
    tokenizer: Any
    model_dir: Path | None = None
    load_seconds: float = field(default=0.0, compare=False)

    @property
    def is_complete(self) -> bool:
        """Whether every network and the tokenizer are present."""
        return all(
            part is not None
            for part in (self.text_encoder, self.unet, self.vae_decoder, self.tokenizer)
        )


def _session_options(ort: Any, config: PocketDreamConfig) -> Any:
    options = ort.SessionOptions()
    options.graph_optimization_level = ort.GraphOptimizationLevel.ORT_ENABLE_ALL
    options.intra_op_num_threads = config.intra_op_num_threads
    options.inter_op_num_threads = config.inter_op_num_threads
    options.enable_mem_pattern = True
    return options


def _available_providers(ort: Any, requested: list[str]) -> list[str]:
    available = set(ort.get_available_providers())
    providers = [p for p in requested if p in available]
    skipped = [p for p in requested if p not in available]
    if skipped:
        logger.warning("Execution providers not available, skipping: %s", skipped)
    return providers or ["CPUExecutionProvider"]


def load_sessions(paths: ModelPaths, config: PocketDreamConfig) -> LoadedModel:
    """Create the inference sessions and tokenizer for *paths*.

    Args:
        paths: Validated model file locations.
        config: Thread counts and execution providers.

    Returns:
        A complete :class:`LoadedModel`.

    Raises:
        Exception: Whatever ``onnxruntime`` or ``transformers`` raise for
            unreadable files.
    """
    import onnxruntime as ort
    from transformers import CLIPTokenizer

    load_start = time.perf_counter()
    options = _session_options(ort, config)
    cpu_providers = _available_providers(ort, config.cpu_providers)
    unet_providers = _available_providers(ort, config.unet_providers)

    def _load(label: str, path: Path, providers: list[str]) -> Any:
        started = time.perf_counter()
        logger.info("Loading %s from %s (providers=%s)", label, path, providers)
        session = ort.InferenceSession(str(path), sess_options=options, providers=providers)
        logger.info("%s loaded in %.0fms", label, (time.perf_counter() - started) * 1000)
        return session

    text_encoder = _load("text encoder", paths.text_encoder, cpu_providers)
    unet = _load("noise predictor", paths.unet, unet_providers)
    vae_decoder = _load("image decoder", paths.vae_decoder, cpu_providers)

    logger.info("Loading tokenizer from %s", paths.tokenizer)
    tokenizer = CLIPTokenizer.from_pretrained(str(paths.tokenizer))

    elapsed = time.perf_counter() - load_start
    logger.info("All networks for %s loaded in %.1fs", paths.root, elapsed)
    return LoadedModel(
        text_encoder=text_encoder,
        unet=unet,
        vae_decoder=vae_decoder,
        tokenizer=tokenizer,
        model_dir=paths.root,
        load_seconds=elapsed,
    )
