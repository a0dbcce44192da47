"""Shared pytest fixtures for PocketDream tests.

The fakes here stand in for ``onnxruntime.InferenceSession`` and
``transformers.CLIPTokenizer`` so that no model files are needed:

- :class:`FakeNodeArg` mimics ``onnxruntime.NodeArg`` (name, type, shape).
- :class:`FakeSession` exposes ``get_inputs()`` and ``run()`` and records
  every feed it receives.
- :class:`FakeTokenizer` returns fixed-length ``input_ids`` derived from the
  characters of the prompt.
"""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Callable, Generator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import numpy as np
import pytest

from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.model_files import ModelPaths
from pocketdream.core.sessions import LoadedModel

HIDDEN_SIZE = 8


@dataclass
class FakeNodeArg:
    """Stand-in for ``onnxruntime.NodeArg``."""

    name: str
    type: str | None = "tensor(float)"
    shape: list | None = None


@dataclass
class FakeSession:
    """Inference session double.

    Attributes:
        inputs: Values returned by ``get_inputs()``.
        fn: Computes the first output from the feed dictionary.
        calls: Every feed dictionary passed to ``run``.
    """

    inputs: list[FakeNodeArg]
    fn: Callable[[dict[str, np.ndarray]], np.ndarray]
    calls: list[dict[str, np.ndarray]] = field(default_factory=list)

    def get_inputs(self) -> list[FakeNodeArg]:
        return self.inputs

    def run(self, output_names: Any, feeds: dict[str, np.ndarray]) -> list[np.ndarray]:
        self.calls.append(feeds)
        return [self.fn(feeds)]


class FakeTokenizer:
    """CLIP-tokenizer double producing deterministic ids."""

    bos_token_id = 49406
    eos_token_id = 49407

    def __init__(self) -> None:
        self.calls: list[str] = []

    def __call__(self, text, padding=None, max_length=77, truncation=False, return_tensors=None):
        self.calls.append(text)
        ids = [self.bos_token_id] + [ord(c) % 1000 for c in text] + [self.eos_token_id]
        if truncation:
            ids = ids[:max_length]
        if padding == "max_length":
            ids = ids + [self.eos_token_id] * (max_length - len(ids))
        return {"input_ids": np.array([ids], dtype=np.int64)}


def text_encoder_output(feeds: dict[str, np.ndarray]) -> np.ndarray:
    """Embedding whose values depend on the token ids."""
    ids = next(iter(feeds.values())).astype(np.float32)
    scaled = (ids / 50000.0)[..., None]
    return np.repeat(scaled, HIDDEN_SIZE, axis=-1).astype(np.float32)


def identity_unet_output(feeds: dict[str, np.ndarray]) -> np.ndarray:
    """Noise prediction equal to the latent input."""
    return feeds["sample"].copy()


def vae_decoder_output(feeds: dict[str, np.ndarray]) -> np.ndarray:
    """Upsample the first three latent channels 8x and squash to [-1, 1]."""
    latents = next(iter(feeds.values()))
    return np.tanh(latents[:, :3]).repeat(8, axis=2).repeat(8, axis=3)


def make_text_encoder() -> FakeSession:
    return FakeSession(
        inputs=[FakeNodeArg("input_ids", "tensor(int32)", [1, 77])],
        fn=text_encoder_output,
    )


def make_unet(
    fn: Callable[[dict[str, np.ndarray]], np.ndarray] = identity_unet_output,
    inputs: list[FakeNodeArg] | None = None,
) -> FakeSession:
    if inputs is None:
        inputs = [
            FakeNodeArg("sample", "tensor(float)", [2, 4, "h", "w"]),
            FakeNodeArg("timestep", "tensor(int64)", [2]),
            FakeNodeArg("encoder_hidden_states", "tensor(float)", [2, 77, HIDDEN_SIZE]),
        ]
    return FakeSession(inputs=inputs, fn=fn)


def make_vae_decoder() -> FakeSession:
    return FakeSession(
        inputs=[FakeNodeArg("latent_sample", "tensor(float)", [1, 4, "h", "w"])],
        fn=vae_decoder_output,
    )


def make_loaded_model(**overrides: Any) -> LoadedModel:
    parts = {
        "text_encoder": make_text_encoder(),
        "unet": make_unet(),
        "vae_decoder": make_vae_decoder(),
        "tokenizer": FakeTokenizer(),
    }
    parts.update(overrides)
    return LoadedModel(**parts)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> PocketDreamConfig:
    """Create a test configuration with temporary directories.

    Small default sizes keep the fake networks fast.
    """
    return PocketDreamConfig(
        models_dir=temp_dir / "models",
        outputs_dir=temp_dir / "outputs",
        previews_dir=temp_dir / "previews",
        default_steps=4,
        default_width=64,
        default_height=64,
    )


@pytest.fixture
def model_dir(temp_dir: Path) -> Path:
    """A complete model directory with placeholder network files."""
    root = temp_dir / "models" / "tiny-sd"
    for component in ("text_encoder", "unet", "vae_decoder"):
        (root / component).mkdir(parents=True)
        (root / component / "model.onnx").write_bytes(b"onnx")
    (root / "tokenizer").mkdir()
    (root / "tokenizer" / "vocab.json").write_text("{}")
    (root / "tokenizer" / "merges.txt").write_text("#version: 0.2\n")
    return root


@pytest.fixture
def loaded_model() -> LoadedModel:
    """Fake sessions with an identity noise predictor."""
    return make_loaded_model()


@pytest.fixture
def fake_session_loader() -> Callable[[ModelPaths, PocketDreamConfig], LoadedModel]:
    """Session loader returning fakes; records the paths it was asked for."""
    calls: list[ModelPaths] = []

    def _loader(paths: ModelPaths, config: PocketDreamConfig) -> LoadedModel:
        calls.append(paths)
        return make_loaded_model(model_dir=paths.root)

    _loader.calls = calls
    return _loader


@pytest.fixture
def test_client(test_config, fake_session_loader, monkeypatch):
    """FastAPI TestClient wired to the test config and fake sessions."""
    from fastapi.testclient import TestClient

    import pocketdream.api.main as api_main
    from pocketdream.core.model_manager import ModelManager

    monkeypatch.setattr(api_main, "config", test_config)

    with TestClient(api_main.app) as client:
        api_main.app.state.model_manager = ModelManager(
            test_config, session_loader=fake_session_loader
        )
        yield client
