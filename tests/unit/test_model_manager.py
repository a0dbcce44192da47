"""Tests for pocketdream.core.model_manager: model lifecycle.

Tests cover:

- Initial state (no model loaded).
- Model loading, session options and execution provider selection.
- Model switching and same-directory no-op.
- Validation failures before any session is created.
- Error handling during model loading.
- Lazy loading through ``generate(model_dir=...)``.
- Busy rejection of load/unload while a generation runs.
- Unload safety (no-op when nothing loaded).

Implementation Note
-------------------
``load_sessions()`` imports ``onnxruntime`` and ``transformers`` lazily
inside the function body.  To mock these we use ``sys.modules`` injection
rather than ``@patch`` decorators, since the module-level names don't exist
until the import statement executes.
"""

from __future__ import annotations

import shutil
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import (
    FakeTokenizer,
    identity_unet_output,
    make_loaded_model,
    make_text_encoder,
    make_unet,
    make_vae_decoder,
)
from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.errors import BusyError, ConfigurationError, NoModelLoadedError
from pocketdream.core.model_manager import ModelManager
from pocketdream.core.types import GenerationRequest, GenerationState

_SESSION_FACTORIES = {
    "text_encoder": make_text_encoder,
    "unet": make_unet,
    "vae_decoder": make_vae_decoder,
}

# ---------------------------------------------------------------------------
# Shared helpers for mocking onnxruntime and transformers.
# ---------------------------------------------------------------------------


def _create_mock_ort(available: list[str] | None = None) -> MagicMock:
    """Create a mock ``onnxruntime`` module returning fake sessions.

    The session returned depends on the folder the model file lives in.
    """
    mock_ort = MagicMock()
    mock_ort.get_available_providers.return_value = available or ["CPUExecutionProvider"]

    def _session(path, sess_options=None, providers=None):
        return _SESSION_FACTORIES[Path(path).parent.name]()

    mock_ort.InferenceSession.side_effect = _session
    return mock_ort


class _MockContext:
    """Context manager that injects mock onnxruntime and transformers into sys.modules."""

    def __init__(self, available: list[str] | None = None):
        self.mock_ort = _create_mock_ort(available)
        self.mock_transformers = MagicMock()
        self.mock_transformers.CLIPTokenizer.from_pretrained.return_value = FakeTokenizer()
        self._saved: dict[str, object] = {}

    def __enter__(self):
        for name, module in (
            ("onnxruntime", self.mock_ort),
            ("transformers", self.mock_transformers),
        ):
            self._saved[name] = sys.modules.get(name)
            sys.modules[name] = module
        return self

    def __exit__(self, *args):
        for name, module in self._saved.items():
            if module is not None:
                sys.modules[name] = module
            else:
                sys.modules.pop(name, None)


def _request(**overrides) -> GenerationRequest:
    params = {"prompt": "a red cube", "steps": 2, "seed": 1, "width": 64, "height": 64}
    params.update(overrides)
    return GenerationRequest(**params)


def _copy_model(model_dir: Path, name: str) -> Path:
    target = model_dir.parent / name
    shutil.copytree(model_dir, target)
    return target


# ---------------------------------------------------------------------------
# Tests.
# ---------------------------------------------------------------------------


class TestModelManagerInit:
    """Test ModelManager initial state."""

    def test_no_model_loaded_initially(self, test_config: PocketDreamConfig):
        mgr = ModelManager(test_config)
        assert mgr.is_loaded is False
        assert mgr.current_model_dir is None
        assert mgr.binding_plan is None
        assert mgr.state is GenerationState.IDLE

    def test_stores_config(self, test_config: PocketDreamConfig):
        mgr = ModelManager(test_config)
        assert mgr._config is test_config


class TestModelLoading:
    """Test model loading through the onnxruntime loader."""

    def test_load_model_sets_state(self, test_config, model_dir):
        with _MockContext():
            mgr = ModelManager(test_config)
            mgr.load_model(model_dir)

            assert mgr.is_loaded is True
            assert mgr.current_model_dir == model_dir.resolve()
            assert mgr.binding_plan.describe() == {
                "sample": "sample",
                "timestep": "timestep",
                "encoder_hidden_states": "conditioning",
            }

    def test_session_options(self, test_config, model_dir):
        """All sessions share full optimisation and the configured threads."""
        with _MockContext() as ctx:
            ModelManager(test_config).load_model(model_dir)

            options = ctx.mock_ort.SessionOptions.return_value
            assert options.graph_optimization_level is (
                ctx.mock_ort.GraphOptimizationLevel.ORT_ENABLE_ALL
            )
            assert options.intra_op_num_threads == 4
            assert options.inter_op_num_threads == 2
            assert options.enable_mem_pattern is True
            for call in ctx.mock_ort.InferenceSession.call_args_list:
                assert call.kwargs["sess_options"] is options

    def test_unavailable_providers_skipped(self, temp_dir, model_dir):
        cfg = PocketDreamConfig(
            _env_file=None,
            models_dir=temp_dir / "models",
            outputs_dir=temp_dir / "outputs",
            previews_dir=temp_dir / "previews",
            unet_providers=["NnapiExecutionProvider", "CPUExecutionProvider"],
        )
        with _MockContext(available=["CPUExecutionProvider"]) as ctx:
            ModelManager(cfg).load_model(model_dir)

            unet_call = next(
                c
                for c in ctx.mock_ort.InferenceSession.call_args_list
                if Path(c.args[0]).parent.name == "unet"
            )
            assert unet_call.kwargs["providers"] == ["CPUExecutionProvider"]

    def test_tokenizer_loaded_from_tokenizer_dir(self, test_config, model_dir):
        with _MockContext() as ctx:
            ModelManager(test_config).load_model(model_dir)
            ctx.mock_transformers.CLIPTokenizer.from_pretrained.assert_called_once_with(
                str(model_dir / "tokenizer")
            )

    def test_load_same_model_is_noop(self, test_config, model_dir):
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            mgr.load_model(model_dir)
            mgr.load_model(model_dir)

            assert ctx.mock_ort.InferenceSession.call_count == 3

    def test_missing_decoder_fails_before_any_session(self, test_config, model_dir):
        shutil.rmtree(model_dir / "vae_decoder")
        with _MockContext() as ctx:
            mgr = ModelManager(test_config)
            with pytest.raises(ConfigurationError, match="vae_decoder"):
                mgr.load_model(model_dir)

            ctx.mock_ort.InferenceSession.assert_not_called()
            assert mgr.is_loaded is False

    def test_load_failure_clears_state(self, test_config, model_dir):
        """If loading fails, state should be cleaned up (no partial sessions)."""
        with _MockContext() as ctx:
            ctx.mock_ort.InferenceSession.side_effect = RuntimeError("Out of memory")
            mgr = ModelManager(test_config)

            with pytest.raises(RuntimeError, match="Out of memory"):
                mgr.load_model(model_dir)

            assert mgr.is_loaded is False
            assert mgr.current_model_dir is None

    def test_unbindable_unet_fails_load(self, test_config, model_dir):
        from conftest import FakeNodeArg

        def _session(path, sess_options=None, providers=None):
            if Path(path).parent.name == "unet":
                return make_unet(inputs=[FakeNodeArg("mystery", "tensor(float)", [1])])
            return _SESSION_FACTORIES[Path(path).parent.name]()

        with _MockContext() as ctx:
            ctx.mock_ort.InferenceSession.side_effect = _session
            mgr = ModelManager(test_config)
            with pytest.raises(ConfigurationError, match="mystery"):
                mgr.load_model(model_dir)
            assert mgr.is_loaded is False


class TestModelSwitching:
    """Test switching between different model directories."""

    def test_switching_unloads_previous(self, test_config, model_dir, fake_session_loader):
        other = _copy_model(model_dir, "other-sd")
        mgr = ModelManager(test_config, session_loader=fake_session_loader)
        mgr.load_model(model_dir)
        mgr.load_model(other)

        assert mgr.current_model_dir == other.resolve()
        assert len(fake_session_loader.calls) == 2

    def test_invalid_switch_keeps_current_model(
        self, test_config, model_dir, fake_session_loader
    ):
        broken = _copy_model(model_dir, "broken-sd")
        shutil.rmtree(broken / "unet")
        mgr = ModelManager(test_config, session_loader=fake_session_loader)
        mgr.load_model(model_dir)

        with pytest.raises(ConfigurationError):
            mgr.load_model(broken)

        # Validation failed before the old model was touched.
        assert mgr.current_model_dir == model_dir.resolve()


class TestGeneration:
    """Test generation through the manager."""

    def test_generate_without_model_raises(self, test_config):
        mgr = ModelManager(test_config)
        with pytest.raises(NoModelLoadedError):
            mgr.generate(_request())

    def test_generate_loads_lazily(self, test_config, model_dir, fake_session_loader):
        mgr = ModelManager(test_config, session_loader=fake_session_loader)
        result = mgr.generate(_request(), model_dir=model_dir)

        assert mgr.is_loaded is True
        assert result.image.size == (64, 64)

    def test_generate_with_broken_dir_never_loads(self, test_config, model_dir):
        shutil.rmtree(model_dir / "vae_decoder")
        loader = MagicMock()
        mgr = ModelManager(test_config, session_loader=loader)

        with pytest.raises(ConfigurationError):
            mgr.generate(_request(), model_dir=model_dir)
        loader.assert_not_called()

    def test_generate_uses_cached_plan(self, test_config, model_dir, fake_session_loader):
        mgr = ModelManager(test_config, session_loader=fake_session_loader)
        mgr.load_model(model_dir)
        plan = mgr.binding_plan
        mgr.generate(_request())
        mgr.generate(_request())
        assert mgr.binding_plan is plan


class TestBusy:
    """Load and unload are rejected while a generation runs."""

    def _start_blocking_generation(self, test_config, model_dir):
        entered = threading.Event()
        release = threading.Event()

        def blocking_unet(feeds):
            entered.set()
            release.wait(5)
            return identity_unet_output(feeds)

        def loader(paths, config):
            return make_loaded_model(unet=make_unet(fn=blocking_unet), model_dir=paths.root)

        mgr = ModelManager(test_config, session_loader=loader)
        mgr.load_model(model_dir)
        worker = threading.Thread(target=mgr.generate, args=(_request(steps=1),))
        worker.start()
        assert entered.wait(5)
        return mgr, release, worker

    def test_unload_during_generation(self, test_config, model_dir):
        mgr, release, worker = self._start_blocking_generation(test_config, model_dir)
        try:
            with pytest.raises(BusyError):
                mgr.unload()
            assert mgr.is_loaded is True
        finally:
            release.set()
            worker.join(5)

    def test_load_during_generation(self, test_config, model_dir):
        mgr, release, worker = self._start_blocking_generation(test_config, model_dir)
        try:
            with pytest.raises(BusyError):
                mgr.load_model(model_dir)
        finally:
            release.set()
            worker.join(5)

    def test_concurrent_generate(self, test_config, model_dir):
        mgr, release, worker = self._start_blocking_generation(test_config, model_dir)
        try:
            assert mgr.is_generating() is True
            with pytest.raises(BusyError):
                mgr.generate(_request())
        finally:
            release.set()
            worker.join(5)

    def test_unload_allowed_after_generation(self, test_config, model_dir):
        mgr, release, worker = self._start_blocking_generation(test_config, model_dir)
        release.set()
        worker.join(5)
        mgr.unload()
        assert mgr.is_loaded is False


class TestUnload:
    """Test model unloading."""

    def test_unload_noop_when_empty(self, test_config):
        mgr = ModelManager(test_config)
        mgr.unload()
        assert mgr.is_loaded is False

    def test_unload_clears_state(self, test_config, model_dir, fake_session_loader):
        mgr = ModelManager(test_config, session_loader=fake_session_loader)
        mgr.load_model(model_dir)
        mgr.unload()

        assert mgr.is_loaded is False
        assert mgr.current_model_dir is None
        assert mgr.binding_plan is None
