"""Model lifecycle management for PocketDream.

This module provides :class:`ModelManager`, the single point of control for
loading, switching, and invoking the on-device diffusion networks.  One
manager holds at most one model in memory at a time.

Key Responsibilities
--------------------
- **Validated loading**: a model directory is checked for every required
  network and the tokenizer before any session is created, so a broken
  directory fails with :class:`~pocketdream.core.errors.ConfigurationError`
  and leaves nothing half-loaded.
- **Lazy loading**: :meth:`ModelManager.generate` loads the requested
  model directory on first use when one is given.
- **Model switching**: requesting a different directory unloads the
  current sessions first.
- **Binding plan cache**: the noise predictor's
  :class:`~pocketdream.core.tensor_adapter.TensorBindingPlan` is built once
  per load and dropped on unload.
- **Exclusive access**: load and unload are rejected with
  :class:`~pocketdream.core.errors.BusyError` while a generation borrows the
  sessions; a generation never sees sessions being swapped under it.

Usage
-----
::

    from pocketdream.core.config import config
    from pocketdream.core.model_manager import ModelManager
    from pocketdream.core.types import GenerationRequest

    mgr = ModelManager(config)
    mgr.load_model("models/sd15-onnx")

    result = mgr.generate(GenerationRequest(prompt="a red cube", seed=42))

    mgr.unload()
"""

from __future__ import annotations

import gc
import logging
import threading
from pathlib import Path
from typing import Callable

from pocketdream.core.config import PocketDreamConfig
from pocketdream.core.errors import BusyError, NoModelLoadedError
from pocketdream.core.events import EventListener
from pocketdream.core.model_files import ModelPaths, resolve_model_paths
from pocketdream.core.orchestrator import DenoisingOrchestrator
from pocketdream.core.sessions import LoadedModel, load_sessions
from pocketdream.core.tensor_adapter import TensorBindingPlan, build_binding_plan
from pocketdream.core.types import GenerationRequest, GenerationResult, GenerationState

logger = logging.getLogger(__name__)

SessionLoader = Callable[[ModelPaths, PocketDreamConfig], LoadedModel]


class ModelManager:
    """Manages the lifecycle of one set of diffusion networks.

    Attributes:
        _config (PocketDreamConfig):
            Application configuration.
        _model (LoadedModel | None):
            Currently loaded sessions, or ``None``.
        _plan (TensorBindingPlan | None):
            Cached binding plan for ``_model.unet``.
        _orchestrator (DenoisingOrchestrator):
            Runs generations against the borrowed sessions.
    """

    def __init__(
        self,
        config: PocketDreamConfig,
        session_loader: SessionLoader = load_sessions,
    ) -> None:
        """Initialise the model manager.

        No model is loaded at this stage; use :meth:`load_model` or pass
        ``model_dir`` to :meth:`generate`.

        Args:
            config: Application configuration instance.
            session_loader: Builds a :class:`LoadedModel` from validated
                paths.  Defaults to the onnxruntime loader.
        """
        self._config = config
        self._session_loader = session_loader
        self._lock = threading.RLock()
        self._borrowed = False

        self._model: LoadedModel | None = None
        self._plan: TensorBindingPlan | None = None
        self._current_model_dir: Path | None = None

        self._orchestrator = DenoisingOrchestrator(config)

    # -- Public interface ---------------------------------------------------

    def load_model(self, model_dir: str | Path) -> None:
        """Load the networks found in *model_dir*.

        Loading the directory that is already loaded is a no-op.  A
        different directory unloads the current model first.

        Raises:
            ConfigurationError: If files are missing or the noise predictor's
                inputs cannot be bound.
            BusyError: If a generation is running.
        """
        with self._lock:
            self._ensure_idle("load a model")

            paths = resolve_model_paths(model_dir)
            requested = paths.root.resolve()

            if self._model is not None and self._current_model_dir == requested:
                logger.info("Model '%s' is already loaded, skipping.", requested)
                return

            if self._model is not None:
                logger.info(
                    "Switching from '%s' to '%s', unloading current model.",
                    self._current_model_dir,
                    requested,
                )
                self._release()

            logger.info("Loading model from '%s'.", requested)
            try:
                model = self._session_loader(paths, self._config)
                plan = build_binding_plan(model.unet.get_inputs())
            except Exception:
                self._release()
                logger.exception("Failed to load model '%s'.", requested)
                raise

            self._model = model
            self._plan = plan
            self._current_model_dir = requested
            logger.info("Model '%s' loaded successfully (inputs: %s).", requested, plan.describe())

    def unload(self) -> None:
        """Release the loaded sessions.  No-op when nothing is loaded.

        Raises:
            BusyError: If a generation is running.
        """
        with self._lock:
            self._ensure_idle("unload the model")
            if self._model is None:
                return
            logger.info("Unloading model '%s'.", self._current_model_dir)
            self._release()

    def generate(
        self,
        request: GenerationRequest,
        listener: EventListener | None = None,
        model_dir: str | Path | None = None,
    ) -> GenerationResult:
        """Generate an image with the loaded (or lazily loaded) model.

        Args:
            request: Generation parameters.
            listener: Receives progress, preview, complete and error events.
            model_dir: Optional model directory to load before generating.

        Raises:
            ConfigurationError: If *model_dir* is given and incomplete.
            NoModelLoadedError: If no model is loaded.
            BusyError: If a generation is already running.
            GenerationCancelledError: If :meth:`cancel` was called.
            InferenceError: If a network invocation failed.
        """
        with self._lock:
            if model_dir is not None:
                self.load_model(model_dir)
            if self._model is None:
                raise NoModelLoadedError("No model loaded. Call load_model first.")
            self._ensure_idle("start a generation")
            model, plan = self._model, self._plan
            self._borrowed = True

        try:
            return self._orchestrator.generate(model, request, listener, binding_plan=plan)
        finally:
            with self._lock:
                self._borrowed = False

    def cancel(self) -> bool:
        """Cancel the running generation.  Returns ``False`` if none was running."""
        return self._orchestrator.cancel()

    def is_generating(self) -> bool:
        return self._orchestrator.is_generating()

    # -- Properties ---------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        """Whether a model is currently loaded."""
        return self._model is not None

    @property
    def current_model_dir(self) -> Path | None:
        """Directory of the currently loaded model, or ``None``."""
        return self._current_model_dir

    @property
    def binding_plan(self) -> TensorBindingPlan | None:
        return self._plan

    @property
    def state(self) -> GenerationState:
        return self._orchestrator.state

    # -- Internals ----------------------------------------------------------

    def _ensure_idle(self, action: str) -> None:
        if self._borrowed:
            raise BusyError(f"Cannot {action} while a generation is in progress")

    def _release(self) -> None:
        self._model = None
        self._plan = None
        self._current_model_dir = None
        gc.collect()
