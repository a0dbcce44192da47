"""PocketDream FastAPI application.

This module defines the FastAPI ``app`` instance, the REST routes that drive
the pipeline, and the ``main()`` CLI function that launches uvicorn.

Architecture
------------
- **Model lifecycle and generation** go through one
  :class:`~pocketdream.core.model_manager.ModelManager` stored on
  ``app.state``.  No model is loaded at startup.
- **Finished images** are written by
  :class:`~pocketdream.core.image_store.ImageStore` as PNG files in
  ``config.outputs_dir``.
- **Status** is served from the last progress or preview event the
  running generation delivered.

``POST /api/generate`` is a plain ``def`` route, so FastAPI runs it in its
thread pool and ``POST /api/generate/cancel`` stays answerable while a
generation is running.

Endpoints
---------
========  ============================  ====================================
Method    Path                          Purpose
========  ============================  ====================================
GET       ``/api/constants``            Generation defaults
GET       ``/api/model``                Loaded model directory
POST      ``/api/model/load``           Load a model directory
POST      ``/api/model/unload``         Release the loaded model
POST      ``/api/generate``             Generate and store one image
POST      ``/api/generate/cancel``      Cancel the running generation
GET       ``/api/status``               Generation state and last event
GET       ``/api/images``               Stored images, newest first
DELETE    ``/api/images/{id}``          Delete a stored image
========  ============================  ====================================

Usage
-----
CLI (installed entry point)::

    pocketdream

Direct invocation::

    python -m pocketdream.api.main
"""

from __future__ import annotations

import logging
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from pydantic import ValidationError

from pocketdream import __version__
from pocketdream.api.models import GenerateRequest, LoadModelRequest
from pocketdream.core.config import config
from pocketdream.core.errors import (
    BusyError,
    ConfigurationError,
    GenerationCancelledError,
    ImageNotFoundError,
    InferenceError,
    NoModelLoadedError,
)
from pocketdream.core.image_store import ImageStore
from pocketdream.core.model_manager import ModelManager
from pocketdream.core.types import GenerationEvent, PreviewEvent, ProgressEvent

logger = logging.getLogger(__name__)


class StatusTracker:
    """Remembers the most recent progress or preview event.

    Only generations the manager accepted publish events, so a rejected
    request leaves the running generation's last event in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_event: dict | None = None

    def __call__(self, event: GenerationEvent) -> None:
        if isinstance(event, (ProgressEvent, PreviewEvent)):
            with self._lock:
                self._last_event = event.to_dict()

    @property
    def last_event(self) -> dict | None:
        with self._lock:
            return self._last_event


# ---------------------------------------------------------------------------
# Application lifecycle.
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create the model manager and image store; unload on shutdown.

    Args:
        app: The FastAPI application instance.

    Yields:
        Control back to the application for the duration of its lifetime.
    """
    # --- Startup -----------------------------------------------------------
    app.state.model_manager = ModelManager(config)
    app.state.image_store = ImageStore(config.outputs_dir)
    app.state.status = StatusTracker()
    logger.info("ModelManager initialised (no model loaded yet).")

    yield

    # --- Shutdown ----------------------------------------------------------
    manager: ModelManager = app.state.model_manager
    manager.cancel()
    try:
        manager.unload()
    except BusyError:
        logger.warning("Generation still running at shutdown, model left loaded.")
    else:
        logger.info("ModelManager unloaded on shutdown.")


app = FastAPI(
    title="PocketDream",
    description="On-device text-to-image generation with ONNX diffusion networks.",
    version=__version__,
    lifespan=lifespan,
)


def _manager(request: Request) -> ModelManager:
    return request.app.state.model_manager


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@app.get("/api/constants")
async def get_constants() -> dict:
    """Return the generation defaults used for omitted request fields."""
    return {
        "default_steps": config.default_steps,
        "default_guidance_scale": config.default_guidance_scale,
        "default_width": config.default_width,
        "default_height": config.default_height,
        "default_preview_interval": config.default_preview_interval,
        "latent_scale_factor": config.latent_scale_factor,
    }


@app.get("/api/model")
async def get_model(request: Request) -> dict:
    """Return whether a model is loaded and from where."""
    manager = _manager(request)
    model_dir = manager.current_model_dir
    return {"loaded": manager.is_loaded, "model_dir": str(model_dir) if model_dir else None}


@app.post("/api/model/load")
def load_model(req: LoadModelRequest, request: Request) -> dict:
    """Load a model directory.

    Raises:
        HTTPException: 400 for an incomplete directory, 409 while a
            generation is running.
    """
    manager = _manager(request)
    try:
        manager.load_model(req.model_dir)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except BusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"loaded": True, "model_dir": str(manager.current_model_dir)}


@app.post("/api/model/unload")
def unload_model(request: Request) -> dict:
    """Release the loaded model.

    Raises:
        HTTPException: 409 while a generation is running.
    """
    try:
        _manager(request).unload()
    except BusyError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"loaded": False}


@app.post("/api/generate")
def generate(req: GenerateRequest, request: Request) -> dict:
    """Generate one image, store it, and return its record.

    Returns:
        The stored image record merged with the generation metadata.

    Raises:
        HTTPException: 400 for bad sizes or model files, 409 when no model
            is loaded, another generation is running, or the generation was
            cancelled, 500 when a network invocation failed.
    """
    try:
        generation_request = req.to_generation_request(config)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    status: StatusTracker = request.app.state.status
    store: ImageStore = request.app.state.image_store
    manager = _manager(request)

    try:
        result = manager.generate(generation_request, listener=status, model_dir=req.model_dir)
    except ConfigurationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (NoModelLoadedError, BusyError) as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except GenerationCancelledError as exc:
        raise HTTPException(status_code=409, detail="Generation cancelled") from exc
    except InferenceError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    stored = store.save(result)
    return {**result.to_dict(), **stored.to_dict()}


@app.post("/api/generate/cancel")
async def cancel_generation(request: Request) -> dict:
    """Ask the running generation to stop at the next step."""
    return {"cancelled": _manager(request).cancel()}


@app.get("/api/status")
async def get_status(request: Request) -> dict:
    """Return the orchestrator state and the most recent step event."""
    manager = _manager(request)
    status: StatusTracker = request.app.state.status
    return {
        "generating": manager.is_generating(),
        "state": manager.state.value,
        "last_event": status.last_event,
    }


@app.get("/api/images")
async def list_images(request: Request) -> dict:
    """List stored images, newest first."""
    store: ImageStore = request.app.state.image_store
    images = [image.to_dict() for image in store.list_images()]
    return {"images": images, "total": len(images)}


@app.delete("/api/images/{image_id}")
async def delete_image(image_id: str, request: Request) -> dict:
    """Delete a stored image.

    Raises:
        HTTPException: 404 if the image does not exist.
    """
    store: ImageStore = request.app.state.image_store
    try:
        store.delete(image_id)
    except ImageNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Image not found") from exc
    return {"success": True, "deleted": image_id}


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Host, port and log level come from
    :data:`~pocketdream.core.config.config` (``POCKETDREAM_SERVER_HOST``,
    ``POCKETDREAM_SERVER_PORT``, ``POCKETDREAM_LOG_LEVEL``).

    Registered as the ``pocketdream`` console script in ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "pocketdream.api.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
