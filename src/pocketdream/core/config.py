"""Configuration management for PocketDream.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the POCKETDREAM_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (POCKETDREAM_* prefix)
2. .env file in the project root
3. Default values defined in PocketDreamConfig

Example .env file:
    POCKETDREAM_MODELS_DIR=/data/models
    POCKETDREAM_DEFAULT_STEPS=8
    POCKETDREAM_UNET_PROVIDERS=["NnapiExecutionProvider","CPUExecutionProvider"]
    POCKETDREAM_STEP_YIELD_SECONDS=0.05

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from pocketdream.core.config import config

    print(config.models_dir)
    print(config.default_steps)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- models_dir: For model directories (text_encoder/, unet/, vae_decoder/, tokenizer/)
- outputs_dir: For generated images handed to the image store
- previews_dir: For temporary mid-generation preview frames

Latent Space Constants
----------------------
The defaults describe the Stable Diffusion 1.5 family:
- latent_channels: 4
- latent_scale_factor: 8 (width/height must be multiples of this)
- vae_scale_factor: 0.18215 (latents are divided by it before decoding)
- tokenizer_max_length: 77 (CLIP context length)
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PocketDreamConfig(BaseSettings):
    """Main configuration for the PocketDream pipeline and its HTTP host.

    Values are loaded from environment variables with the POCKETDREAM_ prefix,
    with fallback to the defaults defined here. All Path fields are created
    if they don't exist.

    Attributes
    ----------
    Paths:
        models_dir : Path
            Directory holding model folders
        outputs_dir : Path
            Directory where the image store writes finished images
        previews_dir : Path
            Parent directory for per-generation preview folders

    Generation Defaults:
        default_steps : int
            Default number of denoising steps
        default_guidance_scale : float
            Default classifier-free guidance weight
        default_width / default_height : int
            Default output size in pixels
        default_preview_interval : int
            Emit a preview every N steps (0 disables previews)

    Latent Space:
        latent_channels, latent_scale_factor, vae_scale_factor,
        tokenizer_max_length

    Runtime:
        step_yield_seconds : float
            Sleep after every step to keep a host UI thread responsive
        event_queue_size : int
            Maximum number of undelivered events before new ones are dropped
        intra_op_num_threads / inter_op_num_threads : int
            onnxruntime thread pools
        cpu_providers : list[str]
            Execution providers for the text encoder and image decoder
        unet_providers : list[str]
            Execution providers for the noise predictor

    Server:
        server_host, server_port, log_level

    Examples
    --------
        >>> custom_config = PocketDreamConfig(
        ...     models_dir="/tmp/models",
        ...     default_steps=4,
        ... )
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="POCKETDREAM_",
        case_sensitive=False,
    )

    # Paths
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory containing model folders",
    )
    outputs_dir: Path = Field(
        default=Path("outputs"),
        description="Directory to save generated images",
    )
    previews_dir: Path = Field(
        default=Path("previews"),
        description="Directory for temporary preview frames",
    )

    # Generation defaults
    default_steps: int = Field(default=20, ge=1, le=100)
    default_guidance_scale: float = Field(default=7.5, ge=0.0, le=30.0)
    default_width: int = Field(default=512, ge=64, le=2048)
    default_height: int = Field(default=512, ge=64, le=2048)
    default_preview_interval: int = Field(
        default=2,
        ge=0,
        description="Emit a preview every N steps (0 disables previews)",
    )

    # Latent space constants (SD 1.5 family)
    latent_channels: int = Field(default=4, ge=1)
    latent_scale_factor: int = Field(default=8, ge=1)
    vae_scale_factor: float = Field(default=0.18215, gt=0.0)
    tokenizer_max_length: int = Field(default=77, ge=1)

    # Runtime behaviour
    step_yield_seconds: float = Field(
        default=0.0,
        ge=0.0,
        description="Sleep after each step so a host UI thread is not starved",
    )
    event_queue_size: int = Field(default=256, ge=1)
    intra_op_num_threads: int = Field(default=4, ge=0)
    inter_op_num_threads: int = Field(default=2, ge=0)
    cpu_providers: list[str] = Field(default_factory=lambda: ["CPUExecutionProvider"])
    unet_providers: list[str] = Field(
        default_factory=lambda: ["CPUExecutionProvider"],
        description="Execution providers for the noise predictor, in priority order",
    )

    # Server settings
    server_host: str = Field(
        default="0.0.0.0",
        description="Server bind address (0.0.0.0 for local network)",
    )
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories.

        Args:
            **kwargs: Configuration overrides (typically from environment variables)
        """
        super().__init__(**kwargs)

        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        self.previews_dir.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from POCKETDREAM_* variables and .env.
config = PocketDreamConfig()
