"""Configuration management for the Remixer generation queue.

This module provides centralized configuration management using Pydantic Settings.
All configuration is loaded from environment variables with the REMIXER_ prefix,
allowing easy customization without code changes.

Environment Variable Loading
-----------------------------
Configuration values are loaded in the following priority order:
1. Environment variables (REMIXER_* prefix)
2. .env file in the project root
3. Default values defined in RemixerConfig

Example .env file:
    REMIXER_MODEL_ID=stabilityai/sdxl-turbo
    REMIXER_DEVICE=cuda
    REMIXER_POLL_INTERVAL_SECONDS=10
    REMIXER_DATABASE_PATH=data/remixer.db

Global Configuration Instance
------------------------------
A global `config` instance is created automatically at module import time.
This ensures a single source of truth for all configuration values across
the application.

Usage Example
-------------
    from remixer.core.config import config

    print(config.database_path)
    print(config.max_batch_count)

Directory Management
--------------------
The configuration automatically creates required directories on initialization:
- data_dir: SQLite database and inline component references
- images_dir: Generated images written by the queue processor
- references_dir: Uploaded reference photos, one file per reference id
- models_dir: Cached diffusion model files

Queue Settings
--------------
- max_batch_count: Upper clamp for ``count`` on a batch submission
- poll_interval_seconds: How often the background worker re-checks the queue
  even when no enqueue signal arrived
- stale_processing_seconds: A ``processing`` item whose ``started_at`` is older
  than this is treated as orphaned and requeued
- queue_history_retention: Number of finished queue items kept for history
"""

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemixerConfig(BaseSettings):
    """Main configuration for the Remixer service.

    Values are loaded from environment variables with the REMIXER_ prefix,
    with fallback to defaults defined here.

    Attributes
    ----------
    Paths:
        data_dir : Path
            Directory for the database and inline component references
        images_dir : Path
            Directory where generated images are stored
        references_dir : Path
            Directory holding reference photos named ``<reference_id>.<ext>``
        database_path : Path
            SQLite database file
        models_dir : Path
            Directory to cache downloaded diffusion models

    Provider Settings:
        model_id : str
            HuggingFace model ID used by the local diffusers provider
        torch_dtype : Literal["bfloat16", "float16", "float32"]
            Torch dtype for inference
        device : str
            Device for inference (cuda, mps, or cpu)
        num_inference_steps, guidance_scale, img2img_strength,
        default_width, default_height : generation defaults

    Queue Settings:
        max_batch_count, poll_interval_seconds, stale_processing_seconds,
        queue_history_retention

    Server Settings:
        server_host, server_port, log_level

    Notes
    -----
    - All directories are created automatically if they don't exist
    - To modify config, set environment variables and restart the application
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="REMIXER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Paths
    data_dir: Path = Field(
        default=Path("data"),
        description="Directory for the database and inline references",
    )
    images_dir: Path = Field(
        default=Path("data/images"),
        description="Directory to save generated images",
    )
    references_dir: Path = Field(
        default=Path("data/references"),
        description="Directory holding uploaded reference photos",
    )
    database_path: Path = Field(
        default=Path("data/remixer.db"),
        description="SQLite database file",
    )
    models_dir: Path = Field(
        default=Path("models"),
        description="Directory to cache models",
    )

    # Provider settings
    model_id: str = Field(
        default="stabilityai/sdxl-turbo",
        description="HuggingFace model ID for the local diffusers provider",
    )
    torch_dtype: Literal["bfloat16", "float16", "float32"] = Field(
        default="bfloat16",
        description="Torch dtype for model inference",
    )
    device: str = Field(
        default="cuda",
        description="Device to run inference on (cuda/mps/cpu)",
    )
    num_inference_steps: int = Field(default=4, ge=1, le=100)
    guidance_scale: float = Field(default=0.0, ge=0.0, le=30.0)
    img2img_strength: float = Field(
        default=0.6,
        gt=0.0,
        le=1.0,
        description="How far image-to-image remixes may drift from the source",
    )
    default_width: int = Field(default=1024, ge=256, le=2048)
    default_height: int = Field(default=1024, ge=256, le=2048)
    enable_attention_slicing: bool = Field(default=False)
    enable_model_cpu_offload: bool = Field(default=False)

    # Queue settings
    max_batch_count: int = Field(
        default=4,
        ge=1,
        le=16,
        description="Maximum number of generations created by one submission",
    )
    poll_interval_seconds: float = Field(
        default=10.0,
        gt=0.0,
        description="Background worker safety-net poll interval",
    )
    stale_processing_seconds: float = Field(
        default=300.0,
        ge=0.0,
        description="Age after which a processing item is considered orphaned",
    )
    queue_history_retention: int = Field(
        default=100,
        ge=0,
        description="Number of finished queue items kept for history",
    )

    # Server settings
    server_host: str = Field(default="0.0.0.0")
    server_port: int = Field(default=7860, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")

    def __init__(self, **kwargs):
        """Initialize configuration and create required directories."""
        super().__init__(**kwargs)

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.images_dir.mkdir(parents=True, exist_ok=True)
        self.references_dir.mkdir(parents=True, exist_ok=True)
        self.models_dir.mkdir(parents=True, exist_ok=True)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance, loaded from REMIXER_* variables and .env.
config = RemixerConfig()
