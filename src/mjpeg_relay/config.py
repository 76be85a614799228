"""
mjpeg_relay Configuration
=========================

This module handles configuration loading for the relay.

Configuration Sources (in order of precedence):
    1. Command line flags (see __main__.py)
    2. Environment variables
    3. config.yaml file
    4. Default values (lowest priority)

Environment Variable Mapping:
    MJPEG_SOURCE       -> encoder.source
    MJPEG_DEVICE       -> encoder.device
    MJPEG_FRAME_RATE   -> encoder.frame_rate
    MJPEG_WIDTH        -> encoder.width
    MJPEG_HEIGHT       -> encoder.height
    MJPEG_QUALITY      -> encoder.quality
    MJPEG_LISTEN_HOST  -> server.host
    MJPEG_LISTEN_PORT  -> server.port
    PORT               -> server.port
    MJPEG_LOG_LEVEL    -> logging.level

Example:
    from mjpeg_relay.config import settings

    print(settings.encoder.device)
    print(settings.stream.backlog_watermark)
"""

import os
import logging
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, model_validator


logger = logging.getLogger(__name__)


# =============================================================================
# Configuration Models
# =============================================================================

class ServiceConfig(BaseModel):
    """Service identification configuration."""

    name: str = Field(default="mjpeg-relay", description="Service name")
    version: str = Field(default="0.1.0", description="Service version")


class EncoderConfig(BaseModel):
    """Frame source and encoder configuration."""

    source: str = Field(
        default="ffmpeg",
        description="Frame source: 'ffmpeg' (spawn encoder) or 'stdin'",
    )
    binary: str = Field(default="ffmpeg", description="Encoder executable")
    device: str = Field(default="/dev/video0", description="Video device to read from")
    input_format: str = Field(default="yuyv422", description="V4L2 input pixel format")
    frame_rate: int = Field(default=10, ge=1, description="Frame rate to show in MJPEG")
    width: int = Field(default=1280, ge=1, description="Width of video frames")
    height: int = Field(default=720, ge=1, description="Height of video frames")
    quality: int = Field(default=5, ge=2, le=31, description="Image quality (2..31)")


class StreamConfig(BaseModel):
    """Frame extraction and delivery configuration."""

    read_size: int = Field(
        default=1024,
        ge=1,
        description="Bytes requested per read from the encoder pipe",
    )
    max_buffer_size: int = Field(
        default=8 * 1024 * 1024,
        ge=1024,
        description="Maximum unparsed bytes before the stream is declared broken",
    )
    queue_capacity: int = Field(
        default=10,
        ge=1,
        description="Frame queue capacity per client",
    )
    backlog_watermark: int = Field(
        default=5,
        ge=1,
        description="Pending frames at which new frames are dropped for a client",
    )
    max_write_errors: int = Field(
        default=5,
        ge=0,
        description="Consecutive write failures tolerated per client",
    )
    boundary: str = Field(
        default="--boundary",
        min_length=1,
        max_length=70,
        description="Multipart boundary token",
    )
    snapshot_timeout: Optional[float] = Field(
        default=None,
        gt=0,
        description="Seconds to wait for a snapshot frame (None = until disconnect)",
    )
    exit_on_failure: bool = Field(
        default=True,
        description="Terminate the process when the input stream fails",
    )

    @model_validator(mode="after")
    def check_backlog_watermark(self) -> "StreamConfig":
        """The watermark must fit in the per-client queue."""
        if self.backlog_watermark > self.queue_capacity:
            raise ValueError(
                f"backlog_watermark ({self.backlog_watermark}) must not exceed "
                f"queue_capacity ({self.queue_capacity})"
            )
        return self


class ServerConfig(BaseModel):
    """Server configuration."""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=3000, ge=1, le=65535, description="Bind port")
    shutdown_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for open connections on shutdown",
    )


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="text", description="Log format: json or text")


class Settings(BaseModel):
    """
    Main settings class for mjpeg_relay.

    Loads configuration from YAML file and environment variables.
    Environment variables take precedence over file values.
    """

    service: ServiceConfig = Field(default_factory=ServiceConfig)
    encoder: EncoderConfig = Field(default_factory=EncoderConfig)
    stream: StreamConfig = Field(default_factory=StreamConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# Configuration Loading
# =============================================================================

def load_config(config_path: Optional[str] = None) -> Settings:
    """
    Load configuration from YAML file and environment variables.

    Priority (highest to lowest):
        1. Environment variables
        2. YAML config file
        3. Default values

    Args:
        config_path: Path to config.yaml. If None, searches common locations.

    Returns:
        Settings: Loaded configuration
    """
    # Find config file
    if config_path is None:
        config_path = os.environ.get("MJPEG_CONFIG")
    if config_path is None:
        search_paths = [
            Path("config.yaml"),
            Path("config.yml"),
            Path("/etc/mjpeg-relay/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = str(path)
                break

    # Load from YAML if exists
    config_data = {}
    if config_path and Path(config_path).exists():
        logger.info(f"Loading config from: {config_path}")
        with open(config_path, "r") as f:
            config_data = yaml.safe_load(f) or {}
    else:
        logger.debug("No config file found, using defaults and environment variables")

    # Apply environment variable overrides
    _apply_env_overrides(config_data)

    return Settings.model_validate(config_data)


def _apply_env_overrides(config_data: dict) -> None:
    """Apply environment variable overrides to config data."""

    # Encoder settings
    if env_source := os.environ.get("MJPEG_SOURCE"):
        config_data.setdefault("encoder", {})["source"] = env_source
    if env_device := os.environ.get("MJPEG_DEVICE"):
        config_data.setdefault("encoder", {})["device"] = env_device
    if env_rate := os.environ.get("MJPEG_FRAME_RATE"):
        config_data.setdefault("encoder", {})["frame_rate"] = int(env_rate)
    if env_width := os.environ.get("MJPEG_WIDTH"):
        config_data.setdefault("encoder", {})["width"] = int(env_width)
    if env_height := os.environ.get("MJPEG_HEIGHT"):
        config_data.setdefault("encoder", {})["height"] = int(env_height)
    if env_quality := os.environ.get("MJPEG_QUALITY"):
        config_data.setdefault("encoder", {})["quality"] = int(env_quality)

    # Server settings
    if env_host := os.environ.get("MJPEG_LISTEN_HOST"):
        config_data.setdefault("server", {})["host"] = env_host
    if env_port := os.environ.get("PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)
    elif env_port := os.environ.get("MJPEG_LISTEN_PORT"):
        config_data.setdefault("server", {})["port"] = int(env_port)

    # Logging settings
    if env_log := os.environ.get("MJPEG_LOG_LEVEL"):
        config_data.setdefault("logging", {})["level"] = env_log


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings."""
    log_level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    if settings.logging.format == "json":
        log_format = '{"time": "%(asctime)s", "level": "%(levelname)s", "module": "%(name)s", "message": "%(message)s"}'
    else:
        log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=log_level,
        format=log_format,
        datefmt="%Y-%m-%dT%H:%M:%S",
        force=True,
    )


# =============================================================================
# Global Settings Instance
# =============================================================================

# Global settings instance - loaded on import
settings = load_config()
setup_logging(settings)
