"""Centralized configuration for the grid generator."""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class GridRunConfig:
    """Scheduling knobs for a grid run."""
    max_simul: int = 4
    max_requests_forced_order: int = 20  # below this backend queue depth, pause between submissions
    order_delay: float = 0.02  # seconds
    per_request_timeout_minutes: int = 20160
    stream_poll_interval: float = 1.0  # seconds between liveness checks


@dataclass(frozen=True)
class LabelConfig:
    """Configuration for composite image axis labels."""
    base_font_size: int = 16
    font_path: str | None = None
    sample_text: str = "ABCdefg Word Prefix"
    large_image_threshold: int = 800


@dataclass(frozen=True)
class ImageGenerationConfig:
    """Default configuration for the bundled image generation backend."""
    default_width: int = 864
    default_height: int = 1152
    default_steps: int = 4
    default_quantize: int = 8
    default_model: str = "z-image-turbo"
    workers: int = 1


@dataclass(frozen=True)
class ServerConfig:
    """Configuration for the web server."""
    host: str = "127.0.0.1"
    port: int = 8000
    sse_ping_interval: float = 15.0  # seconds between keepalives


@dataclass(frozen=True)
class PathConfig:
    """Centralized path configuration for the application."""

    shared_user: str = "_shared"

    @property
    def root_dir(self) -> Path:
        """Project root directory."""
        return Path(__file__).parent.parent

    @property
    def generated_dir(self) -> Path:
        """Directory for all generated output."""
        return self.root_dir / "generated"

    @property
    def grids_dir(self) -> Path:
        """Root of per-user grid run output folders."""
        return self.generated_dir / "grids"

    @property
    def images_dir(self) -> Path:
        """Directory for individually saved images."""
        return self.generated_dir / "images"

    @property
    def saved_grids_dir(self) -> Path:
        """Directory for named grid definitions."""
        return self.generated_dir / "saved_grids"


# Singleton path configuration instance
paths = PathConfig()


@dataclass
class Settings:
    """Application settings, can be overridden via environment variables."""
    grid: GridRunConfig = field(default_factory=GridRunConfig)
    labels: LabelConfig = field(default_factory=LabelConfig)
    image_generation: ImageGenerationConfig = field(default_factory=ImageGenerationConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Load settings from environment variables with GRID_GEN_ prefix."""
        grid = GridRunConfig(
            max_simul=int(os.environ.get("GRID_GEN_MAX_SIMUL", GridRunConfig.max_simul)),
            max_requests_forced_order=int(os.environ.get(
                "GRID_GEN_MAX_REQUESTS_FORCED_ORDER", GridRunConfig.max_requests_forced_order)),
            order_delay=float(os.environ.get("GRID_GEN_ORDER_DELAY", GridRunConfig.order_delay)),
            per_request_timeout_minutes=int(os.environ.get(
                "GRID_GEN_PER_REQUEST_TIMEOUT_MINUTES", GridRunConfig.per_request_timeout_minutes)),
            stream_poll_interval=float(os.environ.get(
                "GRID_GEN_STREAM_POLL_INTERVAL", GridRunConfig.stream_poll_interval)),
        )
        labels = LabelConfig(
            base_font_size=int(os.environ.get("GRID_GEN_LABEL_FONT_SIZE", LabelConfig.base_font_size)),
            font_path=os.environ.get("GRID_GEN_LABEL_FONT", LabelConfig.font_path),
        )
        image_generation = ImageGenerationConfig(
            default_width=int(os.environ.get("GRID_GEN_DEFAULT_WIDTH", ImageGenerationConfig.default_width)),
            default_height=int(os.environ.get("GRID_GEN_DEFAULT_HEIGHT", ImageGenerationConfig.default_height)),
            default_steps=int(os.environ.get("GRID_GEN_DEFAULT_STEPS", ImageGenerationConfig.default_steps)),
            default_quantize=int(os.environ.get("GRID_GEN_DEFAULT_QUANTIZE", ImageGenerationConfig.default_quantize)),
            default_model=os.environ.get("GRID_GEN_DEFAULT_MODEL", ImageGenerationConfig.default_model),
            workers=int(os.environ.get("GRID_GEN_BACKEND_WORKERS", ImageGenerationConfig.workers)),
        )
        server = ServerConfig(
            host=os.environ.get("GRID_GEN_HOST", ServerConfig.host),
            port=int(os.environ.get("GRID_GEN_PORT", ServerConfig.port)),
            sse_ping_interval=float(os.environ.get("GRID_GEN_SSE_PING", ServerConfig.sse_ping_interval)),
        )
        return cls(
            grid=grid,
            labels=labels,
            image_generation=image_generation,
            server=server,
        )


# Global settings instance - use from_env() for environment-aware settings
settings = Settings.from_env()
