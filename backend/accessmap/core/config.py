from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""

    app_name: str = "Accessmap API"
    debug: bool = False

    # API settings
    api_v1_prefix: str = "/api/v1"

    # CORS settings
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Graph settings
    coord_precision: int = 6  # decimal places used for node ids
    degrees_to_meters: float = 111000.0  # equirectangular approximation
    use_spatial_index: bool = True

    # Distance matrix settings
    matrix_worker_kind: str = "thread"  # 'thread' or 'process'
    matrix_poll_interval_seconds: float = 0.05
    progress_step_percent: int = 5

    # Scoring settings
    recompute_debounce_seconds: float = 0.1
    max_distance_default: float = 2000.0  # meters

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
