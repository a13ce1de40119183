from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from clip_service.render.plan import FALLBACK_CAPTION_FONTS


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CLIP_SERVICE_", env_file=".env", env_file_encoding="utf-8")

    app_name: str = "clip-service"
    host: str = "0.0.0.0"
    port: int = 8100

    temp_dir: str = "./temp"
    output_dir: str = "./output"

    # External encoder and caption overlay
    ffmpeg_binary: str = "ffmpeg"
    caption_font_path: str = "assets/fonts/DejaVuSans-Bold.ttf"
    caption_font_fallbacks: List[str] = Field(default_factory=lambda: list(FALLBACK_CAPTION_FONTS))

    webhook_url: str = ""
    webhook_timeout_seconds: float = 10.0

    kafka_enabled: bool = False
    kafka_bootstrap_servers: str = "localhost:9092"
    kafka_topic: str = "clip_jobs"
    kafka_group_id: str = "clip-service-workers"
    worker_count: int = 2

    max_media_items: int = 5
    image_default_duration: float = 4.0
    image_min_duration: float = 1.0
    image_max_duration: float = 10.0
    video_fallback_duration: float = 10.0

    render_timeout_seconds: float = 15 * 60
    output_retention_seconds: float = 5 * 60
    progress_log_interval_seconds: float = 1.0

    # Object storage configuration
    s3_endpoint_url: str = ""
    s3_region: str | None = None
    s3_public_url: str = ""
    s3_bucket: str = ""
    s3_access_key: str = ""
    s3_secret_key: str = ""
    s3_addressing_style: str = "virtual"
    storage_folder_prefix: str = "clips"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
