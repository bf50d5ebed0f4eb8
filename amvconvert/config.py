"""Application configuration via environment variables."""

import os
import shutil
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Server
    host: str = "127.0.0.1"
    port: int = 51234
    cors_origins: List[str] = ["http://localhost:51234", "http://127.0.0.1:51234"]
    static_dir: Optional[str] = None

    # Scratch storage (uploads/ and converted/ live under this directory)
    data_dir: str = "."

    # Engine binaries; resolved from PATH when unset
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    probe_timeout_seconds: float = 30.0

    # Uploads
    max_upload_bytes: int = 1024 * 1024 * 1024

    # Cleanup grace periods
    completed_ttl_seconds: float = 3600.0
    download_ttl_seconds: float = 60.0
    error_ttl_seconds: Optional[float] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def uploads_dir(self) -> str:
        return os.path.join(self.data_dir, "uploads")

    @property
    def converted_dir(self) -> str:
        return os.path.join(self.data_dir, "converted")

    def resolve_ffmpeg(self) -> str:
        return self.ffmpeg_path or shutil.which("ffmpeg") or "ffmpeg"

    def resolve_ffprobe(self) -> str:
        return self.ffprobe_path or shutil.which("ffprobe") or "ffprobe"


settings = Settings()
