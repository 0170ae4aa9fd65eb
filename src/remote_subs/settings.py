from pydantic_settings import BaseSettings
from typing import Optional, List


class Settings(BaseSettings):
    """Remote Subtitles addon settings.

    All settings can be overridden via environment variables or .env file.
    Environment variables use uppercase names (e.g., PUBLIC_URL=https://subs.example.org).

    Time budgets (seconds):
        metadata_timeout_seconds         Cinemeta lookup, result treated as missing on expiry
        traversal_timeout_seconds        remote directory walk, partial listing kept on expiry
        subtitles_total_timeout_seconds  whole subtitles request, empty answer on expiry
    """
    port: int = 7777
    public_url: str = "http://127.0.0.1:7777"

    addon_version: str = "1.3.3"
    addon_id_prefix: str = "org.example.remote-subs"
    addon_name: str = "Remote Subtitles"
    addon_description: str = "Matches subtitles from your own FTP server or Google Drive folder"

    data_dir: str = "data"

    cache_ttl_seconds: float = 60.0
    traversal_timeout_seconds: float = 3.5
    metadata_timeout_seconds: float = 1.5
    subtitles_total_timeout_seconds: float = 2.5
    connection_test_timeout_seconds: float = 3.0
    download_timeout_seconds: float = 20.0

    max_depth: int = 2
    max_results: int = 12
    subtitle_extensions: List[str] = ['.srt', '.vtt', '.ass', '.ssa', '.sub']

    cinemeta_url: str = 'https://v3-cinemeta.strem.io'

    # Google Drive OAuth app; Drive tenants cannot connect without it
    google_client_id: Optional[str] = None
    google_client_secret: Optional[str] = None

    log_level: str = "INFO"
    json_logs: bool = False
    log_file: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def base_url(self) -> str:
        return self.public_url.rstrip("/")


settings = Settings()
