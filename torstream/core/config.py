from pydantic_settings import BaseSettings
from typing import List, Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "TorStream Resolver"
    VERSION: str = "1.0.0"

    # TorBox job-queue API, tried in order
    TORBOX_API_BASES: List[str] = ["https://api.torbox.app/v1", "https://api.torbox.app"]
    TORBOX_API_KEY: Optional[str] = None  # Fallback when the client sends none
    HTTP_TIMEOUT: float = 20.0

    # Polling (seconds)
    POLL_INTERVAL: float = 2.0
    CREATE_FAILED_POLL_INTERVAL: float = 3.0
    MAX_WAIT: float = 600.0
    CACHED_MAX_WAIT: float = 30.0
    MIN_WAIT: float = 5.0
    JOB_LIST_LIMIT: int = 1000

    # Subtitles
    SUBTITLE_TIMEOUT: float = 1.2
    SUBTITLE_LIMIT: int = 1

    # Instant availability probe
    AVAILABILITY_TIMEOUT: float = 1.5
    AVAILABILITY_CACHE_TTL: float = 30.0

    # Local caches (seconds)
    RESOLVE_CACHE_TTL: float = 20 * 60
    SELECTION_TTL: float = 90 * 60
    JOB_LIST_CACHE_TTL: float = 15.0

    class Config:
        env_file = ".env"

settings = Settings()
