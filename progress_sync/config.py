import socket
from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Primary library server
    PRIMARY_BASE_URL: Optional[str] = None
    PRIMARY_TOKEN: Optional[str] = None
    PRIMARY_USERNAME: Optional[str] = None
    PRIMARY_PASSWORD: Optional[str] = None

    # Secondary cloud store
    SECONDARY_SYNC_ENABLED: bool = False
    SECONDARY_BASE_URL: Optional[str] = None
    SECONDARY_TOKEN: Optional[str] = None
    SECONDARY_PAGE_SIZE: int = 200
    DEVICE_NAME: str = socket.gethostname() or "unknown"

    # Persistence
    QUEUE_PATH: str = "data/offline_progress_queue.json"
    HISTORY_PATH: str = "data/sync_history.json"
    PERSIST_ENABLED: bool = True
    HISTORY_MAX_ENTRIES_PER_BOOK: int = 200

    # Sync Logic
    LOCAL_ONLY_BOOK_IDS: List[str] = []
    DISCARD_REJECTED_UPDATES: bool = True
    REQUEST_TIMEOUT_SECONDS: float = 10
    CONNECTION_CHECK_INTERVAL_SECONDS: int = 60
    QUEUE_RETRY_INTERVAL_SECONDS: int = 120
    LIBRARY_REFRESH_INTERVAL_SECONDS: int = 900

    # System
    LOG_LEVEL: str = "INFO"
    HTTP_SERVER_ENABLED: bool = False
    HTTP_SERVER_PORT: int = 8080
    HTTP_SERVER_TOKEN: Optional[str] = None

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"
    )

settings = Settings()
