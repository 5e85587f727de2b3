from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    # Server API
    API_BASE_URL: str = "http://localhost:3000"
    API_TOKEN: Optional[str] = None  # Sent as "Authorization: Bearer <token>"
    REQUEST_TIMEOUT_SECONDS: float = 10.0
    REPLAY_TIMEOUT_SECONDS: float = 15.0  # Upper bound for a single queued replay
    HEALTHCHECK_PATH: str = "/api/init"

    # Local durable store
    LOCAL_DATABASE_URL: str = "sqlite:///./pos_offline.db"
    DATABASE_ECHO: bool = False

    # Retry policy (no backoff: a transient failure is retried on the next pass)
    NON_RETRYABLE_STATUS_CODES: list[int] = [400, 404, 409, 422]

    # Bounded observability records kept in the metadata table
    SYNC_HISTORY_LIMIT: int = 50
    OPERATION_LOG_LIMIT: int = 50
    FAILED_OPERATIONS_LIMIT: int = 50
    STATUS_ERROR_LIMIT: int = 10
    RESOLUTION_HISTORY_LIMIT: int = 50
    SEARCH_HISTORY_LIMIT: int = 20
    TEMP_ID_MAP_LIMIT: int = 200  # Confirmed temp ids kept once nothing queued refers to them

    # Auto sync
    AUTO_SYNC_ENABLED: bool = True
    INITIAL_SYNC_DELAY_SECONDS: float = 2.0
    RECONNECT_SYNC_DELAY_SECONDS: float = 1.5  # Let the network settle before draining
    PERIODIC_SYNC_INTERVAL_SECONDS: int = 3 * 60 * 60
    CONNECTIVITY_PROBE_INTERVAL_SECONDS: int = 30

    # Local companion API
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",  # POS web UI
        "http://127.0.0.1:3000",
    ]

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        extra = "ignore"  # Allow extra fields in .env file

settings = Settings()
