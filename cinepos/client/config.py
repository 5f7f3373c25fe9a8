from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    API_BASE: str = "http://localhost:8000"
    TOKEN: str | None = None
    THEATER_ID: str | None = None
    REQUEST_TIMEOUT_SEC: float = 10.0

    # offline queue
    QUEUE_DB_PATH: str = "./cinepos-queue.db"
    RETRY_INITIAL_SEC: float = 2.0
    RETRY_FACTOR: float = 2.0
    RETRY_CAP_SEC: float = 60.0
    RETRY_JITTER: float = 0.10
    CONNECTIVITY_POLL_SEC: float = 5.0

    # silent printing
    PRINT_BRIDGE_HOST: str = "127.0.0.1"
    PRINT_BRIDGE_PORT: int = 17388
    PRINT_CONNECT_TIMEOUT_MS: int = Field(default=500, gt=0, le=500)
    PRINT_INTER_JOB_DELAY_SEC: float = 2.0

    # bridge side: raw TCP (JetDirect) thermal printer; unset means log only
    PRINTER_HOST: str | None = None
    PRINTER_PORT: int = 9100
    PRINTER_WIDTH: int = 42

    model_config = SettingsConfigDict(env_prefix="CINEPOS_CLIENT_", env_file=".env", extra="ignore")
