from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_SECRET: str = "change-me"
    DB_URL: str = "sqlite:///./cinepos.db"
    JWT_ISS: str = "cinepos"
    JWT_EXP_MIN: int = 12*60
    TZ: str = "Asia/Kolkata"
    LOG_LEVEL: str = "INFO"

    # order lifecycle
    RESERVATION_TTL_MIN: int = 15
    SWEEP_INTERVAL_SEC: int = 30
    SWEEPER_ENABLED: bool = True
    SWEEP_LOCK_TTL_SEC: int = 60
    REQUEST_DEADLINE_SEC: float = 10.0
    GATEWAY_DEADLINE_SEC: float = 15.0
    PRICE_TOLERANCE_PAISE: int = 1
    CURRENCY: str = "INR"
    NOTIFY_POLL_SEC: float = 1.0
    LOW_STOCK_THRESHOLD: int = 5

    # payment gateways
    GATEWAY_CONFIG_TTL_SEC: int = 30
    PHONEPE_API_BASE: str = "https://api.phonepe.com/apis/hermes"
    PAYTM_API_BASE: str = "https://securegw.paytm.in"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
