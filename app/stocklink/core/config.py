from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    APP_NAME: str = "STOCKLINK"
    DATABASE_URL: str = "sqlite+pysqlite:///./stocklink.db"
    LOG_LEVEL: str = "INFO"
    TRANSFER_EXPIRATION_HOURS: int = 24
    TRANSFER_APPROVER: str = "destination"
    TRANSFER_NUMBER_PREFIX: str = "TRF"
    TRANSFER_SWEEP_BATCH_SIZE: int = 200
    TRANSFER_LIST_MAX_PAGE_SIZE: int = 200
    METRICS_ENABLED: bool = True
    OPS_ENABLE_INTEGRITY_SCAN: bool = True
    OPS_ENABLE_EXPIRY_SWEEP: bool = True


settings = Settings()
