from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import PostgresDsn, Field, field_validator, AnyHttpUrl
from typing import Optional, Any, List


class Settings(BaseSettings):
    # --- Project Settings ---
    PROJECT_NAME: str = "Teelite Storefront"
    API_V1_STR: str = "/api/v1"
    API_PORT: str = "8000"
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    LOG_LEVEL: str = "INFO"

    # --- Security Settings ---
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    REFRESH_TOKEN_SECRET_KEY: str
    REFRESH_TOKEN_ALGORITHM: str = "HS256"
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7

    # --- Database Settings ---
    POSTGRES_USER: str = "teelite"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "teelite"
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: str = "5432"
    DATABASE_URL: Optional[str] = Field(None, validate_default=True)

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str], info) -> Any:
        if isinstance(v, str):
            return v

        return str(PostgresDsn.build(
            scheme="postgresql",
            username=info.data.get("POSTGRES_USER"),
            password=info.data.get("POSTGRES_PASSWORD") or None,
            host=info.data.get("POSTGRES_HOST"),
            port=int(info.data.get("POSTGRES_PORT", 5432)),
            path=info.data.get("POSTGRES_DB") or "",
        ))

    # --- Maintenance Gate Settings ---
    # seconds before a settings fetch gives up and the gate fails open
    MAINTENANCE_FETCH_TIMEOUT: float = 5.0
    # interval of the job that picks up changes made by other processes
    MAINTENANCE_POLL_SECONDS: int = 30
    # Retry-After sent with the notice when the window has no end
    MAINTENANCE_RETRY_AFTER: int = 3600

    # --- CORS Settings ---
    BACKEND_CORS_ORIGINS: List[AnyHttpUrl] = []
    ALLOWED_HOSTS: List[str] = ["localhost", "localhost:8000", "127.0.0.1", "testserver"]

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env")


settings = Settings()
