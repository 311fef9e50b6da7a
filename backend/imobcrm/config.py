from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional


class Settings(BaseSettings):
    database_url: str = "sqlite:///./imobcrm.db"
    secret_key: str = "imobcrm-dev-secret-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 1440  # 24 horas
    sql_echo: bool = False

    # Frontend / CORS
    frontend_url: str = "http://localhost:5173"
    cors_origins: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
        "http://localhost:8080",
    ]

    # Google Calendar OAuth2
    google_calendar_client_id: Optional[str] = None
    google_calendar_client_secret: Optional[str] = None
    google_calendar_redirect_uri: str = "http://localhost:8000/api/google-calendar/callback"
    public_api_url: str = "http://localhost:8000"  # usado no endereço do webhook
    calendar_timezone: str = "America/Sao_Paulo"

    # Fernet para tokens do Google em repouso
    encryption_key: Optional[str] = None

    # CEP lookup
    viacep_base_url: str = "https://viacep.com.br/ws"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignorar campos extras no .env que não estão definidos
    )


settings = Settings()
