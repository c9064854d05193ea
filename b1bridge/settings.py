import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


class Settings(BaseModel):
    # Service Layer Configuration
    sl_endpoint: str = Field(default="https://localhost:50000/", alias="SL_ENDPOINT")
    sl_timeout: float = Field(default=10.0, alias="SL_TIMEOUT")
    sl_retries: int = Field(default=3, alias="SL_RETRIES")
    sl_verify_ssl: bool = Field(default=True, alias="SL_VERIFY_SSL")
    sl_session_cookie: str = Field(default="B1SESSION", alias="SL_SESSION_COOKIE")

    # Session Configuration
    session_timeout_minutes: int = Field(default=30, alias="SESSION_TIMEOUT_MINUTES")
    session_sweep_minutes: int = Field(default=5, alias="SESSION_SWEEP_MINUTES")

    # Redis Configuration
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    redis_key_prefix: str = Field(default="b1bridge:", alias="REDIS_KEY_PREFIX")

    # BCCR Indicator Service Configuration
    bccr_url: str = Field(
        default=(
            "https://gee.bccr.fi.cr/Indicadores/Suscripciones/WS/"
            "wsindicadoreseconomicos.asmx/ObtenerIndicadoresEconomicosXML"
        ),
        alias="BCCR_URL",
    )
    bccr_email: str = Field(default="", alias="BCCR_EMAIL")
    bccr_token: str = Field(default="", alias="BCCR_TOKEN")
    bccr_name: str = Field(default="b1bridge", alias="BCCR_NAME")
    bccr_timeout: float = Field(default=15.0, alias="BCCR_TIMEOUT")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    model_config = {"populate_by_name": True}

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (and .env)."""
        return cls.model_validate(dict(os.environ))
