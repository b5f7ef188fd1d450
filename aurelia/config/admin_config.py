from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "dev"                # "dev" / "staging" / "prod"
    SERVICE_NAME: str = "aurelia"
    ENABLE_ADMIN: bool = True
    ADMIN_SECRET: Optional[str] = None
    DEFAULT_ADMIN_ID: str = "admin"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

admin_config = Settings()
