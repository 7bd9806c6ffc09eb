"""
Client settings.

Values are read from `REPLICATE_*` environment variables (or a `.env` file)
when they are not passed to the client explicitly.
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_BASE_URL = "https://api.replicate.com/v1/"


class ClientSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="REPLICATE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_token: str = ""
    base_url: str = DEFAULT_BASE_URL
    user_agent: Optional[str] = None
