# backend/config.py
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    """Runtime settings, read from the environment (and .env) by field name."""

    port: int = 8000
    log_level: str = "INFO"

    # Session lifecycle
    session_ttl_sec: int = 2 * 60 * 60
    sweep_interval_sec: int = 15 * 60
    # Defaults to session_ttl_sec when unset.
    feedback_grace_sec: Optional[int] = None

    # LLM layer (GOOGLE_API_KEY is read by langchain-google-genai)
    gemini_model: str = "gemini-2.0-flash"
    llm_temperature: float = 0.4
    oracle_timeout_sec: float = 10.0
    llm_max_retries: int = 1

    # Data
    cases_dir: Optional[str] = None
    matching_tables_path: Optional[str] = None

    model_config = SettingsConfigDict(env_ignore_empty=True, extra="ignore")

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _default_grace(self) -> "Settings":
        if self.feedback_grace_sec is None:
            self.feedback_grace_sec = self.session_ttl_sec
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
