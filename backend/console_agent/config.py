"""
Configuration module for the console agent backend.

Loads environment variables and provides application settings.
"""

from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings


# Skills bundled with the package; overridable via SKILLS_ROOT_DIR.
_BUNDLED_SKILLS_DIR = Path(__file__).resolve().parent / "skills"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    cors_origins: str = "http://localhost:5173,http://localhost:3000"
    log_level: str = "INFO"

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_base_url: str = ""

    skills_root_dir: str = str(_BUNDLED_SKILLS_DIR)
    max_skill_bytes: int = 512 * 1024

    default_intent: str = "general-chat"
    max_steps: int = 10
    max_parallel_tools: int = 4
    context_token_limit: int = 64000

    schema_max_columns: int = 50
    max_result_rows: int = 100
    default_time_window_minutes: int = 60
    default_granularity_minutes: int = 5

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string."""
        return [
            origin.strip()
            for origin in self.cors_origins.split(",")
        ]

    class Config:
        """Pydantic settings configuration."""

        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
