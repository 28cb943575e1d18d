import json
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load env values for components that read os.environ directly (e.g., provider SDKs).
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)
load_dotenv(_project_root / ".env.local", override=True)


def _coerce_json(value: str):
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    # Relational backend. When unset or unreachable at startup the file store is used.
    DATABASE_URL: Optional[str] = None
    DB_POOL_PRE_PING: bool = True
    DB_CONNECT_TIMEOUT_SECONDS: int = 5

    # Version-controlled file store (GitHub contents API).
    FILESTORE_API_BASE_URL: str = "https://api.github.com"
    GITHUB_TOKEN: Optional[str] = None
    GITHUB_OWNER: Optional[str] = None
    GITHUB_REPO: Optional[str] = None
    GITHUB_BRANCH: Optional[str] = None
    FILESTORE_DATA_DIR: str = "data"
    FILESTORE_TIMEOUT_SECONDS: float = 20.0
    FILESTORE_WRITE_ATTEMPTS: int = 3

    BACKEND_CORS_ORIGINS: list[str] = ["http://localhost:5173", "http://127.0.0.1:5173"]
    PUBLIC_BASE_URL: str = ""

    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None
    GEMINI_API_KEY: Optional[str] = None

    LLM_DEFAULT_MODEL: str = "claude-sonnet-4-5-20250929"
    LLM_FAST_MODEL: str = "claude-haiku-4-5-20251001"
    LLM_RESEARCH_MODEL: str = "gpt-4.1"
    LLM_REQUEST_TIMEOUT_SECONDS: float = 90.0
    LLM_MAX_OUTPUT_TOKENS: int = 8192

    RESEARCH_TIMEOUT_SECONDS: float = 30.0
    IMAGE_MODEL: str = "gemini-2.5-flash-image"
    IMAGE_TIMEOUT_SECONDS: float = 60.0
    DESIGN_GENERATE_HERO_IMAGE: bool = False
    PIPELINE_TIMEOUT_SECONDS: float = 600.0

    PATCH_MODEL: Optional[str] = None
    PATCH_MAX_CONTEXT_CHARS: int = 80000
    PATCH_MAX_OUTPUT_TOKENS: int = 8192

    # Rough blended price used for the status endpoint's cost estimate.
    TOKEN_COST_PER_MILLION_USD: float = 9.0

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("DATABASE_URL", "GITHUB_TOKEN", "GITHUB_OWNER", "GITHUB_REPO", mode="before")
    @classmethod
    def blank_to_none(cls, value: Optional[str]) -> Optional[str]:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def filestore_configured(self) -> bool:
        return bool(self.GITHUB_TOKEN and self.GITHUB_OWNER and self.GITHUB_REPO)

    model_config = SettingsConfigDict(env_file=".env", env_json_loads=_coerce_json, extra="ignore")


settings = Settings()
