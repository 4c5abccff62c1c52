from pydantic_settings import BaseSettings
from typing import List, Optional
from pydantic import field_validator
import json

class Settings(BaseSettings):
    # Application
    app_name: str = "Novel Enchant"
    app_version: str = "0.1.0"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./data/novel_enchant.db"

    # Text generation (scene extraction, character identification)
    llm_enabled: bool = False  # Heuristic segmentation when disabled
    llm_api_type: str = "openai-compatible"
    llm_base_url: str = "http://localhost:1234/v1"
    llm_api_key: str = "not-needed-for-local"
    llm_model: str = "local-model"
    llm_max_tokens: Optional[int] = 2048
    llm_temperature: float = 0.3
    llm_timeout_total: float = 240

    # Image generation
    image_provider: str = "stub"  # "stub" or "runpod"
    image_server_url: str = "https://api.runpod.ai/v2/your-endpoint-id"
    image_api_key: Optional[str] = None
    image_timeout: int = 300
    image_poll_interval: float = 2.0
    image_max_wait: float = 300.0
    image_width: int = 1024
    image_height: int = 768
    image_default_style: str = "cinematic"

    # Enhancement pipeline
    enhancement_min_chapter_chars: int = 50  # Shorter chapters are skipped
    enhancement_min_scenes: int = 2
    enhancement_max_scenes: int = 8
    enhancement_words_per_scene: int = 750  # Middle of the 500-1000 words band
    enhancement_poll_interval: float = 2.0  # Seconds between status checks
    enhancement_max_polls: int = 150  # Retry ceiling before a job is reported as timed out
    enhancement_run_max_age: float = 3600.0  # Finished runs are dropped from the tracker after this

    # CORS
    cors_origins: str = "*"

    @field_validator('cors_origins', mode='after')
    @classmethod
    def parse_cors_origins(cls, v):
        """Parse CORS_ORIGINS from environment variable"""
        if isinstance(v, str):
            if v == "*":
                return ["*"]
            try:
                # Try to parse as JSON array
                return json.loads(v)
            except (json.JSONDecodeError, ValueError):
                # If not JSON, treat as comma-separated string
                return [origin.strip() for origin in v.split(',')]
        return v

    # File storage
    data_dir: str = "./data"
    storage_root: str = "./data/storage"
    storage_base_url: str = "/media"

    # Logging
    log_level: str = "INFO"
    log_file: str = "./logs/novel_enchant.log"

    class Config:
        env_file = "../.env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env that aren't in the model

# Create global settings instance
settings = Settings()
