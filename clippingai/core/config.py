from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # core
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # llm
    OPENROUTER_API_KEY: str | None = None
    OPENAI_API_KEY: str | None = None
    # Sent as HTTP-Referer when routing through OpenRouter
    FRONTEND_ORIGIN: str | None = None
    LLM_MODEL: str = "anthropic/claude-sonnet-4.5"
    # Hard cap on concurrent LLM calls per process
    LLM_MAX_CONCURRENCY: int = 4
    LLM_TIMEOUT_SECONDS: float = 120.0
    LLM_PRICEBOOK_JSON: str | None = None

    # search
    SEARCH_PROVIDER: str = "tavily"
    TAVILY_API_KEY: str | None = None
    TAVILY_BASE_URL: str = "https://api.tavily.com"
    SEARCH_TIMEOUT_SECONDS: float = 30.0
    SEARCH_MAX_RESULTS: int = 5
    # Forums and video hosts rarely carry citable reporting
    SEARCH_EXCLUDE_DOMAINS: list[str] = ["reddit.com", "youtube.com", "quora.com"]
    WEB_SEARCH_PER_CALL_USD: float = 0.008

    # cache (optional)
    REDIS_URL: str | None = None
    SEARCH_CACHE_TTL_SECONDS: int = 60 * 60 * 6

    # images
    IMAGES_ENABLED: bool = False
    IMAGE_MODEL: str = "gpt-image-1"
    IMAGE_SIZE: str = "1536x1024"
    IMAGE_QUALITY: str = "medium"
    IMAGE_TIMEOUT_SECONDS: float = 180.0
    IMAGE_UPLOAD_DIR: str = "public/uploads"
    IMAGE_PUBLIC_PREFIX: str = "/uploads"

    # pipeline
    DEEP_RESEARCH_ENABLED: bool = True
    MAX_RESEARCH_ITERATIONS: int = 3
    RESEARCH_CONFIDENCE_THRESHOLD: int = 90
    TARGET_ARTICLE_COUNT: int = 5
    # Whole-run ceiling; None disables it
    PIPELINE_DEADLINE_SECONDS: float | None = 900.0

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    return Settings()
