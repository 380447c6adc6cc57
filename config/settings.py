from __future__ import annotations

from pydantic_settings import BaseSettings


def split_csv(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./keyword_pulse.db"

    # Server
    API_PORT: int = 8001
    LOG_LEVEL: str = "INFO"

    # Feed source
    FEED_BASE_URL: str = "https://www.reddit.com"
    FEED_USER_AGENT: str = "KeywordPulse-RSS-Analyzer/1.0.0"
    FEED_REQUEST_TIMEOUT: float = 8.0
    FEED_REQUEST_DELAY: float = 1.0
    FEED_MAX_RETRIES: int = 2
    FEED_RETRY_BACKOFF: float = 1.0
    FEED_COMMENT_POSTS_PER_CHANNEL: int = 2
    DEFAULT_CHANNELS: str = "news,worldnews"
    # keyword substring -> comma separated channels
    TOPIC_CHANNELS: dict[str, str] = {
        "climate change": "environment,climatechange",
        "politics": "politics,worldnews",
        "technology": "technology,artificial",
        "health": "health,medicine",
        "economy": "economics,finance",
        "education": "education,college",
    }

    # Classifier
    GEMINI_API_KEY: str = ""
    GEMINI_MODEL: str = "gemini-2.5-flash"
    CLASSIFIER_TIMEOUT: float = 8.0
    CLASSIFIER_CONCURRENCY: int = 2
    CLASSIFIER_MAX_ITEMS_PER_CYCLE: int = 40
    CLASSIFIER_QUOTA_COOLDOWN_MINUTES: int = 15

    # Scheduler
    SCHEDULER_AUTOSTART: bool = False
    SCHEDULER_SWEEP_MINUTES: int = 30
    SCHEDULER_BATCH_SIZE: int = 5
    SCHEDULER_WORKERS: int = 2
    SCHEDULER_MAX_POSTS: int = 10
    SCHEDULER_MAX_COMMENTS_PER_POST: int = 5
    FAILURE_RETRY_HOURS: int = 1
    STALE_PROCESSING_MINUTES: int = 60
    FETCH_FRESHNESS_MINUTES: int = 30
    CYCLE_FETCH_TIMEOUT: float = 120.0

    # Ad-hoc fetch defaults
    FETCH_DEFAULT_MAX_POSTS: int = 20
    FETCH_DEFAULT_MAX_COMMENTS: int = 10

    # Trending
    TREND_WINDOW_HOURS: int = 24
    TREND_TOP_N: int = 10
    TREND_MIN_RECENT: int = 2
    TREND_MIN_VOLUME: int = 10

    # Auth
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    AUTH_COOKIE_NAME: str = "pulse-auth"
    MANAGER_ROLES: str = "ngo,policymaker"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
