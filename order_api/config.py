from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379/0"
    store_backend: Literal["redis", "memory"] = "redis"
    redis_key_prefix: str = "orders"

    # Order lifecycle: one status step per interval until terminal_status
    advance_interval_seconds: float = 60.0
    terminal_status: int = 6
    advance_max_retries: int = 3  # store failures retried inside a single tick before giving up
    advance_retry_base_seconds: float = 1.0  # backoff = base * 2**(attempt - 1), first retry waits base
    shutdown_wait_seconds: float = 5.0  # grace period for in-flight ticks on shutdown

    api_prefix: str = "/v1/orders"
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
