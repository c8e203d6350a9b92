"""
Shared — service configuration

Every service reads its settings from environment variables once, at
startup, and hands the resulting Settings object to its composition root
(main.py lifespan). Nothing else reads os.environ.
"""

import os
import socket
from collections.abc import Mapping

from pydantic import BaseModel, Field


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    value = env.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {key} must be a valid integer") from None


class Settings(BaseModel):
    service_name: str
    database_url: str
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"

    # Outbox processor
    outbox_interval_ms: int = 5000
    outbox_max_retries: int = 3
    outbox_batch_size: int = 100

    # Event dispatcher
    dispatcher_max_retries: int = 3
    consumer_name: str = Field(default_factory=socket.gethostname)
    pending_claim_idle_ms: int = 60000

    # Outbound calls to peer services
    max_retries: int = 3
    retry_delay_ms: int = 1000
    retry_max_delay_ms: int = 30000
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_ms: int = 30000
    cart_service_url: str = "http://localhost:3003"

    @classmethod
    def from_env(
        cls, service_name: str, env: Mapping[str, str] | None = None
    ) -> "Settings":
        env = os.environ if env is None else env
        if not env.get("DATABASE_URL"):
            raise ValueError("Environment variable DATABASE_URL is required")
        return cls(
            service_name=env.get("SERVICE_NAME", service_name),
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            log_level=env.get("LOG_LEVEL", "INFO"),
            outbox_interval_ms=_env_int(env, "OUTBOX_PROCESSOR_INTERVAL_MS", 5000),
            outbox_max_retries=_env_int(env, "OUTBOX_MAX_RETRIES", 3),
            outbox_batch_size=_env_int(env, "OUTBOX_BATCH_SIZE", 100),
            dispatcher_max_retries=_env_int(env, "DISPATCHER_MAX_RETRIES", 3),
            consumer_name=env.get("CONSUMER_NAME") or socket.gethostname(),
            pending_claim_idle_ms=_env_int(env, "PENDING_CLAIM_IDLE_MS", 60000),
            max_retries=_env_int(env, "MAX_RETRIES", 3),
            retry_delay_ms=_env_int(env, "RETRY_DELAY_MS", 1000),
            retry_max_delay_ms=_env_int(env, "RETRY_MAX_DELAY_MS", 30000),
            circuit_failure_threshold=_env_int(env, "CIRCUIT_FAILURE_THRESHOLD", 5),
            circuit_reset_timeout_ms=_env_int(env, "CIRCUIT_RESET_TIMEOUT_MS", 30000),
            cart_service_url=env.get("CART_SERVICE_URL", "http://localhost:3003"),
        )

    @property
    def queue_name(self) -> str:
        """Consumer group / queue this service reads its inbound events from."""
        return f"{self.service_name}.queue"
