import os
from dataclasses import dataclass

_DECAY_STRATEGIES = ("night_weighted", "linear")
_LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class Config:
    database_url: str
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_retries: int = 3
    health_port: int = 8081
    log_format: str = "json"
    default_timezone: str = "UTC"
    max_generation_attempts: int = 10
    recovery_decay: str = "night_weighted"

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        recovery_decay = os.environ.get("NEUROLOOP_RECOVERY_DECAY", "night_weighted").strip().lower()
        if recovery_decay not in _DECAY_STRATEGIES:
            raise RuntimeError(
                f"NEUROLOOP_RECOVERY_DECAY must be one of {', '.join(_DECAY_STRATEGIES)}"
            )

        log_format = os.environ.get("NEUROLOOP_LOG_FORMAT", "json").strip().lower()
        if log_format not in _LOG_FORMATS:
            raise RuntimeError(f"NEUROLOOP_LOG_FORMAT must be one of {', '.join(_LOG_FORMATS)}")

        max_attempts = int(os.environ.get("NEUROLOOP_MAX_GENERATION_ATTEMPTS", "10"))
        if max_attempts < 1:
            raise RuntimeError("NEUROLOOP_MAX_GENERATION_ATTEMPTS must be >= 1")

        return cls(
            database_url=database_url,
            poll_interval_seconds=float(os.environ.get("NEUROLOOP_POLL_INTERVAL", "5.0")),
            batch_size=int(os.environ.get("NEUROLOOP_BATCH_SIZE", "10")),
            max_retries=int(os.environ.get("NEUROLOOP_MAX_RETRIES", "3")),
            health_port=int(os.environ.get("NEUROLOOP_HEALTH_PORT", "8081")),
            log_format=log_format,
            default_timezone=os.environ.get("NEUROLOOP_DEFAULT_TIMEZONE", "UTC"),
            max_generation_attempts=max_attempts,
            recovery_decay=recovery_decay,
        )
