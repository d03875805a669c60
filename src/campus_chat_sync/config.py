"""Runtime configuration read from the environment."""

import logging
import os

import structlog
from pydantic import BaseModel

ENV_PREFIX = "CAMPUS_CHAT_"


class Settings(BaseModel):
    """Sync engine settings.

    Every field can be overridden with an environment variable named after
    it, e.g. ``CAMPUS_CHAT_REQUEST_TIMEOUT=5``.
    """

    request_timeout: float = 15.0  # seconds per collaborator call
    notification_limit: int = 50
    max_notices: int = 20
    local_notifications: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw
        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    """Route structlog output through a level filter."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
    )
