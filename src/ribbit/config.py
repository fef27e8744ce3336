"""Configuration constants for Ribbit Reserve."""
from __future__ import annotations

import os
import random
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.environ.get("RIBBIT_DATABASE_URL", "sqlite:///ribbit.db")
LOG_PATH: Optional[Path] = Path(os.environ["RIBBIT_LOG_PATH"]) if os.environ.get("RIBBIT_LOG_PATH") else None
SETTLE_MAX_ATTEMPTS = int(os.environ.get("RIBBIT_SETTLE_MAX_ATTEMPTS", "25"))
SETTLE_BACKOFF_SECONDS = float(os.environ.get("RIBBIT_SETTLE_BACKOFF_SECONDS", "0.005"))
SETTLE_MAX_BACKOFF_SECONDS = float(os.environ.get("RIBBIT_SETTLE_MAX_BACKOFF_SECONDS", "0.1"))
CURRENCY_SYMBOL = os.environ.get("RIBBIT_CURRENCY_SYMBOL", "$")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded exponential backoff used for version-checked writes."""

    max_attempts: int = 25
    base_delay: float = 0.005
    max_delay: float = 0.1
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays cannot be negative.")

    @classmethod
    def from_env(cls) -> "RetryPolicy":
        return cls(
            max_attempts=SETTLE_MAX_ATTEMPTS,
            base_delay=SETTLE_BACKOFF_SECONDS,
            max_delay=SETTLE_MAX_BACKOFF_SECONDS,
        )

    def delay(self, attempt: int) -> float:
        """Return the pause before retry number ``attempt`` (1-based)."""

        ceiling = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter:
            return random.uniform(0, ceiling)
        return ceiling


__all__ = [
    "CURRENCY_SYMBOL",
    "DATABASE_URL",
    "LOG_PATH",
    "RetryPolicy",
    "SETTLE_BACKOFF_SECONDS",
    "SETTLE_MAX_ATTEMPTS",
    "SETTLE_MAX_BACKOFF_SECONDS",
]
