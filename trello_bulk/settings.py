from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .executor import RetryPolicy


def _int(config: Mapping[str, Any], key: str, default: int, minimum: int) -> int:
    try:
        value = int(config.get(key, default) or default)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


def _float(config: Mapping[str, Any], key: str, default: float, minimum: float) -> float:
    raw = config.get(key, default)
    try:
        value = float(default if raw is None or raw == "" else raw)
    except (TypeError, ValueError):
        value = default
    return max(minimum, value)


@dataclass(frozen=True)
class TrelloSettings:
    api_key: str = ""
    token: str = ""
    request_timeout: float = 20
    retry_max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 5.0
    batch_size: int = 10
    pacing: float = 0.3
    safety_cap: int = 50
    verbose_logging: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> TrelloSettings:
        config = config or {}
        return cls(
            api_key=str(config.get("trello_api_key", "") or ""),
            token=str(config.get("trello_token", "") or ""),
            request_timeout=_float(config, "request_timeout_sec", 20, 1),
            retry_max_attempts=_int(config, "retry_max_attempts", 3, 1),
            retry_base_delay=_float(config, "retry_base_delay_sec", 1.0, 0),
            retry_max_delay=_float(config, "retry_max_delay_sec", 5.0, 0),
            batch_size=_int(config, "bulk_batch_size", 10, 1),
            pacing=_float(config, "bulk_pacing_sec", 0.3, 0),
            safety_cap=_int(config, "bulk_safety_cap", 50, 1),
            verbose_logging=str(config.get("verbose_logging", "")).strip().lower()
            in {"1", "true", "yes", "on"},
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.token)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy.from_settings(
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )
