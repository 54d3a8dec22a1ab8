"""Client configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

from converge.duration import parse_duration
from converge.types import Duration


@dataclass(frozen=True, slots=True)
class ClientConfig:
    """Defaults shared by every query and mutation of a client.

    Durations accept ``"30s"``-style strings or integer milliseconds and are
    validated on construction.
    """

    stale_time: Duration = 0
    gc_time: Duration = "5m"
    retry_attempts: int = 3
    retry_base_delay: Duration = "250ms"
    retry_max_delay: Duration | None = "30s"
    mutation_queue_timeout: Duration | None = "30s"
    request_timeout: Duration = "10s"
    base_url: str = ""
    headers: dict[str, str] = field(default_factory=lambda: {"Accept": "application/json"})

    def __post_init__(self) -> None:
        for name in ("stale_time", "gc_time", "retry_base_delay", "request_timeout"):
            parse_duration(getattr(self, name))
        for name in ("retry_max_delay", "mutation_queue_timeout"):
            value = getattr(self, name)
            if value is not None:
                parse_duration(value)
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        # Normalized once so request paths can always start with "/"
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))
