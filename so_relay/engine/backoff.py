"""Exponential backoff with full jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass, field

from ..config import RelayConfig


@dataclass(slots=True)
class BackoffPolicy:
    """Delay schedule for repeated failures.

    ``ceiling(n)`` is the upper bound after ``n`` consecutive failures; it
    doubles from ``base`` and never exceeds ``cap``. ``delay(n)`` draws the
    actual wait uniformly from ``[0, ceiling(n)]``.
    """

    base: float = 1.0
    cap: float = 60.0
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def __post_init__(self) -> None:
        if self.base <= 0:
            raise ValueError("base must be > 0")
        if self.cap < self.base:
            raise ValueError("cap must be >= base")

    @classmethod
    def from_config(cls, config: RelayConfig, rng: random.Random | None = None) -> "BackoffPolicy":
        return cls(
            base=config.backoff_base_ms / 1000.0,
            cap=config.backoff_cap_ms / 1000.0,
            rng=rng or random.Random(),
        )

    def ceiling(self, failures: int) -> float:
        if failures <= 0:
            return 0.0
        # 2**64 is already far past any sane cap
        exponent = min(failures - 1, 64)
        return min(self.cap, self.base * (2 ** exponent))

    def delay(self, failures: int) -> float:
        return self.rng.uniform(0.0, self.ceiling(failures))


__all__ = ["BackoffPolicy"]
