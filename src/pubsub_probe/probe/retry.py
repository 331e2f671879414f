"""
Retry Policy with capped exponential backoff and jitter.

Used around the handshake (connect + subscribe) and around reads, so a
multi-day run survives transient broker trouble instead of crashing on it.
"""
import random
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pubsub_probe.errors import ConfigError

JITTER_FRACTION = 0.1


@dataclass
class RetryPolicy:
    """
    Attributes:
        max_attempts: Attempts before the phase is considered failed (>= 1)
        base_delay: Delay in seconds before the first retry
        max_delay: Upper bound for the exponential part of the delay
        jitter: Add up to 10% random jitter on top of the delay
        rng: Randomness source for the jitter; seed it in tests
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigError("max_attempts", f"must be at least 1, got {self.max_attempts}")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigError("base_delay", "delays must not be negative")

    def delay(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (0 = first retry):
        min(base_delay * 2**attempt, max_delay) plus optional jitter.
        """
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += self.rng.uniform(0, delay * JITTER_FRACTION)
        return float(delay)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    @classmethod
    def from_config(cls, conf: Optional[Dict[str, Any]], defaults: "RetryPolicy",
                    rng: Optional[random.Random] = None) -> "RetryPolicy":
        """Builds a policy from a `retry.<phase>` config section, falling back to `defaults`."""
        conf = conf or {}
        try:
            return cls(
                max_attempts=int(conf.get('max_attempts', defaults.max_attempts)),
                base_delay=float(conf.get('base_delay', defaults.base_delay)),
                max_delay=float(conf.get('max_delay', defaults.max_delay)),
                jitter=bool(conf.get('jitter', defaults.jitter)),
                rng=rng or random.Random(),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError("retry", str(e)) from e


def default_handshake_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=60.0)


def default_read_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=30.0)
