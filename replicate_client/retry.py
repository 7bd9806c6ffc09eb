import math
import random
import time
from typing import Callable, Iterator, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ConstantBackoff(BaseModel):
    """Wait `duration` seconds between polls, plus up to ±jitter/2 seconds"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["constant"] = "constant"
    duration: float = Field(default=2.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class ExponentialBackoff(BaseModel):
    """Wait `base * multiplier**attempt` seconds between polls, plus up to ±jitter/2 seconds"""

    model_config = ConfigDict(frozen=True)

    kind: Literal["exponential"] = "exponential"
    base: float = Field(default=2.0, ge=0)
    multiplier: float = Field(default=2.0, ge=0)
    jitter: float = Field(default=0.5, ge=0)


BackoffStrategy = Union[ConstantBackoff, ExponentialBackoff]


class RetryPolicy(BaseModel):
    """
    How often and for how long a job is polled.

    All optional bounds must be strictly positive when given; an invalid
    policy fails at construction with a `pydantic.ValidationError`.
    """

    model_config = ConfigDict(frozen=True)

    strategy: BackoffStrategy = Field(default_factory=ExponentialBackoff, discriminator="kind")
    timeout: Optional[float] = Field(default=None, gt=0)
    maximum_interval: Optional[float] = Field(default=None, gt=0)
    maximum_retries: Optional[int] = Field(default=None, gt=0)

    @classmethod
    def default(cls) -> "RetryPolicy":
        return cls(
            strategy=ExponentialBackoff(),
            timeout=300.0,
            maximum_interval=30.0,
            maximum_retries=10,
        )

    def retrier(
        self,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Retrier":
        return Retrier(self, rng=rng, clock=clock)

    def delays(self) -> Iterator[float]:
        """Iterate the delays of a fresh retrier"""
        return iter(self.retrier())


class Retrier:
    """
    A single-use delay generator bound to one polling session.

    The deadline is fixed when the retrier is created. `next_delay` returns
    `None` once the attempt cap is reached or the deadline has passed.
    """

    def __init__(
        self,
        policy: RetryPolicy,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy
        self.retries = 0
        self._random = rng or random.Random()
        self._clock = clock
        self.deadline: Optional[float] = (
            clock() + policy.timeout if policy.timeout is not None else None
        )

    @property
    def exhausted(self) -> bool:
        if self.policy.maximum_retries is not None and self.retries >= self.policy.maximum_retries:
            return True
        return self.deadline is not None and self._clock() >= self.deadline

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, or None when there is no deadline"""
        if self.deadline is None:
            return None
        return max(self.deadline - self._clock(), 0.0)

    def next_delay(self) -> Optional[float]:
        if self.exhausted:
            return None

        strategy = self.policy.strategy
        if isinstance(strategy, ConstantBackoff):
            delay = strategy.duration + self._jitter(strategy.jitter)
        else:
            delay = _exponential(strategy.base, strategy.multiplier, self.retries) + self._jitter(
                strategy.jitter
            )
        self.retries += 1

        delay = max(delay, 0.0)
        if self.policy.maximum_interval is not None:
            delay = min(delay, self.policy.maximum_interval)
        return delay

    def _jitter(self, amount: float) -> float:
        if amount == 0:
            return 0.0
        return self._random.uniform(-amount / 2, amount / 2)

    def __iter__(self) -> Iterator[float]:
        while True:
            delay = self.next_delay()
            if delay is None:
                return
            yield delay


def _exponential(base: float, multiplier: float, retries: int) -> float:
    """`base * multiplier**retries`, saturating at infinity instead of overflowing"""
    if base == 0:
        return 0.0
    try:
        return base * multiplier**retries
    except OverflowError:
        return math.inf
