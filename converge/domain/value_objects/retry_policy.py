from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for transient control-plane failures.
    """
    max_attempts: int = 4
    initial_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.initial_delay < 0 or self.max_delay < 0:
            raise ValueError("Retry delays cannot be negative")
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")

    def delays(self) -> list[float]:
        """Sleep before each retry (len = max_attempts - 1)."""
        sleeps: list[float] = []
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            sleeps.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return sleeps
