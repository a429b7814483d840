import random
from dataclasses import dataclass


@dataclass
class RetryPolicy:
    """Exponential backoff between retry attempts.

    ``get_delay(attempt)`` is ``base * 2 ** attempt`` capped at
    ``max_delay_seconds``, where ``attempt`` is the number of attempts made
    before the failure being scheduled (0 for the first failure).
    """
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt number."""
        # Large exponents only matter until they hit the cap.
        safe_attempt = min(max(attempt, 0), 32)
        delay = min(
            self.base_delay_seconds * (self.exponential_base ** safe_attempt),
            self.max_delay_seconds
        )
        if self.jitter:
            # Spread retries within 10% below the computed delay; keeps the cap.
            delay -= random.uniform(0, delay * 0.1)
        return delay
