from __future__ import annotations


class Backoff:
    """Reconnect delay schedule.

    The Nth consecutive failure waits min(base * factor ** (N - 1), maximum).
    """

    def __init__(self, base_s: float, factor: float, maximum_s: float) -> None:
        if base_s <= 0:
            raise ValueError("base_s must be > 0")
        if factor < 1.0:
            raise ValueError("factor must be >= 1")
        self.base_s = float(base_s)
        self.factor = float(factor)
        self.maximum_s = max(float(maximum_s), self.base_s)
        self.failures = 0

    def next_delay(self) -> float:
        # Exponent is clamped so long outages cannot overflow the float.
        delay = min(self.base_s * (self.factor ** min(self.failures, 64)), self.maximum_s)
        self.failures += 1
        return delay

    def reset(self) -> None:
        self.failures = 0
