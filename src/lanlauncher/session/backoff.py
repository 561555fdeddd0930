"""Reconnect delay policy for the session channel."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ReconnectDelay:
    seconds: float
    attempt: int
    cooldown: bool = False


class ReconnectBackoff:
    """Exponential backoff that never gives up.

    Each scheduled retry bumps the attempt counter and waits
    ``min(base * 2**attempt, cap)``.  Once ``max_attempts`` retries have been
    used up, the next delay is a fixed cooldown and the counter starts over,
    so the sequence with the defaults is 2, 4, 8, 16, 30, ... 30, 60, 2, 4 ...
    """

    def __init__(
        self,
        base: float = 1.0,
        cap: float = 30.0,
        max_attempts: int = 10,
        cooldown: float = 60.0,
    ):
        self.base = base
        self.cap = cap
        self.max_attempts = max_attempts
        self.cooldown = cooldown
        self.attempts = 0

    def next_delay(self) -> ReconnectDelay:
        if self.attempts >= self.max_attempts:
            self.attempts = 0
            return ReconnectDelay(self.cooldown, attempt=0, cooldown=True)
        self.attempts += 1
        return ReconnectDelay(min(self.base * 2 ** self.attempts, self.cap), attempt=self.attempts)

    def reset(self) -> None:
        self.attempts = 0
