"""Retry and operator-confirmation policies.

Both are injected into the reconcilers so tests can run without real
delays and without a terminal.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from rich.prompt import Confirm

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Bounded exponential backoff used for eventual-consistency waits."""

    max_attempts: int = 8
    base_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: Optional[float] = 300.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.multiplier < 1:
            raise ValueError("base_delay must be >= 0 and multiplier >= 1")

    def delays(self) -> Iterator[float]:
        """Yield the delay slept after each failed attempt except the last."""
        for attempt in range(self.max_attempts - 1):
            delay = self.base_delay * (self.multiplier ** attempt)
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            yield delay

    def wait_until(self, predicate: Callable[[], bool], description: str) -> bool:
        """
        Poll predicate until it returns True or attempts run out.

        Returns:
            True if the predicate succeeded, False when the budget is exhausted
        """
        delays = self.delays()
        for attempt in range(1, self.max_attempts + 1):
            if predicate():
                return True
            if attempt == self.max_attempts:
                break
            delay = next(delays)
            logger.info(f"⏳ Waiting for {description} (attempt {attempt}/{self.max_attempts}, retry in {delay:.0f}s)")
            self.sleep(delay)
        logger.warning(f"Gave up waiting for {description} after {self.max_attempts} attempts")
        return False


class ConfirmationPolicy:
    """Decides whether a destructive or surprising action may proceed."""

    def confirm(self, action: str) -> bool:
        raise NotImplementedError


class DenyAll(ConfirmationPolicy):
    """Automated default: never take an action that needs consent."""

    def confirm(self, action: str) -> bool:
        logger.warning(f"Not confirmed (non-interactive run): {action}")
        return False


class AllowAll(ConfirmationPolicy):
    """Consent given up front with --force/--yes."""

    def confirm(self, action: str) -> bool:
        logger.info(f"Confirmed by flag: {action}")
        return True


class InteractiveConfirmation(ConfirmationPolicy):
    """Ask the operator on the terminal."""

    def __init__(self, ask: Callable[[str], bool] = None):
        self._ask = ask or (lambda prompt: Confirm.ask(prompt, default=False))

    def confirm(self, action: str) -> bool:
        return bool(self._ask(f"{action}?"))
