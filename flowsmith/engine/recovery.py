"""Recovery policy applied when a step fails."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Callable, Dict, Optional, Tuple

from ..config import RetryConfig
from ..constants import DEFAULT_MAX_RETRIES
from ..utils.retry import compute_backoff

logger = logging.getLogger(__name__)


class RecoveryAction(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    PAUSE = "pause"
    FAIL = "fail"


@dataclass(frozen=True)
class RecoveryDecision:
    action: RecoveryAction
    attempt: int
    delay_ms: int = 0


@dataclass
class RetryPolicy:
    """Deployment-wide retry settings.

    ``backoff`` maps the attempt number that just failed (1-based) to the
    delay before the next attempt, in milliseconds.
    """

    max_retries: int = DEFAULT_MAX_RETRIES
    backoff: Callable[[int], int] = field(default=compute_backoff)
    pause_on_error: bool = False

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            backoff=partial(
                compute_backoff,
                base_ms=config.backoff_base_ms,
                factor=config.backoff_factor,
                jitter_ms=config.backoff_jitter_ms,
                max_ms=config.max_backoff_ms,
            ),
            pause_on_error=config.pause_on_error,
        )

    @classmethod
    def immediate(cls, max_retries: int = DEFAULT_MAX_RETRIES, pause_on_error: bool = False) -> "RetryPolicy":
        """Policy without backoff delays."""
        return cls(max_retries=max_retries, backoff=lambda _: 0, pause_on_error=pause_on_error)


AttemptKey = Tuple[str, int, Optional[int]]


class RecoveryTracker:
    """In-memory attempt counters for one execution loop.

    Counters are keyed by ``(instance_id, step_index, iteration)`` so each
    cycle iteration gets its own budget. They are not persisted: a resumed
    instance starts every step with a fresh budget.
    """

    def __init__(self, policy: RetryPolicy) -> None:
        self.policy = policy
        self._attempts: Dict[AttemptKey, int] = {}

    def attempts(self, key: AttemptKey) -> int:
        return self._attempts.get(key, 0)

    def on_agent_failure(self, key: AttemptKey) -> RecoveryDecision:
        attempt = self._attempts.get(key, 0) + 1
        self._attempts[key] = attempt
        if attempt <= self.policy.max_retries:
            delay = max(int(self.policy.backoff(attempt)), 0)
            logger.info(
                f"Attempt {attempt} of step {key[1]} failed for {key[0]}; "
                f"retrying in {delay}ms"
            )
            return RecoveryDecision(RecoveryAction.RETRY, attempt, delay)
        action = RecoveryAction.PAUSE if self.policy.pause_on_error else RecoveryAction.FAIL
        logger.error(
            f"Step {key[1]} of {key[0]} exhausted {self.policy.max_retries} "
            f"retries; action={action.value}"
        )
        return RecoveryDecision(action, attempt)

    def on_dependency_failure(self, optional: bool) -> RecoveryDecision:
        """Missing inputs are structural, so they are never retried."""
        return RecoveryDecision(
            RecoveryAction.SKIP if optional else RecoveryAction.FAIL, attempt=1
        )

    def reset(self, key: AttemptKey) -> None:
        self._attempts.pop(key, None)
