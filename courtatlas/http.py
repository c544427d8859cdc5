"""
Retry / endpoint rotation strategy shared by provider clients.

Public map-query mirrors rate-limit and 504 routinely. The policy:
- candidates are shuffled per call (spreads load across mirrors)
- each candidate gets `attempts_per_candidate` tries
- retryable statuses (429/502/503/504) back off, then retry the same candidate
- anything else (other HTTP errors, timeouts, connection errors) moves on immediately

The policy never touches the network itself; callers pass a `send(endpoint)`
callable, which keeps it testable with plain fakes.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import requests

RETRYABLE_STATUSES = frozenset({429, 502, 503, 504})


def is_retryable_status(status: int) -> bool:
    return status in RETRYABLE_STATUSES


def linear_jitter_backoff(base_s: float = 0.8, jitter_s: float = 0.5, rng: Optional[random.Random] = None) -> Callable[[int], float]:
    """base * attempt + U(0, jitter). attempt is 1-based."""
    r = rng or random.Random()

    def _backoff(attempt: int) -> float:
        return base_s * attempt + r.uniform(0.0, jitter_s)

    return _backoff


@dataclass
class PolicyOutcome:
    response: Optional[Any] = None
    endpoint: Optional[str] = None
    status: int = 0
    error: Optional[str] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.response is not None


@dataclass
class RetryPolicy:
    candidates: Sequence[str]
    attempts_per_candidate: int = 2
    backoff: Callable[[int], float] = field(default_factory=linear_jitter_backoff)
    is_retryable: Callable[[int], bool] = is_retryable_status
    shuffle: bool = True
    sleep: Callable[[float], None] = time.sleep
    rng: random.Random = field(default_factory=random.Random)

    def ordered_candidates(self) -> List[str]:
        out = list(self.candidates)
        if self.shuffle:
            self.rng.shuffle(out)
        return out

    def run(self, send: Callable[[str], Any]) -> PolicyOutcome:
        """
        Drive `send` across candidates until one returns a 2xx response.

        `send` returns a response-like object (status_code) or raises
        requests.RequestException. Never raises itself.
        """
        outcome = PolicyOutcome(error="no candidates")
        for endpoint in self.ordered_candidates():
            for attempt in range(1, self.attempts_per_candidate + 1):
                outcome.attempts += 1
                try:
                    resp = send(endpoint)
                    status = int(getattr(resp, "status_code", 0) or 0)
                except requests.RequestException as e:
                    outcome.endpoint = endpoint
                    outcome.status = 0
                    outcome.error = f"{type(e).__name__}: {str(e)[:300]}"
                    break

                if 200 <= status < 300:
                    outcome.response = resp
                    outcome.endpoint = endpoint
                    outcome.status = status
                    outcome.error = None
                    return outcome

                outcome.endpoint = endpoint
                outcome.status = status
                outcome.error = f"HTTP {status}"
                if self.is_retryable(status) and attempt < self.attempts_per_candidate:
                    self.sleep(self.backoff(attempt))
                    continue
                if self.is_retryable(status):
                    # Last try on this mirror was throttled; breathe before the next one.
                    self.sleep(self.backoff(attempt))
                break
        return outcome
