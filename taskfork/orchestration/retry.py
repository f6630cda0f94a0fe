"""
Retry Coordination — Deciding What Happens After a Failed Attempt.

Failure classification is free-text phrase matching over the child's error
output. It is heuristic and lives behind ``FailureClassifier`` so phrase sets
can grow without touching the policy below.

Policy, per failure kind:

  user_interrupted         terminal, never retried
  provider_not_supported   first attempt of a chain only: next chain entry
  unknown_model            (fresh identity); chain exhausted → parent model
                           once (fresh identity, chain reset to [parent])
  rate_limited             chain entries remaining → next entry, fresh identity;
                           otherwise the outer loop below
  transient_transport      outer loop: same model, resume identity, backoff
  generic_failure          terminal

Chain moves start a fresh identity. Same-model retries resume the identity the
failed attempt discovered. The asymmetry is intentional and kept explicit here.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import structlog

from taskfork.orchestration.errors import INTERRUPTED_BY_USER
from taskfork.orchestration.models import AttemptOutcome, RetryContext

logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    USER_INTERRUPTED = "user_interrupted"
    PROVIDER_NOT_SUPPORTED = "provider_not_supported"
    UNKNOWN_MODEL = "unknown_model"
    RATE_LIMITED = "rate_limited"
    TRANSIENT_TRANSPORT = "transient_transport"
    GENERIC_FAILURE = "generic_failure"


MODEL_ERROR_KINDS = frozenset({FailureKind.PROVIDER_NOT_SUPPORTED, FailureKind.UNKNOWN_MODEL})
RETRYABLE_KINDS = frozenset({FailureKind.RATE_LIMITED, FailureKind.TRANSIENT_TRANSPORT})

# Each entry is a group of phrases that must all appear (case-insensitive).
DEFAULT_PHRASES: dict[FailureKind, list[tuple[str, ...]]] = {
    FailureKind.USER_INTERRUPTED: [(INTERRUPTED_BY_USER.lower(),)],
    FailureKind.PROVIDER_NOT_SUPPORTED: [
        ("provider", "is not supported", "supported providers:"),
    ],
    FailureKind.UNKNOWN_MODEL: [("unknown model",)],
    FailureKind.RATE_LIMITED: [
        (p,)
        for p in (
            "rate limit",
            "rate_limit",
            "ratelimit",
            "too many requests",
            "429",
            "temporarily unavailable",
            "temporarily disabled",
            "model is currently unavailable",
            "capacity",
            "overloaded",
        )
    ],
    FailureKind.TRANSIENT_TRANSPORT: [
        (p,)
        for p in (
            "readerror",
            "connection reset",
            "connection aborted",
            "broken pipe",
            "timed out",
            "timeout",
            "failed to connect",
            "econnreset",
            "econnrefused",
            "socket hang up",
            "stream was cancelled",
            "stream ended",
        )
    ],
}

# Checked in this order; the first match wins.
CLASSIFICATION_ORDER = (
    FailureKind.USER_INTERRUPTED,
    FailureKind.PROVIDER_NOT_SUPPORTED,
    FailureKind.UNKNOWN_MODEL,
    FailureKind.RATE_LIMITED,
    FailureKind.TRANSIENT_TRANSPORT,
)


class FailureClassifier:
    """Interface: map captured error text to a FailureKind."""

    def classify(self, text: str) -> FailureKind:
        raise NotImplementedError


class PhraseClassifier(FailureClassifier):
    """Case-insensitive phrase matching with extensible phrase sets."""

    def __init__(self, phrases: Optional[dict[FailureKind, list[tuple[str, ...]]]] = None):
        source = phrases if phrases is not None else DEFAULT_PHRASES
        self._phrases: dict[FailureKind, list[tuple[str, ...]]] = {
            kind: [tuple(p.lower() for p in group) for group in groups]
            for kind, groups in source.items()
        }

    def add_phrases(self, kind: FailureKind, *phrases: str) -> None:
        """Register extra single phrases for a kind."""
        groups = self._phrases.setdefault(kind, [])
        groups.extend((p.lower(),) for p in phrases if p)

    def classify(self, text: str) -> FailureKind:
        lowered = (text or "").lower()
        if not lowered:
            return FailureKind.GENERIC_FAILURE
        for kind in CLASSIFICATION_ORDER:
            for group in self._phrases.get(kind, []):
                if all(p in lowered for p in group):
                    return kind
        return FailureKind.GENERIC_FAILURE


def compute_retry_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    jitter: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """``min(max_delay, base · 2^(attempt-1)) + jitter`` in seconds."""
    exponential = base_delay * (2 ** max(0, attempt - 1))
    return min(max_delay, exponential) + rand() * jitter


async def wait_for_retry_delay(delay: float, cancel_event: Optional[asyncio.Event] = None) -> bool:
    """Sleep for ``delay`` seconds unless cancelled.

    Returns True when the wait ran to completion, False when the cancel event
    fired (before or during the wait). Never raises on cancellation.
    """
    if cancel_event is None:
        await asyncio.sleep(delay)
        return True
    if cancel_event.is_set():
        return False
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return True
    return False


class Action(str, Enum):
    RETURN = "return"
    ADVANCE_CHAIN = "advance_chain"
    PARENT_FALLBACK = "parent_fallback"
    RETRY_SAME = "retry_same"


@dataclass
class RetryDecision:
    action: Action
    kind: FailureKind
    model: Optional[str] = None
    delay: float = 0.0
    reason: str = ""


class RetryCoordinator:
    """Classifies a failed attempt and mutates the RetryContext accordingly."""

    def __init__(
        self,
        classifier: Optional[FailureClassifier] = None,
        max_transient_retries: int = 2,
        base_delay: float = 0.8,
        max_delay: float = 8.0,
        jitter: float = 0.3,
        rand: Callable[[], float] = random.random,
    ):
        self.classifier = classifier or PhraseClassifier()
        self.max_transient_retries = max_transient_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._jitter = jitter
        self._rand = rand

    @property
    def max_attempts_per_model(self) -> int:
        return self.max_transient_retries + 1

    def classify(self, outcome: AttemptOutcome) -> FailureKind:
        if outcome.interrupted or outcome.result.error == INTERRUPTED_BY_USER:
            return FailureKind.USER_INTERRUPTED
        return self.classifier.classify(outcome.failure_text)

    def decide(
        self,
        outcome: AttemptOutcome,
        ctx: RetryContext,
        parent_model_handle: Optional[str] = None,
    ) -> RetryDecision:
        """Decide the next step after a failed attempt and update ``ctx``."""
        kind = self.classify(outcome)

        if kind is FailureKind.USER_INTERRUPTED:
            return RetryDecision(Action.RETURN, kind, reason="interrupted")

        first_attempt = ctx.attempt == 1 and ctx.chain_index == 0
        if kind in MODEL_ERROR_KINDS and first_attempt and not ctx.attach_mode:
            next_model = self._next_chain_model(ctx)
            if next_model is not None:
                return RetryDecision(
                    Action.ADVANCE_CHAIN, kind, model=next_model, reason="model unavailable"
                )
            if parent_model_handle and parent_model_handle != ctx.model:
                ctx.model = parent_model_handle
                ctx.expansion_chain = [parent_model_handle]
                ctx.chain_index = 0
                ctx.agent_id = None
                ctx.conversation_id = None
                return RetryDecision(
                    Action.PARENT_FALLBACK,
                    kind,
                    model=parent_model_handle,
                    reason="model unavailable, using parent model",
                )
            return RetryDecision(Action.RETURN, kind, reason="no fallback model")

        if kind is FailureKind.RATE_LIMITED and not ctx.attach_mode:
            next_model = self._next_chain_model(ctx)
            if next_model is not None:
                ctx.advanced_on_rate_limit = True
                return RetryDecision(
                    Action.ADVANCE_CHAIN, kind, model=next_model, reason="rate limited"
                )

        if kind in RETRYABLE_KINDS and self._outer_retry_open(kind, ctx):
            ctx.transient_retries += 1
            if outcome.result.agent_id:
                ctx.agent_id = outcome.result.agent_id
            if outcome.result.conversation_id:
                ctx.conversation_id = outcome.result.conversation_id
            delay = compute_retry_delay(
                ctx.transient_retries,
                self._base_delay,
                self._max_delay,
                self._jitter,
                self._rand,
            )
            return RetryDecision(
                Action.RETRY_SAME, kind, model=ctx.model, delay=delay, reason=kind.value
            )

        return RetryDecision(Action.RETURN, kind, reason="not retryable")

    def _outer_retry_open(self, kind: FailureKind, ctx: RetryContext) -> bool:
        if ctx.transient_retries >= self.max_transient_retries:
            return False
        # Once a rate limit has moved the invocation down the chain, the chain
        # is the rate-limit budget. Transport errors still retry in place.
        if ctx.advanced_on_rate_limit and kind is FailureKind.RATE_LIMITED:
            return False
        return True

    @staticmethod
    def _next_chain_model(ctx: RetryContext) -> Optional[str]:
        """Advance ctx to the next chain entry with a fresh identity."""
        while ctx.chain_index + 1 < len(ctx.expansion_chain):
            ctx.chain_index += 1
            candidate = ctx.expansion_chain[ctx.chain_index]
            if candidate and candidate != ctx.model:
                ctx.model = candidate
                ctx.agent_id = None
                ctx.conversation_id = None
                return candidate
        return None
