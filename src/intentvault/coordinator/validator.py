"""
Staged intent validation.

Stages run in a fixed order and the first failure short-circuits:

    RECEIVED -> EXPIRY_CHECKED -> SIGNATURE_CHECKED -> NONCE_CHECKED
             -> RATE_CHECKED -> ACCEPTED | REJECTED(reason)

Stages only read state handed to them (current time, the user's on-chain
last nonce). Nothing here advances a nonce; that happens on-chain together
with the balance change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from intentvault.protocol.enums import RejectReason, ValidationState
from intentvault.protocol.errors import (
    IntentExpired,
    InvalidSignature,
    NonceReused,
    RateLimited,
    ValidationError,
)
from intentvault.protocol.models import SignedIntent
from intentvault.security.signing import verify_intent_signature
from intentvault.utils.timestamps import now_ms

from .rate_limit import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class ValidationContext:
    now_ms: int
    last_nonce: int


@dataclass
class ValidationOutcome:
    state: ValidationState
    trail: List[ValidationState] = field(default_factory=list)
    error: Optional[ValidationError] = None

    @property
    def accepted(self) -> bool:
        return self.state == ValidationState.ACCEPTED

    @property
    def reason(self) -> Optional[RejectReason]:
        return self.error.reason if self.error is not None else None


class ValidationStage:
    """One check of the pipeline. ``check`` raises a ValidationError subclass on failure."""

    passed_state: ValidationState

    def check(self, signed: SignedIntent, ctx: ValidationContext) -> None:
        raise NotImplementedError("Subclasses must implement check()")


class SignatureStage(ValidationStage):
    passed_state = ValidationState.SIGNATURE_CHECKED

    def check(self, signed: SignedIntent, ctx: ValidationContext) -> None:
        if not verify_intent_signature(signed):
            raise InvalidSignature("Intent signature is not valid for its user")


class ExpiryStage(ValidationStage):
    passed_state = ValidationState.EXPIRY_CHECKED

    def __init__(self, clock_skew_ms: int = 30_000, max_age_ms: int = 24 * 60 * 60 * 1000):
        self.clock_skew_ms = clock_skew_ms
        self.max_age_ms = max_age_ms

    def check(self, signed: SignedIntent, ctx: ValidationContext) -> None:
        intent = signed.intent
        # skew only tolerates early issuance; it never extends expiry
        if ctx.now_ms > intent.expires_at:
            raise IntentExpired(f"Intent expired at {intent.expires_at}")
        if intent.issued_at > ctx.now_ms + self.clock_skew_ms:
            raise IntentExpired("Intent issued in the future")
        if ctx.now_ms - intent.issued_at > self.max_age_ms:
            raise IntentExpired("Intent is too old")


class NonceStage(ValidationStage):
    passed_state = ValidationState.NONCE_CHECKED

    def check(self, signed: SignedIntent, ctx: ValidationContext) -> None:
        if signed.intent.nonce <= ctx.last_nonce:
            raise NonceReused(
                f"Nonce {signed.intent.nonce} already used (last={ctx.last_nonce})"
            )


class RateStage(ValidationStage):
    passed_state = ValidationState.RATE_CHECKED

    def __init__(self, limiter: SlidingWindowRateLimiter):
        self.limiter = limiter

    def check(self, signed: SignedIntent, ctx: ValidationContext) -> None:
        decision = self.limiter.check(signed.intent.user)
        if not decision.allowed:
            raise RateLimited(
                f"Too many intents; retry in {decision.retry_after:.0f}s",
                retry_after=decision.retry_after,
            )


class IntentValidator:
    def __init__(
        self,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        *,
        clock_skew_ms: int = 30_000,
        max_age_ms: int = 24 * 60 * 60 * 1000,
        clock=now_ms,
    ):
        self._clock = clock
        self.stages: List[ValidationStage] = [
            ExpiryStage(clock_skew_ms, max_age_ms),
            SignatureStage(),
            NonceStage(),
            RateStage(rate_limiter or SlidingWindowRateLimiter()),
        ]

    def evaluate(self, signed: SignedIntent, last_nonce: int, now: Optional[int] = None) -> ValidationOutcome:
        ctx = ValidationContext(now_ms=self._clock() if now is None else now, last_nonce=last_nonce)
        outcome = ValidationOutcome(state=ValidationState.RECEIVED, trail=[ValidationState.RECEIVED])

        for stage in self.stages:
            try:
                stage.check(signed, ctx)
            except ValidationError as e:
                outcome.state = ValidationState.REJECTED
                outcome.trail.append(ValidationState.REJECTED)
                outcome.error = e
                logger.info(
                    "Rejected intent user=%s nonce=%d: %s",
                    signed.intent.user[:16], signed.intent.nonce, e.reason.value,
                )
                return outcome
            outcome.state = stage.passed_state
            outcome.trail.append(stage.passed_state)

        outcome.state = ValidationState.ACCEPTED
        outcome.trail.append(ValidationState.ACCEPTED)
        return outcome

    def validate(self, signed: SignedIntent, last_nonce: int, now: Optional[int] = None) -> ValidationOutcome:
        """Like ``evaluate`` but raises the rejecting ValidationError."""
        outcome = self.evaluate(signed, last_nonce, now)
        if outcome.error is not None:
            raise outcome.error
        return outcome
