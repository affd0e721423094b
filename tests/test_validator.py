"""
Tests for staged intent validation.
"""

import dataclasses

import pytest

from intentvault.protocol.enums import RejectReason, ValidationState
from intentvault.protocol.errors import IntentExpired, InvalidSignature, NonceReused, RateLimited

T0 = 1_700_000_000_000


@pytest.fixture
def validator():
    from intentvault.coordinator.rate_limit import SlidingWindowRateLimiter
    from intentvault.coordinator.validator import IntentValidator

    return IntentValidator(SlidingWindowRateLimiter(100, 60.0), clock=lambda: T0)


@pytest.fixture
def kp():
    from intentvault.security.signing import Keypair

    return Keypair.generate()


class TestIntentValidator:
    def test_accepts_valid_intent(self, validator, signed_swap, kp):
        outcome = validator.evaluate(signed_swap(kp, 0, 100, issued_at=T0), last_nonce=-1)
        assert outcome.accepted
        assert outcome.error is None
        assert outcome.trail == [
            ValidationState.RECEIVED,
            ValidationState.EXPIRY_CHECKED,
            ValidationState.SIGNATURE_CHECKED,
            ValidationState.NONCE_CHECKED,
            ValidationState.RATE_CHECKED,
            ValidationState.ACCEPTED,
        ]

    def test_bad_signature(self, validator, signed_swap, kp):
        from intentvault.protocol.models import SignedIntent

        signed = signed_swap(kp, 0, 100, issued_at=T0)
        forged = SignedIntent(intent=signed.intent, signature="00" * 64)
        outcome = validator.evaluate(forged, last_nonce=-1)
        assert outcome.state == ValidationState.REJECTED
        assert outcome.reason == RejectReason.INVALID_SIGNATURE
        assert outcome.trail == [
            ValidationState.RECEIVED,
            ValidationState.EXPIRY_CHECKED,
            ValidationState.REJECTED,
        ]

    def test_expired(self, validator, signed_swap, kp):
        signed = signed_swap(kp, 0, 100, issued_at=T0 - 10_000, expiry_window_ms=5_000)
        outcome = validator.evaluate(signed, last_nonce=-1)
        assert outcome.reason == RejectReason.EXPIRED
        assert outcome.trail == [ValidationState.RECEIVED, ValidationState.REJECTED]

    def test_expiry_boundary_is_inclusive(self, validator, signed_swap, kp):
        signed = signed_swap(kp, 0, 100, issued_at=T0 - 5_000, expiry_window_ms=5_000)
        assert validator.evaluate(signed, last_nonce=-1).accepted
        assert validator.evaluate(signed, last_nonce=-1, now=T0 + 1).reason == RejectReason.EXPIRED

    def test_issued_in_future_beyond_skew(self, validator, signed_swap, kp):
        assert validator.evaluate(signed_swap(kp, 0, 1, issued_at=T0 + 20_000), -1).accepted
        outcome = validator.evaluate(signed_swap(kp, 1, 1, issued_at=T0 + 31_000), -1)
        assert outcome.reason == RejectReason.EXPIRED

    def test_too_old(self, signed_swap, kp):
        from intentvault.coordinator.validator import IntentValidator

        validator = IntentValidator(max_age_ms=60_000, clock=lambda: T0)
        signed = signed_swap(kp, 0, 1, issued_at=T0 - 120_000, expiry_window_ms=600_000)
        assert validator.evaluate(signed, -1).reason == RejectReason.EXPIRED

    @pytest.mark.parametrize("nonce,last,ok", [(0, -1, True), (5, 4, True), (5, 5, False), (3, 5, False)])
    def test_nonce_must_exceed_last(self, validator, signed_swap, kp, nonce, last, ok):
        outcome = validator.evaluate(signed_swap(kp, nonce, 1, issued_at=T0), last_nonce=last)
        assert outcome.accepted is ok
        if not ok:
            assert outcome.reason == RejectReason.NONCE_REUSED

    def test_nonce_gaps_allowed(self, validator, signed_swap, kp):
        assert validator.evaluate(signed_swap(kp, 100, 1, issued_at=T0), last_nonce=3).accepted

    def test_rate_limit_per_user(self, signed_swap, kp):
        from intentvault.coordinator.rate_limit import SlidingWindowRateLimiter
        from intentvault.coordinator.validator import IntentValidator
        from intentvault.security.signing import Keypair

        validator = IntentValidator(SlidingWindowRateLimiter(2, 60.0), clock=lambda: T0)
        assert validator.evaluate(signed_swap(kp, 0, 1, issued_at=T0), -1).accepted
        assert validator.evaluate(signed_swap(kp, 1, 1, issued_at=T0), -1).accepted
        outcome = validator.evaluate(signed_swap(kp, 2, 1, issued_at=T0), -1)
        assert outcome.reason == RejectReason.RATE_LIMITED
        assert outcome.error.retry_after > 0

        other = Keypair.generate()
        assert validator.evaluate(signed_swap(other, 0, 1, issued_at=T0), -1).accepted

    def test_rejected_before_rate_stage_do_not_consume_budget(self, signed_swap, kp):
        from intentvault.coordinator.rate_limit import SlidingWindowRateLimiter
        from intentvault.coordinator.validator import IntentValidator

        validator = IntentValidator(SlidingWindowRateLimiter(1, 60.0), clock=lambda: T0)
        for _ in range(3):
            assert validator.evaluate(signed_swap(kp, 0, 1, issued_at=T0), last_nonce=0).reason == (
                RejectReason.NONCE_REUSED
            )
        assert validator.evaluate(signed_swap(kp, 1, 1, issued_at=T0), last_nonce=0).accepted

    def test_expired_wins_over_bad_signature(self, validator, signed_swap, kp):
        from intentvault.protocol.models import SignedIntent

        signed = signed_swap(kp, 0, 1, issued_at=T0 - 10_000, expiry_window_ms=1_000)
        forged = SignedIntent(intent=signed.intent, signature="11" * 64)
        assert validator.evaluate(forged, last_nonce=5).reason == RejectReason.EXPIRED

    def test_bad_signature_wins_over_used_nonce(self, validator, signed_swap, kp):
        from intentvault.protocol.models import SignedIntent

        signed = signed_swap(kp, 0, 1, issued_at=T0)
        forged = SignedIntent(intent=signed.intent, signature="11" * 64)
        assert validator.evaluate(forged, last_nonce=5).reason == RejectReason.INVALID_SIGNATURE

    def test_validate_raises_typed_errors(self, validator, signed_swap, kp):
        from intentvault.protocol.models import SignedIntent

        good = signed_swap(kp, 1, 1, issued_at=T0)
        assert validator.validate(good, 0).accepted
        with pytest.raises(NonceReused):
            validator.validate(good, 1)
        with pytest.raises(InvalidSignature):
            validator.validate(SignedIntent(intent=good.intent, signature="00" * 64), 0)
        with pytest.raises(IntentExpired):
            validator.validate(good, 0, now=good.intent.expires_at + 1)

    def test_signature_covers_every_field(self, validator, signed_swap, kp):
        from intentvault.protocol.models import SignedIntent

        signed = signed_swap(kp, 1, 1, issued_at=T0)
        changed = dataclasses.replace(signed.intent, expires_at=signed.intent.expires_at + 1)
        assert not validator.evaluate(SignedIntent(changed, signed.signature), 0).accepted

    def test_rate_limited_error_type(self, signed_swap, kp):
        from intentvault.coordinator.rate_limit import SlidingWindowRateLimiter
        from intentvault.coordinator.validator import IntentValidator

        validator = IntentValidator(SlidingWindowRateLimiter(1, 60.0), clock=lambda: T0)
        validator.validate(signed_swap(kp, 0, 1, issued_at=T0), -1)
        with pytest.raises(RateLimited):
            validator.validate(signed_swap(kp, 1, 1, issued_at=T0), -1)
