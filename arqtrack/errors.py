from __future__ import annotations


class ArqTrackError(Exception):
    """Base class for every failure raised by the lifecycle engine."""


class ValidationError(ArqTrackError, ValueError):
    """Bad input, rejected before any state change."""


class AttestationError(ArqTrackError, RuntimeError):
    """The attestation call failed. The contribution stays pending."""


class PaymentError(ArqTrackError, RuntimeError):
    """The payment call failed. The payout is left in failed."""


class NoEligiblePayout(ArqTrackError):
    """No verified contribution in the trailing week, so nothing is owed."""


class PayoutStateError(ArqTrackError):
    """A transition was requested from a state that does not allow it."""


class ContributionNotFound(ArqTrackError, KeyError):
    pass


class PayoutNotFound(ArqTrackError, KeyError):
    pass
