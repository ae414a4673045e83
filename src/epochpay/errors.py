"""Error taxonomy for the settlement core.

Every failure is scoped to the single call that raised it. A rejected call
leaves ledger state unchanged, so the caller can inspect the category and
decide what to do:

- ValidationError — malformed input. Fix the input and retry.
- StateConflict — wrong-state call (double claim, re-resolution, disputing
  a finalized settlement). Not retried automatically.
- EconomicError — not enough stake, balance or reserve. Never partially
  applied.
- TimingError — the dispute window predicate failed (TooEarly / TooLate).
- AccessDenied — the caller lacks the required role.
- AnchorFailed — the chain call behind anchoring failed. Ledger state is
  untouched; retry later.

All errors derive from ValueError so callers that already guard ledger
operations with ``except ValueError`` keep working.
"""

from __future__ import annotations

from typing import Any, Optional


class SettlementError(ValueError):
    """Base class for every error raised by the settlement core."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

class ValidationError(SettlementError):
    """Malformed input, rejected before any state mutation."""


class InvalidProof(ValidationError):
    pass


class UnknownEpoch(ValidationError):
    pass


class UnknownDispute(ValidationError):
    pass


class MalformedRoot(ValidationError):
    pass


class InvalidAmount(ValidationError):
    pass


class TotalsMismatch(ValidationError):
    """Committed totals disagree with the pricing policy split."""


class EpochOutOfOrder(ValidationError):
    pass


class PolicyNotFound(ValidationError):
    pass


class InvalidPolicy(ValidationError):
    pass


# ----------------------------------------------------------------------
# State conflicts
# ----------------------------------------------------------------------

class StateConflict(SettlementError):
    """The target is in the wrong state for the requested operation."""


class EpochAlreadyCommitted(StateConflict):
    pass


class SettlementNotDisputable(StateConflict):
    pass


class SettlementNotFinalized(StateConflict):
    pass


class SettlementCancelled(StateConflict):
    pass


class DisputesPending(StateConflict):
    pass


class DisputeAlreadyResolved(StateConflict):
    pass


class AlreadyClaimed(StateConflict):
    pass


class LedgerPaused(StateConflict):
    pass


# ----------------------------------------------------------------------
# Economic
# ----------------------------------------------------------------------

class EconomicError(SettlementError):
    """Funds are insufficient for the requested operation."""


class InsufficientStake(EconomicError):
    pass


class InsufficientReserve(EconomicError):
    pass


class InsufficientBalance(EconomicError):
    pass


class DistributionExhausted(EconomicError):
    pass


# ----------------------------------------------------------------------
# Timing
# ----------------------------------------------------------------------

class TimingError(SettlementError):
    """The dispute-window predicate rejected the call."""


class TooEarly(TimingError):
    pass


class TooLate(TimingError):
    pass


# ----------------------------------------------------------------------
# Authorization
# ----------------------------------------------------------------------

class AccessDenied(SettlementError):
    """The caller does not hold the role the operation requires."""


# ----------------------------------------------------------------------
# Anchoring
# ----------------------------------------------------------------------

class AnchorFailed(SettlementError):
    """The chain rejected or never confirmed an anchor transaction."""
