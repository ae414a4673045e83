"""Dispute arbitrator — resolves each pending dispute exactly once.

An upheld dispute corrects one entry: ``corrected_amount`` is the disputed
entity's true entitlement. The aggregate provider reward shifts by
``corrected_amount − current entry amount`` (the leaf amount, the entry's
latest correction, or zero for a missing entry).

UPHELD:
    - compensation = |shift| × compensation_bps, capped by the
      settlement's fee reserve; more than the reserve holds fails with
      InsufficientReserve and changes nothing
    - stake refunded plus compensation
    - a TotalsCorrection is recorded and the effective totals updated;
      only the disputed modality's bucket moves

REJECTED:
    - stake slashed into the platform fee pool

Either way the settlement's pending count drops, and at zero a DISPUTED
settlement returns to OPEN. The window is not reset; a settlement whose
window already elapsed becomes finalizable immediately.

Each dispute is judged on its own merits. Two disputes against the same
leaf are independent; neither verdict affects the other's stake.

Disputes against a CANCELLED settlement still resolve, but only the stake
consequence applies.

The fee reserve is a notional cap, not an account. It starts at the
committed platform fee and only its figure goes down. Compensation is
issued to the challenger with ``credit``, since platform fees are paid
outside this ledger and never land in a balance here. Slashed stakes are
real balances and move into FEE_POOL_ACCOUNT.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from epochpay.errors import (
    DisputeAlreadyResolved,
    InsufficientReserve,
    InvalidAmount,
    StateConflict,
)
from epochpay.governance.roles import Role
from epochpay.ledger.balances import (
    FEE_POOL_ACCOUNT,
    STAKE_ESCROW_ACCOUNT,
    transfer,
)
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.models.dispute import Dispute, DisputeKind, DisputeStatus, Verdict
from epochpay.models.settlement import (
    Settlement,
    SettlementState,
    TotalsCorrection,
)
from epochpay.params import BPS_DENOMINATOR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Resolution:
    """Outcome of a resolve_dispute call."""
    dispute: Dispute
    settlement: Settlement
    compensation: Decimal
    slashed: Decimal
    correction: Optional[TotalsCorrection]


class DisputeArbitrator:
    """Applies arbiter verdicts to disputes and their settlements.

    Usage:
        arbitrator = DisputeArbitrator(ledger)
        resolution = arbitrator.resolve_dispute(
            "arbiter-1", dispute_id, Verdict.UPHELD, Decimal("107"),
        )
    """

    def __init__(self, ledger: SettlementLedger) -> None:
        self._ledger = ledger

    def resolve_dispute(
        self,
        caller: str,
        dispute_id: str,
        verdict: Verdict,
        corrected_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """Resolve a pending dispute.

        Args:
            caller: Must hold the ARBITER role.
            dispute_id: The dispute to resolve.
            verdict: UPHELD or REJECTED.
            corrected_amount: The disputed entry's corrected amount. Required
                for UPHELD, ignored for REJECTED.
            now: Resolution time (defaults to UTC now).

        Raises:
            AccessDenied, UnknownDispute, DisputeAlreadyResolved,
            InvalidAmount, InsufficientReserve.
        """
        self._ledger.roles.require(caller, Role.ARBITER)
        if now is None:
            now = datetime.now(timezone.utc)
        dispute = self._ledger.require_dispute(dispute_id)
        if not dispute.is_pending:
            raise DisputeAlreadyResolved(
                f"Dispute {dispute_id} already {dispute.status.value}",
                {"dispute_id": dispute_id},
            )
        settlement = self._ledger.require_settlement(dispute.epoch_id)
        if settlement.open_dispute_count <= 0:
            raise StateConflict(
                f"Settlement {settlement.epoch_id} has no pending disputes to close",
            )

        if verdict == Verdict.UPHELD:
            resolution = self._uphold(caller, dispute, settlement, corrected_amount, now)
        elif verdict == Verdict.REJECTED:
            resolution = self._reject(caller, dispute, settlement, now)
        else:
            raise InvalidAmount(f"Unknown verdict: {verdict!r}")

        self._close_dispute(settlement)
        logger.info(
            "Dispute resolved: %s verdict=%s epoch=%d compensation=%s pending=%d",
            dispute_id, verdict.value, settlement.epoch_id,
            resolution.compensation, settlement.open_dispute_count,
        )
        return resolution

    def current_entry_amount(self, settlement: Settlement, dispute: Dispute) -> Decimal:
        """The disputed entry's effective amount before this verdict."""
        correction = settlement.entry_correction(dispute.entity_id)
        if correction is not None:
            return correction.corrected_entry_amount
        if dispute.kind == DisputeKind.MISSING_ENTRY:
            return Decimal("0")
        return dispute.claimed_amount

    def compensation_for(self, shift: Decimal) -> Decimal:
        return abs(shift) * self._ledger.params.compensation_bps / Decimal(BPS_DENOMINATOR)

    # ------------------------------------------------------------------
    # Verdicts
    # ------------------------------------------------------------------

    def _uphold(
        self,
        caller: str,
        dispute: Dispute,
        settlement: Settlement,
        corrected_amount: Optional[Decimal],
        now: datetime,
    ) -> Resolution:
        cancelled = settlement.state == SettlementState.CANCELLED
        compensation = Decimal("0")
        shift = Decimal("0")
        if not cancelled:
            if not isinstance(corrected_amount, Decimal) or corrected_amount < Decimal("0"):
                raise InvalidAmount(
                    f"Upheld disputes need a non-negative corrected amount, got {corrected_amount!r}",
                )
            shift = corrected_amount - self.current_entry_amount(settlement, dispute)
            if settlement.totals.provider_reward + shift < Decimal("0"):
                raise InvalidAmount(
                    f"Correction would make providerReward negative "
                    f"({settlement.totals.provider_reward} + {shift})",
                )
            corrected_totals = settlement.totals.with_entry_shift(dispute.modality, shift)
            compensation = self.compensation_for(shift)
            if compensation > settlement.fee_reserve:
                raise InsufficientReserve(
                    f"Compensation {compensation} exceeds fee reserve {settlement.fee_reserve}",
                    {"epoch_id": settlement.epoch_id, "dispute_id": dispute.dispute_id},
                )

        balances = self._ledger.balances
        transfer(
            balances, STAKE_ESCROW_ACCOUNT, dispute.challenger, dispute.stake,
            memo=f"refund {dispute.dispute_id}",
        )
        if compensation > 0:
            try:
                balances.credit(
                    dispute.challenger, compensation,
                    memo=f"compensation {dispute.dispute_id} epoch {settlement.epoch_id}",
                )
            except Exception:
                transfer(
                    balances, dispute.challenger, STAKE_ESCROW_ACCOUNT, dispute.stake,
                    memo=f"reversal: refund {dispute.dispute_id}",
                )
                raise

        correction: Optional[TotalsCorrection] = None
        if not cancelled:
            correction = TotalsCorrection(
                dispute_id=dispute.dispute_id,
                entity_id=dispute.entity_id,
                modality=dispute.modality,
                committed_entry_amount=(
                    None if dispute.kind == DisputeKind.MISSING_ENTRY else dispute.claimed_amount
                ),
                corrected_entry_amount=corrected_amount,
                previous_provider_reward=settlement.totals.provider_reward,
                corrected_provider_reward=corrected_totals.provider_reward,
                previous_user_payment=settlement.totals.user_payment,
                corrected_user_payment=corrected_totals.user_payment,
                recorded_at=now,
            )
            settlement.totals = corrected_totals
            settlement.fee_reserve -= compensation
            settlement.corrections.append(correction)

        self._mark(dispute, DisputeStatus.UPHELD, caller, now)
        dispute.corrected_amount = corrected_amount if not cancelled else None
        dispute.compensation = compensation
        return Resolution(dispute, settlement, compensation, Decimal("0"), correction)

    def _reject(
        self,
        caller: str,
        dispute: Dispute,
        settlement: Settlement,
        now: datetime,
    ) -> Resolution:
        transfer(
            self._ledger.balances, STAKE_ESCROW_ACCOUNT, FEE_POOL_ACCOUNT, dispute.stake,
            memo=f"slash {dispute.dispute_id}",
        )
        self._mark(dispute, DisputeStatus.REJECTED, caller, now)
        return Resolution(dispute, settlement, Decimal("0"), dispute.stake, None)

    @staticmethod
    def _mark(dispute: Dispute, status: DisputeStatus, caller: str, now: datetime) -> None:
        dispute.status = status
        dispute.resolver_id = caller
        dispute.resolved_at = now

    @staticmethod
    def _close_dispute(settlement: Settlement) -> None:
        settlement.open_dispute_count -= 1
        if settlement.open_dispute_count == 0 and settlement.state == SettlementState.DISPUTED:
            settlement.transition_to(SettlementState.OPEN)
