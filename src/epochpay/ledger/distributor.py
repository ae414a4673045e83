"""Payment distributor — single-shot reward claims against finalized roots.

A claim pays ``amount`` to ``entity_id`` once the entity proves the leaf
(entity_id, modality, amount, epoch_id) is included in the settlement's
Merkle root. An entry corrected by an upheld dispute pays its corrected
amount instead. One ClaimRecord exists per (epoch_id, entity_id); a second
claim fails with AlreadyClaimed.

Ordering inside a claim:
    1. validate everything (state, amount, proof, record absent, cap)
    2. write the ClaimRecord and bump the distributed total
    3. credit the balance ledger

The record is written before the credit, so a re-entrant claim made from
inside the credit observes it and fails. If the credit itself raises, the
record is removed and the error propagates: the call leaves no trace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from epochpay.crypto.merkle import claim_leaf_hash, verify
from epochpay.errors import (
    AlreadyClaimed,
    DistributionExhausted,
    InvalidAmount,
    InvalidProof,
    SettlementError,
    SettlementNotFinalized,
)
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.models.settlement import ClaimRecord, Modality, Settlement, SettlementState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClaimRequest:
    """One entry of a batch distribution."""
    entity_id: str
    modality: Modality
    amount: Decimal
    proof: tuple[str, ...]


@dataclass(frozen=True)
class ClaimOutcome:
    """Per-entry result of batch_distribute."""
    entity_id: str
    success: bool
    record: Optional[ClaimRecord] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


class PaymentDistributor:
    """Pays finalized rewards exactly once per (epoch, entity).

    Usage:
        distributor = PaymentDistributor(ledger)
        record = distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("107"), proof)
    """

    def __init__(self, ledger: SettlementLedger) -> None:
        self._ledger = ledger
        self._claims: dict[tuple[int, str], ClaimRecord] = {}

    def claim_reward(
        self,
        epoch_id: int,
        entity_id: str,
        modality: Modality,
        amount: Decimal,
        proof: Sequence[str],
        now: Optional[datetime] = None,
    ) -> ClaimRecord:
        """Pay one entity's finalized reward.

        Raises:
            LedgerPaused, UnknownEpoch, SettlementNotFinalized,
            InvalidAmount, InvalidProof, AlreadyClaimed,
            DistributionExhausted.
        """
        self._ledger.require_not_paused()
        if now is None:
            now = datetime.now(timezone.utc)
        settlement = self._ledger.require_settlement(epoch_id)
        if settlement.state != SettlementState.FINALIZED:
            raise SettlementNotFinalized(
                f"Settlement {epoch_id} is {settlement.state.value}; claims need finalized",
                {"epoch_id": epoch_id},
            )
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= Decimal("0"):
            raise InvalidAmount(f"Claim amount must be a positive Decimal, got {amount!r}")

        key = (epoch_id, entity_id)
        if key in self._claims:
            raise AlreadyClaimed(
                f"Entity {entity_id} already claimed for epoch {epoch_id}",
                {"epoch_id": epoch_id, "entity_id": entity_id},
            )

        self._check_entitlement(settlement, entity_id, modality, amount, proof)

        if settlement.distributed_total + amount > settlement.totals.provider_reward:
            raise DistributionExhausted(
                f"Claim of {amount} would exceed epoch {epoch_id} provider reward "
                f"({settlement.distributed_total} of {settlement.totals.provider_reward} paid)",
                {"epoch_id": epoch_id},
            )

        record = ClaimRecord(
            epoch_id=epoch_id,
            entity_id=entity_id,
            modality=modality,
            amount=amount,
            claimed_at=now,
        )
        self._claims[key] = record
        settlement.distributed_total += amount
        try:
            self._ledger.balances.credit(
                entity_id, amount, memo=f"reward epoch {epoch_id}",
            )
        except Exception:
            if self._claims.get(key) is record:
                del self._claims[key]
                settlement.distributed_total -= amount
            raise

        logger.info(
            "Reward claimed: epoch=%d entity=%s amount=%s", epoch_id, entity_id, amount,
        )
        return record

    def _check_entitlement(
        self,
        settlement: Settlement,
        entity_id: str,
        modality: Modality,
        amount: Decimal,
        proof: Sequence[str],
    ) -> None:
        """Raise InvalidProof unless (entity_id, modality, amount) is owed.

        Uncorrected entries are proven by their leaf. An entry corrected by
        an upheld dispute pays the corrected amount, proven by the
        committed leaf; a corrected missing entry was proven absent when
        the dispute was raised and needs no further proof.
        """
        depth = self._ledger.params.max_proof_depth
        correction = settlement.entry_correction(entity_id)
        if correction is None:
            leaf = claim_leaf_hash(entity_id, modality, amount, settlement.epoch_id)
            if not verify(settlement.merkle_root, leaf, proof, max_depth=depth):
                raise InvalidProof(
                    f"Claim proof for ({entity_id}, {modality.value}, {amount}) does not verify",
                    {"epoch_id": settlement.epoch_id},
                )
            return

        if modality != correction.modality or amount != correction.corrected_entry_amount:
            raise InvalidProof(
                f"Claim ({modality.value}, {amount}) does not match corrected entry "
                f"({correction.modality.value}, {correction.corrected_entry_amount})",
                {"epoch_id": settlement.epoch_id, "dispute_id": correction.dispute_id},
            )
        if correction.committed_entry_amount is not None:
            leaf = claim_leaf_hash(
                entity_id, modality, correction.committed_entry_amount, settlement.epoch_id,
            )
            if not verify(settlement.merkle_root, leaf, proof, max_depth=depth):
                raise InvalidProof(
                    f"Claim proof for committed entry of {entity_id} does not verify",
                    {"epoch_id": settlement.epoch_id},
                )

    def batch_distribute(
        self,
        epoch_id: int,
        requests: Iterable[ClaimRequest],
        now: Optional[datetime] = None,
    ) -> list[ClaimOutcome]:
        """Apply each claim independently. A failing entry never undoes the others."""
        outcomes: list[ClaimOutcome] = []
        for request in requests:
            try:
                record = self.claim_reward(
                    epoch_id, request.entity_id, request.modality,
                    request.amount, request.proof, now=now,
                )
            except SettlementError as e:
                logger.warning(
                    "Batch claim failed: epoch=%d entity=%s: %s", epoch_id, request.entity_id, e,
                )
                outcomes.append(ClaimOutcome(
                    entity_id=request.entity_id,
                    success=False,
                    error=str(e),
                    error_type=type(e).__name__,
                ))
            else:
                outcomes.append(ClaimOutcome(entity_id=request.entity_id, success=True, record=record))
        return outcomes

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def is_claimed(self, epoch_id: int, entity_id: str) -> bool:
        return (epoch_id, entity_id) in self._claims

    def claim_record(self, epoch_id: int, entity_id: str) -> Optional[ClaimRecord]:
        return self._claims.get((epoch_id, entity_id))

    def claims_for_epoch(self, epoch_id: int) -> list[ClaimRecord]:
        return [r for (e, _), r in sorted(self._claims.items()) if e == epoch_id]

    @property
    def claim_count(self) -> int:
        return len(self._claims)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_records(self) -> list[dict[str, Any]]:
        return [r.to_dict() for _, r in sorted(self._claims.items())]

    def load_records(self, records: list[dict[str, Any]]) -> None:
        claims: dict[tuple[int, str], ClaimRecord] = {}
        for data in records:
            record = ClaimRecord.from_dict(data)
            claims[(record.epoch_id, record.entity_id)] = record
        self._claims = claims
