"""Settlement ledger — the epoch lifecycle: commit → dispute window → finalize.

The ledger owns two arenas: settlements addressed by integer epoch id, and
disputes addressed by generated id with a secondary index by epoch. All
access goes through one ledger instance; there is no module-level state.

Every operation validates fully before it mutates anything, so a rejected
call leaves the ledger unchanged. The only external side effect on the
dispute path is the stake escrow debit, which happens before any ledger
mutation and raises without effect on overdraft.

The dispute window is enforced at call time:

    raise_dispute    requires now <  committed_at + window
    finalize         requires now >= committed_at + window

Disputes consume the window; they never extend it.

State machine:
    OPEN → DISPUTED       (dispute raised)
    DISPUTED → OPEN       (last pending dispute resolved — arbitrator)
    OPEN → FINALIZED      (window elapsed, no pending disputes)
    OPEN | DISPUTED → CANCELLED   (admin emergency action)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence, Union

from epochpay.crypto.merkle import (
    NonInclusionProof,
    claim_leaf_hash,
    is_hash,
    verify,
    verify_absence,
)
from epochpay.errors import (
    DisputesPending,
    EpochAlreadyCommitted,
    EpochOutOfOrder,
    InsufficientStake,
    InvalidAmount,
    InvalidProof,
    LedgerPaused,
    MalformedRoot,
    SettlementCancelled,
    SettlementNotDisputable,
    StateConflict,
    TooEarly,
    TooLate,
    TotalsMismatch,
    UnknownDispute,
    UnknownEpoch,
)
from epochpay.governance.roles import Role, RoleRegistry
from epochpay.ledger.balances import STAKE_ESCROW_ACCOUNT, BalanceLedger, transfer
from epochpay.models.dispute import Dispute, DisputeKind
from epochpay.models.settlement import (
    Modality,
    Settlement,
    SettlementState,
    SettlementTotals,
)
from epochpay.params import SettlementParams
from epochpay.pricing.store import PricingPolicyStore

logger = logging.getLogger(__name__)


class SettlementLedger:
    """Owns settlements and disputes and enforces the window rules.

    Usage:
        ledger = SettlementLedger(params, pricing, roles, balances)
        ledger.commit_settlement("aggregator", 1, root, totals, "standard", now=t0)
        dispute = ledger.raise_dispute(
            "challenger", 1, DisputeKind.WRONG_COUNT, "provider-a",
            Modality.TEXT, Decimal("107"), proof, Decimal("10"), now=t1,
        )
        # ... arbitrator resolves ...
        ledger.finalize_settlement(1, now=t0 + params.dispute_window)
    """

    def __init__(
        self,
        params: SettlementParams,
        pricing: PricingPolicyStore,
        roles: RoleRegistry,
        balances: BalanceLedger,
    ) -> None:
        self._params = params
        self._pricing = pricing
        self._roles = roles
        self._balances = balances
        self._settlements: dict[int, Settlement] = {}
        self._disputes: dict[str, Dispute] = {}
        self._disputes_by_epoch: dict[int, list[str]] = {}
        self._dispute_counter = 0
        self._paused = False

    @property
    def params(self) -> SettlementParams:
        return self._params

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    @property
    def balances(self) -> BalanceLedger:
        return self._balances

    # ------------------------------------------------------------------
    # Commit
    # ------------------------------------------------------------------

    def commit_settlement(
        self,
        caller: str,
        epoch_id: int,
        merkle_root: str,
        totals: SettlementTotals,
        service_class: str,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """Store a new OPEN settlement for ``epoch_id``.

        Raises:
            AccessDenied: caller is not a committer.
            EpochAlreadyCommitted: the epoch exists (no overwrite).
            EpochOutOfOrder: epoch id not above the latest committed epoch.
            MalformedRoot / InvalidAmount / TotalsMismatch / PolicyNotFound.
        """
        self.require_not_paused()
        self._roles.require(caller, Role.COMMITTER)
        if now is None:
            now = datetime.now(timezone.utc)

        if not isinstance(epoch_id, int) or isinstance(epoch_id, bool) or epoch_id < 0:
            raise EpochOutOfOrder(f"Epoch id must be a non-negative integer, got {epoch_id!r}")
        if epoch_id in self._settlements:
            raise EpochAlreadyCommitted(
                f"Epoch {epoch_id} already committed", {"epoch_id": epoch_id},
            )
        latest = self.latest_epoch
        if latest is not None and epoch_id <= latest:
            raise EpochOutOfOrder(
                f"Epoch {epoch_id} is not after latest committed epoch {latest}",
                {"epoch_id": epoch_id},
            )
        if not is_hash(merkle_root):
            raise MalformedRoot(f"Malformed Merkle root: {merkle_root!r}")
        if any(v < Decimal("0") for v in totals.amounts()):
            raise InvalidAmount("Totals must not contain negative values")
        for modality, bucket in totals.by_modality.items():
            if any(v < Decimal("0") for v in bucket.amounts()):
                raise InvalidAmount(
                    f"{modality.value} bucket must not contain negative values",
                    {"epoch_id": epoch_id},
                )
        if totals.user_payment == Decimal("0"):
            raise InvalidAmount("userPayment must be positive")

        policy = self._pricing.get_policy(service_class, now)
        errors = self._pricing.validate_totals(policy, totals)
        if errors:
            raise TotalsMismatch(
                "; ".join(errors), {"epoch_id": epoch_id, "service_class": service_class},
            )

        settlement = Settlement(
            epoch_id=epoch_id,
            merkle_root=merkle_root,
            totals=totals,
            committed_totals=totals,
            service_class=service_class,
            committed_at=now,
            committer_id=caller,
            fee_reserve=totals.platform_fee,
        )
        self._settlements[epoch_id] = settlement
        self._disputes_by_epoch[epoch_id] = []
        logger.info(
            "Settlement committed: epoch=%d root=%s userPayment=%s",
            epoch_id, merkle_root, totals.user_payment,
        )
        return settlement

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    def raise_dispute(
        self,
        challenger: str,
        epoch_id: int,
        kind: DisputeKind,
        entity_id: str,
        modality: Modality,
        claimed_amount: Decimal,
        proof: Union[Sequence[str], NonInclusionProof],
        stake: Decimal,
        now: Optional[datetime] = None,
    ) -> Dispute:
        """Challenge a settlement's totals within its window.

        WRONG_COUNT and WRONG_REWARD take an inclusion proof for the leaf
        (entity_id, modality, claimed_amount, epoch_id). MISSING_ENTRY
        takes a NonInclusionProof showing entity_id has no leaf.

        Raises:
            UnknownEpoch, SettlementNotDisputable, TooLate,
            InsufficientStake, InvalidAmount, InvalidProof,
            InsufficientBalance (stake escrow failed).
        """
        self.require_not_paused()
        if now is None:
            now = datetime.now(timezone.utc)
        settlement = self.require_settlement(epoch_id)

        if settlement.state not in (SettlementState.OPEN, SettlementState.DISPUTED):
            raise SettlementNotDisputable(
                f"Settlement {epoch_id} is {settlement.state.value}; disputes need open or disputed",
                {"epoch_id": epoch_id},
            )
        closes_at = self.window_closes_at(epoch_id)
        if now >= closes_at:
            raise TooLate(
                f"Dispute window for epoch {epoch_id} closed at {closes_at.isoformat()}",
                {"epoch_id": epoch_id},
            )
        if not isinstance(stake, Decimal) or stake < self._params.min_stake or stake <= 0:
            raise InsufficientStake(
                f"Stake {stake} below minimum {self._params.min_stake}",
                {"epoch_id": epoch_id},
            )
        if not isinstance(claimed_amount, Decimal) or claimed_amount < Decimal("0"):
            raise InvalidAmount(f"Claimed amount must be a non-negative Decimal, got {claimed_amount!r}")
        if not entity_id:
            raise InvalidAmount("Dispute must name the challenged entity")

        stored_proof = self._check_dispute_proof(
            settlement, kind, entity_id, modality, claimed_amount, proof,
        )

        dispute_id = self._next_dispute_id()
        transfer(
            self._balances, challenger, STAKE_ESCROW_ACCOUNT, stake,
            memo=f"stake {dispute_id} epoch {epoch_id}",
        )

        dispute = Dispute(
            dispute_id=dispute_id,
            epoch_id=epoch_id,
            challenger=challenger,
            kind=kind,
            entity_id=entity_id,
            modality=modality,
            claimed_amount=claimed_amount,
            proof=stored_proof,
            stake=stake,
            raised_at=now,
        )
        self._dispute_counter += 1
        self._disputes[dispute_id] = dispute
        self._disputes_by_epoch[epoch_id].append(dispute_id)
        settlement.open_dispute_count += 1
        if settlement.state == SettlementState.OPEN:
            settlement.transition_to(SettlementState.DISPUTED)

        logger.info(
            "Dispute raised: %s epoch=%d kind=%s entity=%s stake=%s",
            dispute_id, epoch_id, kind.value, entity_id, stake,
        )
        return dispute

    def _check_dispute_proof(
        self,
        settlement: Settlement,
        kind: DisputeKind,
        entity_id: str,
        modality: Modality,
        claimed_amount: Decimal,
        proof: Union[Sequence[str], NonInclusionProof],
    ) -> Union[tuple[str, ...], NonInclusionProof]:
        depth = self._params.max_proof_depth
        if kind == DisputeKind.MISSING_ENTRY:
            if not isinstance(proof, NonInclusionProof) or not verify_absence(
                settlement.merkle_root, settlement.epoch_id, entity_id, proof, max_depth=depth,
            ):
                raise InvalidProof(
                    f"Non-inclusion proof for {entity_id} does not verify",
                    {"epoch_id": settlement.epoch_id},
                )
            return proof

        if isinstance(proof, NonInclusionProof):
            raise InvalidProof(f"{kind.value} disputes require an inclusion proof")
        leaf = claim_leaf_hash(entity_id, modality, claimed_amount, settlement.epoch_id)
        if not verify(settlement.merkle_root, leaf, proof, max_depth=depth):
            raise InvalidProof(
                f"Inclusion proof for ({entity_id}, {modality.value}, {claimed_amount}) "
                "does not verify",
                {"epoch_id": settlement.epoch_id},
            )
        return tuple(proof)

    # ------------------------------------------------------------------
    # Finalize / cancel / pause
    # ------------------------------------------------------------------

    def finalize_settlement(
        self,
        epoch_id: int,
        now: Optional[datetime] = None,
    ) -> tuple[Settlement, bool]:
        """Finalize a settlement once its window has elapsed.

        Open to any caller. Idempotent: finalizing an already FINALIZED
        settlement succeeds without side effects.

        Returns:
            (settlement, changed) — changed is False for the no-op case.
        """
        settlement = self.require_settlement(epoch_id)
        if settlement.state == SettlementState.FINALIZED:
            return settlement, False

        self.require_not_paused()
        if now is None:
            now = datetime.now(timezone.utc)
        if settlement.state == SettlementState.CANCELLED:
            raise SettlementCancelled(f"Settlement {epoch_id} was cancelled")
        if settlement.open_dispute_count > 0:
            raise DisputesPending(
                f"Settlement {epoch_id} has {settlement.open_dispute_count} pending disputes",
                {"epoch_id": epoch_id},
            )
        closes_at = self.window_closes_at(epoch_id)
        if now < closes_at:
            raise TooEarly(
                f"Dispute window for epoch {epoch_id} open until {closes_at.isoformat()}",
                {"epoch_id": epoch_id},
            )

        settlement.transition_to(SettlementState.FINALIZED)
        settlement.finalized_at = now
        logger.info(
            "Settlement finalized: epoch=%d providerReward=%s",
            epoch_id, settlement.totals.provider_reward,
        )
        return settlement, True

    def cancel_settlement(
        self,
        caller: str,
        epoch_id: int,
        now: Optional[datetime] = None,
    ) -> Settlement:
        """Emergency cancel. Pending disputes stay resolvable for their stakes."""
        self._roles.require(caller, Role.ADMIN)
        if now is None:
            now = datetime.now(timezone.utc)
        settlement = self.require_settlement(epoch_id)
        settlement.transition_to(SettlementState.CANCELLED)
        settlement.cancelled_at = now
        logger.warning("Settlement cancelled: epoch=%d by %s", epoch_id, caller)
        return settlement

    def pause(self, caller: str) -> bool:
        """Halt commit, dispute, finalize and claim. Returns False if already paused."""
        self._roles.require(caller, Role.ADMIN)
        if self._paused:
            return False
        self._paused = True
        logger.warning("Ledger paused by %s", caller)
        return True

    def unpause(self, caller: str) -> bool:
        self._roles.require(caller, Role.ADMIN)
        if not self._paused:
            return False
        self._paused = False
        logger.info("Ledger unpaused by %s", caller)
        return True

    @property
    def paused(self) -> bool:
        return self._paused

    def require_not_paused(self) -> None:
        if self._paused:
            raise LedgerPaused("Ledger is paused")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_settlement(self, epoch_id: int) -> Optional[Settlement]:
        return self._settlements.get(epoch_id)

    def require_settlement(self, epoch_id: int) -> Settlement:
        settlement = self._settlements.get(epoch_id)
        if settlement is None:
            raise UnknownEpoch(f"Unknown epoch: {epoch_id}", {"epoch_id": epoch_id})
        return settlement

    def settlements(self, state: Optional[SettlementState] = None) -> list[Settlement]:
        ordered = [self._settlements[e] for e in sorted(self._settlements)]
        if state is None:
            return ordered
        return [s for s in ordered if s.state == state]

    @property
    def latest_epoch(self) -> Optional[int]:
        return max(self._settlements) if self._settlements else None

    def window_closes_at(self, epoch_id: int) -> datetime:
        return self.require_settlement(epoch_id).committed_at + self._params.dispute_window

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        return self._disputes.get(dispute_id)

    def require_dispute(self, dispute_id: str) -> Dispute:
        dispute = self._disputes.get(dispute_id)
        if dispute is None:
            raise UnknownDispute(f"Unknown dispute: {dispute_id}")
        return dispute

    def disputes_for_epoch(self, epoch_id: int) -> list[Dispute]:
        return [self._disputes[d] for d in self._disputes_by_epoch.get(epoch_id, [])]

    def pending_disputes(self) -> list[Dispute]:
        return [d for d in self._disputes.values() if d.is_pending]

    def _next_dispute_id(self) -> str:
        return f"DSP-{self._dispute_counter + 1:08d}"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_records(self) -> dict[str, Any]:
        return {
            "settlements": [s.to_dict() for s in self.settlements()],
            "disputes": [d.to_dict() for d in self._disputes.values()],
            "dispute_counter": self._dispute_counter,
            "paused": self._paused,
        }

    def load_records(self, records: dict[str, Any]) -> None:
        settlements = [Settlement.from_dict(s) for s in records.get("settlements", [])]
        disputes = [Dispute.from_dict(d) for d in records.get("disputes", [])]
        self._settlements = {s.epoch_id: s for s in settlements}
        self._disputes = {d.dispute_id: d for d in disputes}
        self._disputes_by_epoch = {s.epoch_id: [] for s in settlements}
        for d in disputes:
            if d.epoch_id not in self._disputes_by_epoch:
                raise StateConflict(f"Dispute {d.dispute_id} references unknown epoch {d.epoch_id}")
            self._disputes_by_epoch[d.epoch_id].append(d.dispute_id)
        self._dispute_counter = int(records.get("dispute_counter", len(disputes)))
        self._paused = bool(records.get("paused", False))
