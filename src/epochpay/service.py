"""Settlement service — unified facade for the settlement core.

This is the primary interface for programmatic access. It wires:
- Role registry (committer / arbiter / admin capabilities)
- Pricing policy store (versioned splits per service class)
- Settlement ledger (commit → dispute window → finalize, cancel, pause)
- Dispute arbitrator (stake refund or slash, compensation, corrections)
- Payment distributor (single-shot claims against finalized roots)
- Balance ledger (challenger funds, stake escrow, fee pool, payouts)
- Persistence (event log, state store)

All operations return a ServiceResult and never raise for rejected calls.
Every committed state change is appended to the event log before it
becomes durable in the state store. If the event log append fails, the
in-memory state is restored to its pre-call snapshot and the call fails:
no state change exists without an audit record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Sequence, Union

from epochpay import __version__
from epochpay.crypto.anchor import anchor_settlement
from epochpay.crypto.merkle import NonInclusionProof
from epochpay.errors import InvalidAmount, SettlementError, ValidationError
from epochpay.governance.roles import Role, RoleRegistry
from epochpay.ledger.arbitrator import DisputeArbitrator
from epochpay.ledger.balances import (
    FEE_POOL_ACCOUNT,
    STAKE_ESCROW_ACCOUNT,
    InMemoryBalanceLedger,
)
from epochpay.ledger.distributor import ClaimRequest, PaymentDistributor
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.models.dispute import Dispute, DisputeKind, Verdict
from epochpay.models.pricing import PricingPolicy
from epochpay.models.settlement import (
    ClaimRecord,
    Modality,
    Settlement,
    SettlementState,
    SettlementTotals,
)
from epochpay.params import SettlementParams
from epochpay.persistence.event_log import EventKind, EventLog, EventRecord
from epochpay.persistence.state_store import StateStore
from epochpay.pricing.store import PricingPolicyStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)


# An operation body returns (event payload, changed). changed=False is a
# successful no-op: nothing is recorded or persisted.
_Operation = Callable[[], "tuple[dict[str, Any], bool]"]


class SettlementService:
    """Settlement core facade.

    Usage:
        params = SettlementParams.from_config_dir(config_dir)
        service = SettlementService(params, admin_id="admin")

        service.grant_role("admin", "aggregator", Role.COMMITTER)
        service.set_policy("admin", "standard", policy, effective_at=t0, now=t0)
        service.commit_settlement("aggregator", 1, root, totals, "standard", now=t0)
        service.finalize_settlement("anyone", 1, now=t0 + params.dispute_window)
        service.claim_reward(1, "provider-a", Modality.TEXT, Decimal("100"), proof)

    Persistence (optional):
        service = SettlementService(params, "admin", event_log=log, state_store=store)
        # State is persisted on each mutation and loaded on construction.
    """

    def __init__(
        self,
        params: SettlementParams,
        admin_id: str,
        event_log: Optional[EventLog] = None,
        state_store: Optional[StateStore] = None,
        balances: Optional[InMemoryBalanceLedger] = None,
    ) -> None:
        self._params = params
        self._event_log = event_log
        self._state_store = state_store

        self._roles = RoleRegistry(admin_id)
        self._pricing = PricingPolicyStore(params, self._roles)
        self._balances = balances if balances is not None else InMemoryBalanceLedger()
        self._ledger = SettlementLedger(params, self._pricing, self._roles, self._balances)
        self._arbitrator = DisputeArbitrator(self._ledger)
        self._distributor = PaymentDistributor(self._ledger)

        # Load persisted state or start fresh
        if state_store is not None:
            sections = state_store.load()
            if sections is not None:
                self._restore(sections)

        # Initialize counter from persisted log to avoid ID collision on restart
        self._event_counter = event_log.count if event_log is not None else 0

        # Set when a state store write fails after the audit event was
        # appended. In-memory state matches the event log; the snapshot is stale.
        self._persistence_degraded: bool = False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def params(self) -> SettlementParams:
        return self._params

    @property
    def roles(self) -> RoleRegistry:
        return self._roles

    @property
    def ledger(self) -> SettlementLedger:
        return self._ledger

    @property
    def balances(self) -> InMemoryBalanceLedger:
        return self._balances

    @property
    def persistence_degraded(self) -> bool:
        return self._persistence_degraded

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def grant_role(self, caller: str, actor_id: str, role: Role) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            changed = self._roles.grant(caller, actor_id, role)
            return {"actor_id": actor_id, "role": role.value}, changed
        return self._execute(EventKind.ROLE_GRANTED, caller, _op)

    def revoke_role(self, caller: str, actor_id: str, role: Role) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            changed = self._roles.revoke(caller, actor_id, role)
            return {"actor_id": actor_id, "role": role.value}, changed
        return self._execute(EventKind.ROLE_REVOKED, caller, _op)

    def set_policy(
        self,
        caller: str,
        class_id: str,
        policy: PricingPolicy,
        effective_at: datetime,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            version = self._pricing.set_policy(caller, class_id, policy, effective_at, now=now)
            return {"service_class": class_id, "policy": version.to_dict()}, True
        return self._execute(EventKind.POLICY_SET, caller, _op, now)

    def pause(self, caller: str, now: Optional[datetime] = None) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            return {"paused": True}, self._ledger.pause(caller)
        return self._execute(EventKind.LEDGER_PAUSED, caller, _op, now)

    def unpause(self, caller: str, now: Optional[datetime] = None) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            return {"paused": False}, self._ledger.unpause(caller)
        return self._execute(EventKind.LEDGER_UNPAUSED, caller, _op, now)

    def fund_account(
        self,
        caller: str,
        account: str,
        amount: Decimal,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Credit an external account (e.g. a challenger's stake funds). Admin only."""
        def _op() -> tuple[dict[str, Any], bool]:
            self._roles.require(caller, Role.ADMIN)
            if account in (STAKE_ESCROW_ACCOUNT, FEE_POOL_ACCOUNT):
                raise InvalidAmount(f"Cannot fund system account {account}")
            self._balances.credit(account, amount, memo=f"funded by {caller}")
            return {
                "account": account,
                "amount": str(amount),
                "balance": str(self._balances.balance_of(account)),
            }, True
        return self._execute(EventKind.BALANCE_FUNDED, caller, _op, now)

    # ------------------------------------------------------------------
    # Settlement lifecycle
    # ------------------------------------------------------------------

    def commit_settlement(
        self,
        caller: str,
        epoch_id: int,
        merkle_root: str,
        totals: SettlementTotals,
        service_class: str,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            settlement = self._ledger.commit_settlement(
                caller, epoch_id, merkle_root, totals, service_class, now=now,
            )
            return {
                "epoch_id": settlement.epoch_id,
                "merkle_root": settlement.merkle_root,
                "service_class": settlement.service_class,
                "totals": settlement.totals.to_dict(),
                "window_closes_at": self._ledger.window_closes_at(epoch_id).isoformat(),
            }, True
        return self._execute(EventKind.SETTLEMENT_COMMITTED, caller, _op, now)

    def commit_payload(
        self,
        caller: str,
        payload: dict[str, Any],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Commit from the aggregator's wire form.

        Expected shape: {epochId, merkleRoot, totals: {...}, serviceClass}.
        """
        try:
            epoch_id = payload["epochId"]
            merkle_root = payload["merkleRoot"]
            service_class = payload["serviceClass"]
            totals = SettlementTotals.from_payload(payload["totals"])
        except KeyError as e:
            return ServiceResult(success=False, errors=[f"Commitment missing field: {e}"])
        except ValidationError as e:
            return self._failure(e)
        return self.commit_settlement(caller, epoch_id, merkle_root, totals, service_class, now=now)

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
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            dispute = self._ledger.raise_dispute(
                challenger, epoch_id, kind, entity_id, modality,
                claimed_amount, proof, stake, now=now,
            )
            return {
                "dispute_id": dispute.dispute_id,
                "epoch_id": epoch_id,
                "kind": kind.value,
                "entity_id": entity_id,
                "claimed_amount": str(claimed_amount),
                "stake": str(stake),
            }, True
        return self._execute(EventKind.DISPUTE_RAISED, challenger, _op, now)

    def resolve_dispute(
        self,
        caller: str,
        dispute_id: str,
        verdict: Verdict,
        corrected_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            resolution = self._arbitrator.resolve_dispute(
                caller, dispute_id, verdict, corrected_amount, now=now,
            )
            settlement = resolution.settlement
            return {
                "dispute_id": dispute_id,
                "epoch_id": settlement.epoch_id,
                "verdict": verdict.value,
                "corrected_amount": (
                    str(resolution.dispute.corrected_amount)
                    if resolution.dispute.corrected_amount is not None else None
                ),
                "compensation": str(resolution.compensation),
                "slashed": str(resolution.slashed),
                "settlement_state": settlement.state.value,
                "totals": settlement.totals.to_dict(),
            }, True
        return self._execute(EventKind.DISPUTE_RESOLVED, caller, _op, now)

    def finalize_settlement(
        self,
        caller: str,
        epoch_id: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Finalize an epoch. Open to any caller; repeated calls are no-ops."""
        def _op() -> tuple[dict[str, Any], bool]:
            settlement, changed = self._ledger.finalize_settlement(epoch_id, now=now)
            return {
                "epoch_id": epoch_id,
                "provider_reward": str(settlement.totals.provider_reward),
                "user_payment": str(settlement.totals.user_payment),
            }, changed
        return self._execute(EventKind.SETTLEMENT_FINALIZED, caller, _op, now)

    def cancel_settlement(
        self,
        caller: str,
        epoch_id: int,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            settlement = self._ledger.cancel_settlement(caller, epoch_id, now=now)
            return {
                "epoch_id": epoch_id,
                "pending_disputes": settlement.open_dispute_count,
            }, True
        return self._execute(EventKind.SETTLEMENT_CANCELLED, caller, _op, now)

    # ------------------------------------------------------------------
    # Distribution
    # ------------------------------------------------------------------

    def claim_reward(
        self,
        epoch_id: int,
        entity_id: str,
        modality: Modality,
        amount: Decimal,
        proof: Sequence[str],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        def _op() -> tuple[dict[str, Any], bool]:
            record = self._distributor.claim_reward(
                epoch_id, entity_id, modality, amount, proof, now=now,
            )
            return record.to_dict(), True
        return self._execute(EventKind.REWARD_CLAIMED, entity_id, _op, now)

    def batch_distribute(
        self,
        epoch_id: int,
        requests: Iterable[ClaimRequest],
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Claim for many entities. Entries succeed or fail independently."""
        outcomes: list[dict[str, Any]] = []
        for request in requests:
            result = self.claim_reward(
                epoch_id, request.entity_id, request.modality,
                request.amount, request.proof, now=now,
            )
            outcomes.append({
                "entity_id": request.entity_id,
                "success": result.success,
                "errors": result.errors,
            })
        paid = sum(1 for o in outcomes if o["success"])
        return ServiceResult(
            success=True,
            data={"epoch_id": epoch_id, "paid": paid, "failed": len(outcomes) - paid,
                  "outcomes": outcomes},
        )

    # ------------------------------------------------------------------
    # Anchoring
    # ------------------------------------------------------------------

    def anchor_settlement(
        self,
        caller: str,
        epoch_id: int,
        rpc_url: str,
        private_key: str,
        chain_id: int = 11155111,
        gas_price_gwei: str = "2",
    ) -> ServiceResult:
        """Anchor a finalized settlement root on chain and record the transaction."""
        settlement = self._ledger.get_settlement(epoch_id)
        if settlement is None:
            return ServiceResult(success=False, errors=[f"Unknown epoch: {epoch_id}"])
        try:
            record = anchor_settlement(
                settlement, rpc_url, private_key,
                chain_id=chain_id, gas_price_gwei=gas_price_gwei,
            )
        except SettlementError as e:
            return self._failure(e)
        except (OSError, RuntimeError) as e:
            return ServiceResult(success=False, errors=[f"Anchoring failed: {e}"])

        def _op() -> tuple[dict[str, Any], bool]:
            return record.to_dict(), True
        return self._execute(EventKind.SETTLEMENT_ANCHORED, caller, _op)

    # ------------------------------------------------------------------
    # Status and queries
    # ------------------------------------------------------------------

    def get_settlement(self, epoch_id: int) -> Optional[Settlement]:
        return self._ledger.get_settlement(epoch_id)

    def get_dispute(self, dispute_id: str) -> Optional[Dispute]:
        return self._ledger.get_dispute(dispute_id)

    def disputes_for_epoch(self, epoch_id: int) -> list[Dispute]:
        return self._ledger.disputes_for_epoch(epoch_id)

    def claim_record(self, epoch_id: int, entity_id: str) -> Optional[ClaimRecord]:
        return self._distributor.claim_record(epoch_id, entity_id)

    def balance_of(self, account: str) -> Decimal:
        return self._balances.balance_of(account)

    def status(self) -> dict[str, Any]:
        """Return system-wide status summary."""
        settlements = self._ledger.settlements()
        by_state: dict[str, int] = {}
        for s in settlements:
            by_state[s.state.value] = by_state.get(s.state.value, 0) + 1
        return {
            "version": __version__,
            "paused": self._ledger.paused,
            "settlements": {
                "total": len(settlements),
                "latest_epoch": self._ledger.latest_epoch,
                "by_state": by_state,
            },
            "disputes": {
                "pending": len(self._ledger.pending_disputes()),
            },
            "claims": self._distributor.claim_count,
            "service_classes": self._pricing.service_classes(),
            "accounts": {
                "stake_escrow": str(self._balances.balance_of(STAKE_ESCROW_ACCOUNT)),
                "fee_pool": str(self._balances.balance_of(FEE_POOL_ACCOUNT)),
            },
            "events": self._event_log.count if self._event_log is not None else 0,
            "persistence_degraded": self._persistence_degraded,
        }

    def check_invariants(self) -> list[str]:
        """Cross-check ledger, claims and balances. Empty means consistent."""
        errors: list[str] = []
        tol = self._params.rounding_tolerance
        pending_stakes = Decimal("0")

        for s in self._ledger.settlements():
            disputes = self._ledger.disputes_for_epoch(s.epoch_id)
            pending = [d for d in disputes if d.is_pending]
            pending_stakes += sum((d.stake for d in pending), Decimal("0"))
            label = f"epoch {s.epoch_id}"

            if s.open_dispute_count != len(pending):
                errors.append(
                    f"{label}: open_dispute_count {s.open_dispute_count} != "
                    f"{len(pending)} pending disputes"
                )
            if s.state == SettlementState.DISPUTED and not pending:
                errors.append(f"{label}: DISPUTED with no pending disputes")
            if s.state in (SettlementState.OPEN, SettlementState.FINALIZED) and pending:
                errors.append(f"{label}: {s.state.value} with pending disputes")
            if s.totals.imbalance() > tol:
                errors.append(f"{label}: providerReward + platformFee != userPayment")
            if not Decimal("0") <= s.fee_reserve <= s.committed_totals.platform_fee:
                errors.append(f"{label}: fee reserve {s.fee_reserve} out of range")

            claims = self._distributor.claims_for_epoch(s.epoch_id)
            claimed = sum((c.amount for c in claims), Decimal("0"))
            if claims and s.state != SettlementState.FINALIZED:
                errors.append(f"{label}: claims recorded against a {s.state.value} settlement")
            if claimed != s.distributed_total:
                errors.append(
                    f"{label}: distributed_total {s.distributed_total} != claimed {claimed}"
                )
            if s.distributed_total > s.totals.provider_reward:
                errors.append(f"{label}: distributed beyond provider reward")

        escrow = self._balances.balance_of(STAKE_ESCROW_ACCOUNT)
        if escrow != pending_stakes:
            errors.append(f"stake escrow {escrow} != pending stakes {pending_stakes}")
        return errors

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _execute(
        self,
        kind: EventKind,
        actor_id: str,
        operation: _Operation,
        now: Optional[datetime] = None,
    ) -> ServiceResult:
        """Run one operation with audit recording.

        Fail-closed: if the audit append fails, the in-memory state is
        restored to the snapshot taken before the operation.
        """
        snapshot = self._snapshot() if self._event_log is not None else None
        try:
            payload, changed = operation()
        except SettlementError as e:
            return self._failure(e)

        if not changed:
            return ServiceResult(success=True, data={**payload, "changed": False})

        err = self._record_event(kind, actor_id, payload, now)
        if err:
            if snapshot is not None:
                self._restore(snapshot)
            logger.error("Rolled back %s: %s", kind.value, err)
            return ServiceResult(success=False, errors=[err])

        # Audit event committed: in-memory state stays
        warning = self._safe_persist_post_audit()
        data: dict[str, Any] = {**payload, "changed": True}
        if warning:
            data["warning"] = warning
        return ServiceResult(success=True, data=data)

    @staticmethod
    def _failure(error: SettlementError) -> ServiceResult:
        return ServiceResult(
            success=False,
            errors=[str(error)],
            data={"error_type": type(error).__name__, **error.details},
        )

    def _next_event_id(self) -> str:
        """Generate a monotonically increasing unique event ID."""
        self._event_counter += 1
        return f"EVT-{self._event_counter:08d}"

    def _record_event(
        self,
        kind: EventKind,
        actor_id: str,
        payload: dict[str, Any],
        now: Optional[datetime],
    ) -> Optional[str]:
        """Append an audit event. Returns error string or None."""
        if self._event_log is None:
            return None
        try:
            event = EventRecord.create(
                event_id=self._next_event_id(),
                event_kind=kind,
                actor_id=actor_id,
                payload=payload,
                timestamp_utc=now,
            )
            self._event_log.append(event)
        except (ValueError, OSError) as e:
            return f"Event log failure: {e}"
        return None

    def _snapshot(self) -> dict[str, Any]:
        return {
            "roles": self._roles.to_records(),
            "policies": self._pricing.to_records(),
            "balances": self._balances.to_records(),
            "ledger": self._ledger.to_records(),
            "claims": self._distributor.to_records(),
        }

    def _restore(self, sections: dict[str, Any]) -> None:
        if "roles" in sections:
            self._roles.load_records(sections["roles"])
        if "policies" in sections:
            self._pricing.load_records(sections["policies"])
        if "balances" in sections:
            self._balances.load_records(sections["balances"])
        if "ledger" in sections:
            self._ledger.load_records(sections["ledger"])
        if "claims" in sections:
            self._distributor.load_records(sections["claims"])

    def _persist_state(self) -> None:
        """Persist current state to the state store (if wired). Can raise OSError."""
        if self._state_store is None:
            return
        self._state_store.save(self._snapshot())

    def _safe_persist_post_audit(self) -> Optional[str]:
        """Persist state after the audit event has been committed.

        MUST NOT rollback in-memory state — the audit trail is already
        durable. On failure the in-memory state stays correct, the
        StateStore is stale, and _persistence_degraded is set.
        """
        try:
            self._persist_state()
            return None
        except OSError as e:
            self._persistence_degraded = True
            logger.warning("State store write failed after audit: %s", e)
            return f"Persistence degraded: {e} — state committed in audit trail but StateStore is stale"
