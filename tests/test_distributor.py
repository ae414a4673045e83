"""Tests for the payment distributor — single-shot claims, caps, re-entrancy."""

import random

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from epochpay.crypto.merkle import SettlementTreeBuilder
from epochpay.errors import (
    AlreadyClaimed,
    DistributionExhausted,
    InvalidAmount,
    InvalidProof,
    LedgerPaused,
    SettlementNotFinalized,
    UnknownEpoch,
)
from epochpay.governance.roles import Role, RoleRegistry
from epochpay.ledger.arbitrator import DisputeArbitrator
from epochpay.ledger.balances import InMemoryBalanceLedger
from epochpay.ledger.distributor import ClaimRequest, PaymentDistributor
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.models.dispute import DisputeKind, Verdict
from epochpay.models.pricing import PricingPolicy
from epochpay.models.settlement import Modality, SettlementTotals
from epochpay.params import SettlementParams
from epochpay.pricing.store import PricingPolicyStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(seconds=86_400)

SPLIT = [
    ("provider-a", Modality.TEXT, "60"),
    ("provider-b", Modality.IMAGE, "30"),
    ("provider-c", Modality.VIDEO, "10"),
]


def _setup(
    entries=SPLIT,
    balances: Optional[InMemoryBalanceLedger] = None,
    finalize: bool = True,
) -> tuple[SettlementLedger, PaymentDistributor, SettlementTreeBuilder]:
    params = SettlementParams()
    roles = RoleRegistry("admin")
    roles.grant("admin", "aggregator", Role.COMMITTER)
    roles.grant("admin", "arbiter", Role.ARBITER)
    pricing = PricingPolicyStore(params, roles)
    pricing.set_policy(
        "admin", "standard",
        PricingPolicy(unit_price=Decimal("1.05"), provider_share_bps=9524, platform_share_bps=476),
        effective_at=T0, now=T0,
    )
    ledger = SettlementLedger(params, pricing, roles, balances or InMemoryBalanceLedger())

    tree = SettlementTreeBuilder(epoch_id=1)
    for entity_id, modality, amount in entries:
        tree.add_entry(entity_id, modality, Decimal(amount))
    tree.build()
    ledger.commit_settlement(
        "aggregator", 1, tree.root,
        SettlementTotals(
            text_calls=Decimal("100"), image_count=Decimal("0"), video_seconds=Decimal("0"),
            provider_reward=Decimal("100"), platform_fee=Decimal("5"), user_payment=Decimal("105"),
        ),
        "standard", now=T0,
    )
    if finalize:
        ledger.finalize_settlement(1, now=T0 + WINDOW)
    return ledger, PaymentDistributor(ledger), tree


class TestClaim:
    def test_claim_pays_once(self) -> None:
        ledger, distributor, tree = _setup()
        record = distributor.claim_reward(
            1, "provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a"),
            now=T0 + WINDOW,
        )
        assert record.claimed is True
        assert record.amount == Decimal("60")
        assert ledger.balances.balance_of("provider-a") == Decimal("60")
        assert ledger.get_settlement(1).distributed_total == Decimal("60")
        assert distributor.is_claimed(1, "provider-a")

        with pytest.raises(AlreadyClaimed):
            distributor.claim_reward(
                1, "provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a"),
            )
        assert ledger.balances.balance_of("provider-a") == Decimal("60")

    def test_wrong_amount_is_invalid_proof(self) -> None:
        ledger, distributor, tree = _setup()
        with pytest.raises(InvalidProof):
            distributor.claim_reward(
                1, "provider-a", Modality.TEXT, Decimal("61"), tree.inclusion_proof("provider-a"),
            )
        assert not distributor.is_claimed(1, "provider-a")

    def test_wrong_modality_is_invalid_proof(self) -> None:
        _, distributor, tree = _setup()
        with pytest.raises(InvalidProof):
            distributor.claim_reward(
                1, "provider-a", Modality.IMAGE, Decimal("60"), tree.inclusion_proof("provider-a"),
            )

    def test_open_settlement_not_claimable(self) -> None:
        _, distributor, tree = _setup(finalize=False)
        with pytest.raises(SettlementNotFinalized):
            distributor.claim_reward(
                1, "provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a"),
            )

    def test_unknown_epoch(self) -> None:
        _, distributor, tree = _setup()
        with pytest.raises(UnknownEpoch):
            distributor.claim_reward(
                9, "provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a"),
            )

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("NaN"), 60])
    def test_non_positive_amount(self, amount) -> None:
        _, distributor, tree = _setup()
        with pytest.raises(InvalidAmount):
            distributor.claim_reward(
                1, "provider-a", Modality.TEXT, amount, tree.inclusion_proof("provider-a"),
            )

    def test_paused_ledger(self) -> None:
        ledger, distributor, tree = _setup()
        ledger.pause("admin")
        with pytest.raises(LedgerPaused):
            distributor.claim_reward(
                1, "provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a"),
            )

    def test_cap_at_provider_reward(self) -> None:
        entries = [("provider-a", Modality.TEXT, "100"), ("provider-b", Modality.TEXT, "10")]
        ledger, distributor, tree = _setup(entries)
        distributor.claim_reward(
            1, "provider-a", Modality.TEXT, Decimal("100"), tree.inclusion_proof("provider-a"),
        )
        with pytest.raises(DistributionExhausted):
            distributor.claim_reward(
                1, "provider-b", Modality.TEXT, Decimal("10"), tree.inclusion_proof("provider-b"),
            )
        assert ledger.get_settlement(1).distributed_total == Decimal("100")
        assert not distributor.is_claimed(1, "provider-b")


class TestCorrectedEntries:
    def _dispute_and_uphold(self, ledger, tree, corrected: str) -> None:
        ledger.balances.credit("alice", Decimal("50"))
        dispute = ledger.raise_dispute(
            "alice", 1, DisputeKind.WRONG_COUNT, "provider-a", Modality.TEXT,
            Decimal("100"), tree.inclusion_proof("provider-a"), Decimal("10"),
            now=T0 + timedelta(hours=1),
        )
        DisputeArbitrator(ledger).resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal(corrected),
            now=T0 + timedelta(hours=2),
        )
        ledger.finalize_settlement(1, now=T0 + WINDOW)

    def test_corrected_amount_paid(self) -> None:
        ledger, distributor, tree = _setup(
            [("provider-a", Modality.TEXT, "100")], finalize=False,
        )
        self._dispute_and_uphold(ledger, tree, "107")
        proof = tree.inclusion_proof("provider-a")

        with pytest.raises(InvalidProof):
            distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("100"), proof)
        record = distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("107"), proof)
        assert record.amount == Decimal("107")
        assert ledger.balances.balance_of("provider-a") == Decimal("107")
        with pytest.raises(AlreadyClaimed):
            distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("107"), proof)

    def test_corrected_claim_still_needs_committed_proof(self) -> None:
        ledger, distributor, tree = _setup(
            [("provider-a", Modality.TEXT, "100")], finalize=False,
        )
        self._dispute_and_uphold(ledger, tree, "107")
        with pytest.raises(InvalidProof):
            distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("107"), ())

    def test_missing_entry_claimable_without_proof(self) -> None:
        ledger, distributor, tree = _setup(
            [("provider-a", Modality.TEXT, "100")], finalize=False,
        )
        ledger.balances.credit("alice", Decimal("50"))
        dispute = ledger.raise_dispute(
            "alice", 1, DisputeKind.MISSING_ENTRY, "provider-b", Modality.IMAGE,
            Decimal("0"), tree.non_inclusion_proof("provider-b"), Decimal("10"),
            now=T0 + timedelta(hours=1),
        )
        DisputeArbitrator(ledger).resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("4"),
        )
        ledger.finalize_settlement(1, now=T0 + WINDOW)
        record = distributor.claim_reward(1, "provider-b", Modality.IMAGE, Decimal("4"), ())
        assert record.amount == Decimal("4")


class _ReentrantLedger(InMemoryBalanceLedger):
    """Claims again from inside the credit callback."""

    def __init__(self) -> None:
        super().__init__()
        self.distributor: Optional[PaymentDistributor] = None
        self.proof: tuple[str, ...] = ()
        self.inner_errors: list[Exception] = []

    def credit(self, account: str, amount: Decimal, memo: str = "") -> None:
        if self.distributor is not None and memo.startswith("reward"):
            try:
                self.distributor.claim_reward(1, account, Modality.TEXT, amount, self.proof)
            except AlreadyClaimed as e:
                self.inner_errors.append(e)
        super().credit(account, amount, memo)


class _FailingLedger(InMemoryBalanceLedger):
    def __init__(self) -> None:
        super().__init__()
        self.fail_next = True

    def credit(self, account: str, amount: Decimal, memo: str = "") -> None:
        if self.fail_next:
            self.fail_next = False
            raise RuntimeError("balance backend unavailable")
        super().credit(account, amount, memo)


class TestCreditOrdering:
    def test_reentrant_claim_sees_record(self) -> None:
        balances = _ReentrantLedger()
        ledger, distributor, tree = _setup(balances=balances)
        balances.distributor = distributor
        balances.proof = tree.inclusion_proof("provider-a")

        distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("60"), balances.proof)
        assert len(balances.inner_errors) == 1
        assert balances.balance_of("provider-a") == Decimal("60")
        assert ledger.get_settlement(1).distributed_total == Decimal("60")

    def test_failed_credit_leaves_no_record(self) -> None:
        balances = _FailingLedger()
        ledger, distributor, tree = _setup(balances=balances)
        proof = tree.inclusion_proof("provider-a")

        with pytest.raises(RuntimeError, match="unavailable"):
            distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("60"), proof)
        assert not distributor.is_claimed(1, "provider-a")
        assert ledger.get_settlement(1).distributed_total == Decimal("0")

        distributor.claim_reward(1, "provider-a", Modality.TEXT, Decimal("60"), proof)
        assert balances.balance_of("provider-a") == Decimal("60")


class TestBatch:
    def test_partial_success(self) -> None:
        ledger, distributor, tree = _setup()
        requests = [
            ClaimRequest("provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a")),
            ClaimRequest("provider-b", Modality.IMAGE, Decimal("31"), tree.inclusion_proof("provider-b")),
            ClaimRequest("provider-a", Modality.TEXT, Decimal("60"), tree.inclusion_proof("provider-a")),
            ClaimRequest("provider-c", Modality.VIDEO, Decimal("10"), tree.inclusion_proof("provider-c")),
        ]
        outcomes = distributor.batch_distribute(1, requests, now=T0 + WINDOW)

        assert [o.success for o in outcomes] == [True, False, False, True]
        assert outcomes[1].error_type == "InvalidProof"
        assert outcomes[2].error_type == "AlreadyClaimed"
        assert outcomes[3].record.amount == Decimal("10")
        assert ledger.get_settlement(1).distributed_total == Decimal("70")
        assert distributor.claim_count == 2

    def test_random_order_pays_each_entity_once(self) -> None:
        rng = random.Random(20260301)
        entries = [(f"provider-{i:02d}", Modality.TEXT, "4") for i in range(25)]
        ledger, distributor, tree = _setup(entries)
        attempts = [
            ClaimRequest(eid, Modality.TEXT, Decimal("4"), tree.inclusion_proof(eid))
            for eid, _, _ in entries
        ] * 3
        rng.shuffle(attempts)

        outcomes = distributor.batch_distribute(1, attempts)

        assert sum(1 for o in outcomes if o.success) == 25
        assert all(o.error_type == "AlreadyClaimed" for o in outcomes if not o.success)
        for eid, _, _ in entries:
            assert ledger.balances.balance_of(eid) == Decimal("4")
        assert ledger.get_settlement(1).distributed_total == Decimal("100")


class TestRecords:
    def test_roundtrip(self) -> None:
        ledger, distributor, tree = _setup()
        distributor.claim_reward(
            1, "provider-b", Modality.IMAGE, Decimal("30"), tree.inclusion_proof("provider-b"),
            now=T0 + WINDOW,
        )
        restored = PaymentDistributor(ledger)
        restored.load_records(distributor.to_records())
        assert restored.claim_record(1, "provider-b") == distributor.claim_record(1, "provider-b")
        assert [r.entity_id for r in restored.claims_for_epoch(1)] == ["provider-b"]
