"""Tests for the dispute arbitrator — stake outcomes, compensation, corrections."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from epochpay.crypto.merkle import SettlementTreeBuilder
from epochpay.errors import (
    AccessDenied,
    DisputeAlreadyResolved,
    InsufficientReserve,
    InvalidAmount,
    UnknownDispute,
)
from epochpay.governance.roles import Role, RoleRegistry
from epochpay.ledger.arbitrator import DisputeArbitrator
from epochpay.ledger.balances import (
    FEE_POOL_ACCOUNT,
    STAKE_ESCROW_ACCOUNT,
    InMemoryBalanceLedger,
)
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.models.dispute import DisputeKind, DisputeStatus, Verdict
from epochpay.models.pricing import PricingPolicy
from epochpay.models.settlement import Modality, Settlement, SettlementState, SettlementTotals
from epochpay.params import SettlementParams
from epochpay.pricing.store import PricingPolicyStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
WINDOW = timedelta(seconds=86_400)


def _tree() -> SettlementTreeBuilder:
    builder = SettlementTreeBuilder(epoch_id=1)
    builder.add_entry("provider-a", Modality.TEXT, Decimal("100"))
    builder.build()
    return builder


@pytest.fixture
def tree() -> SettlementTreeBuilder:
    return _tree()


@pytest.fixture
def ledger(tree: SettlementTreeBuilder) -> SettlementLedger:
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
    balances = InMemoryBalanceLedger()
    balances.credit("alice", Decimal("50"))
    balances.credit("bob", Decimal("50"))
    ledger = SettlementLedger(params, pricing, roles, balances)
    ledger.commit_settlement(
        "aggregator", 1, tree.root,
        SettlementTotals(
            text_calls=Decimal("100"), image_count=Decimal("0"), video_seconds=Decimal("0"),
            provider_reward=Decimal("100"), platform_fee=Decimal("5"), user_payment=Decimal("105"),
        ),
        "standard", now=T0,
    )
    return ledger


@pytest.fixture
def arbitrator(ledger: SettlementLedger) -> DisputeArbitrator:
    return DisputeArbitrator(ledger)


def _raise(ledger: SettlementLedger, tree: SettlementTreeBuilder, challenger: str = "alice",
           hours: int = 1):
    return ledger.raise_dispute(
        challenger, 1, DisputeKind.WRONG_COUNT, "provider-a", Modality.TEXT,
        Decimal("100"), tree.inclusion_proof("provider-a"), Decimal("10"),
        now=T0 + timedelta(hours=hours),
    )


class TestUphold:
    def test_corrects_totals_and_compensates(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        resolution = arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("107"),
            now=T0 + timedelta(hours=2),
        )
        settlement = ledger.get_settlement(1)

        assert resolution.compensation == Decimal("3.5")
        assert resolution.slashed == Decimal("0")
        assert settlement.totals.provider_reward == Decimal("107")
        assert settlement.totals.platform_fee == Decimal("5")
        assert settlement.totals.user_payment == Decimal("112")
        assert settlement.committed_totals.provider_reward == Decimal("100")
        assert settlement.fee_reserve == Decimal("1.5")
        assert settlement.state == SettlementState.OPEN
        assert settlement.open_dispute_count == 0

        # 50 - 10 stake + 10 refund + 3.5 compensation
        assert ledger.balances.balance_of("alice") == Decimal("53.5")
        assert ledger.balances.balance_of(STAKE_ESCROW_ACCOUNT) == Decimal("0")

        correction = resolution.correction
        assert correction is not None
        assert correction.entity_id == "provider-a"
        assert correction.committed_entry_amount == Decimal("100")
        assert correction.corrected_entry_amount == Decimal("107")
        assert correction.previous_provider_reward == Decimal("100")
        assert correction.corrected_user_payment == Decimal("112")
        assert settlement.entry_correction("provider-a") == correction

        assert dispute.status == DisputeStatus.UPHELD
        assert dispute.resolver_id == "arbiter"
        assert dispute.corrected_amount == Decimal("107")

    def test_compensation_beyond_reserve_rejected(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        with pytest.raises(InsufficientReserve):
            arbitrator.resolve_dispute(
                "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("120"),
                now=T0 + timedelta(hours=2),
            )
        settlement = ledger.get_settlement(1)
        assert dispute.is_pending
        assert settlement.state == SettlementState.DISPUTED
        assert settlement.totals.provider_reward == Decimal("100")
        assert settlement.fee_reserve == Decimal("5")
        assert ledger.balances.balance_of(STAKE_ESCROW_ACCOUNT) == Decimal("10")

    def test_downward_correction(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        resolution = arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("96"),
        )
        assert resolution.compensation == Decimal("2")
        assert ledger.get_settlement(1).totals.provider_reward == Decimal("96")
        assert ledger.get_settlement(1).totals.user_payment == Decimal("101")

    def test_second_correction_shifts_from_first(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        first = _raise(ledger, tree)
        second = _raise(ledger, tree, challenger="bob", hours=2)
        arbitrator.resolve_dispute("arbiter", first.dispute_id, Verdict.UPHELD, Decimal("104"))
        resolution = arbitrator.resolve_dispute(
            "arbiter", second.dispute_id, Verdict.UPHELD, Decimal("106"),
        )
        assert resolution.compensation == Decimal("1")
        assert ledger.get_settlement(1).totals.provider_reward == Decimal("106")
        assert ledger.get_settlement(1).fee_reserve == Decimal("2")

    def test_missing_entry_adds_to_totals(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = ledger.raise_dispute(
            "alice", 1, DisputeKind.MISSING_ENTRY, "provider-b", Modality.IMAGE,
            Decimal("0"), tree.non_inclusion_proof("provider-b"), Decimal("10"),
            now=T0 + timedelta(hours=1),
        )
        resolution = arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("4"),
        )
        assert resolution.correction.committed_entry_amount is None
        assert resolution.compensation == Decimal("2")
        assert ledger.get_settlement(1).totals.provider_reward == Decimal("104")

    def test_negative_corrected_amount_rejected(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        with pytest.raises(InvalidAmount):
            arbitrator.resolve_dispute("arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("-1"))
        with pytest.raises(InvalidAmount):
            arbitrator.resolve_dispute("arbiter", dispute.dispute_id, Verdict.UPHELD, None)
        assert dispute.is_pending


def _bucketed(text_leaf: Decimal = Decimal("100")):
    """Ledger with a text+image settlement that carries per-modality buckets."""
    tree = SettlementTreeBuilder(epoch_id=1)
    tree.add_entry("provider-a", Modality.TEXT, text_leaf)
    tree.add_entry("provider-b", Modality.IMAGE, Decimal("100"))
    tree.build()

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
    balances = InMemoryBalanceLedger()
    balances.credit("alice", Decimal("50"))
    ledger = SettlementLedger(params, pricing, roles, balances)
    bucket = {"usage": "100", "providerReward": "100", "platformFee": "5", "userPayment": "105"}
    ledger.commit_settlement(
        "aggregator", 1, tree.root,
        SettlementTotals.from_payload({
            "textCalls": "100", "imageCount": "100",
            "providerReward": "200", "platformFee": "10", "userPayment": "210",
            "byModality": {"text": bucket, "image": bucket},
        }),
        "standard", now=T0,
    )
    dispute = ledger.raise_dispute(
        "alice", 1, DisputeKind.WRONG_COUNT, "provider-a", Modality.TEXT,
        text_leaf, tree.inclusion_proof("provider-a"), Decimal("10"),
        now=T0 + timedelta(hours=1),
    )
    return ledger, dispute


class TestBucketCorrections:
    def test_only_disputed_bucket_moves(self) -> None:
        ledger, dispute = _bucketed()
        DisputeArbitrator(ledger).resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("107"),
            now=T0 + timedelta(hours=2),
        )
        settlement = ledger.get_settlement(1)
        text = settlement.totals.by_modality[Modality.TEXT]
        image = settlement.totals.by_modality[Modality.IMAGE]

        assert (text.provider_reward, text.platform_fee, text.user_payment) == (
            Decimal("107"), Decimal("5"), Decimal("112"),
        )
        assert image == settlement.committed_totals.by_modality[Modality.IMAGE]
        assert settlement.totals.provider_reward == Decimal("207")
        assert settlement.totals.user_payment == Decimal("217")
        assert all(b.imbalance() == 0 for b in settlement.totals.by_modality.values())
        assert text.provider_reward + image.provider_reward == settlement.totals.provider_reward
        assert settlement.fee_reserve == Decimal("6.5")

    def test_buckets_survive_records_roundtrip(self) -> None:
        ledger, dispute = _bucketed()
        DisputeArbitrator(ledger).resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("96"),
            now=T0 + timedelta(hours=2),
        )
        restored = Settlement.from_dict(ledger.get_settlement(1).to_dict())
        text = restored.totals.by_modality[Modality.TEXT]
        assert text.provider_reward == Decimal("96")
        assert text.user_payment == Decimal("101")
        assert restored.totals.by_modality[Modality.IMAGE].provider_reward == Decimal("100")

    def test_negative_bucket_rejected_without_side_effects(self) -> None:
        # Leaf larger than its bucket: the aggregate stays positive, the bucket would not.
        ledger, dispute = _bucketed(text_leaf=Decimal("150"))
        before = ledger.get_settlement(1).totals
        with pytest.raises(InvalidAmount, match="text bucket"):
            DisputeArbitrator(ledger).resolve_dispute(
                "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("0"),
                now=T0 + timedelta(hours=2),
            )
        assert ledger.get_settlement(1).totals == before
        assert dispute.is_pending
        assert ledger.balances.balance_of("alice") == Decimal("40")
        assert ledger.balances.balance_of(STAKE_ESCROW_ACCOUNT) == Decimal("10")


class TestReject:
    def test_stake_slashed_to_fee_pool(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        resolution = arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.REJECTED,
        )
        assert resolution.slashed == Decimal("10")
        assert resolution.correction is None
        assert ledger.balances.balance_of("alice") == Decimal("40")
        assert ledger.balances.balance_of(FEE_POOL_ACCOUNT) == Decimal("10")
        assert ledger.get_settlement(1).totals.provider_reward == Decimal("100")
        assert ledger.get_settlement(1).state == SettlementState.OPEN


class TestIndependence:
    def test_same_leaf_disputes_judged_separately(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        upheld = _raise(ledger, tree, challenger="alice")
        rejected = _raise(ledger, tree, challenger="bob", hours=2)

        arbitrator.resolve_dispute("arbiter", upheld.dispute_id, Verdict.UPHELD, Decimal("107"))
        assert ledger.get_settlement(1).state == SettlementState.DISPUTED
        assert ledger.get_settlement(1).open_dispute_count == 1

        arbitrator.resolve_dispute("arbiter", rejected.dispute_id, Verdict.REJECTED)
        assert ledger.get_settlement(1).state == SettlementState.OPEN
        assert ledger.balances.balance_of("alice") == Decimal("53.5")
        assert ledger.balances.balance_of("bob") == Decimal("40")
        assert ledger.balances.balance_of(FEE_POOL_ACCOUNT) == Decimal("10")

    def test_resolution_after_window_allows_finalize(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.REJECTED, now=T0 + WINDOW + timedelta(hours=1),
        )
        _, changed = ledger.finalize_settlement(1, now=T0 + WINDOW + timedelta(hours=1))
        assert changed is True


class TestResolutionRules:
    def test_resolved_once(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        arbitrator.resolve_dispute("arbiter", dispute.dispute_id, Verdict.REJECTED)
        with pytest.raises(DisputeAlreadyResolved):
            arbitrator.resolve_dispute("arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("107"))
        assert ledger.get_settlement(1).open_dispute_count == 0

    def test_requires_arbiter(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        with pytest.raises(AccessDenied):
            arbitrator.resolve_dispute("alice", dispute.dispute_id, Verdict.REJECTED)
        assert dispute.is_pending

    def test_unknown_dispute(self, arbitrator: DisputeArbitrator) -> None:
        with pytest.raises(UnknownDispute):
            arbitrator.resolve_dispute("arbiter", "DSP-99999999", Verdict.REJECTED)

    def test_cancelled_settlement_refunds_stake_only(
        self, ledger: SettlementLedger, arbitrator: DisputeArbitrator,
        tree: SettlementTreeBuilder,
    ) -> None:
        dispute = _raise(ledger, tree)
        ledger.cancel_settlement("admin", 1, now=T0 + timedelta(hours=2))
        resolution = arbitrator.resolve_dispute(
            "arbiter", dispute.dispute_id, Verdict.UPHELD, Decimal("107"),
        )
        settlement = ledger.get_settlement(1)
        assert resolution.compensation == Decimal("0")
        assert resolution.correction is None
        assert settlement.state == SettlementState.CANCELLED
        assert settlement.open_dispute_count == 0
        assert settlement.totals.provider_reward == Decimal("100")
        assert ledger.balances.balance_of("alice") == Decimal("50")
