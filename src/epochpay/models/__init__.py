"""Core data models for the settlement ledger."""

from epochpay.models.settlement import (
    ClaimRecord,
    Modality,
    ModalityTotals,
    Settlement,
    SettlementState,
    SettlementTotals,
    TotalsCorrection,
)
from epochpay.models.dispute import Dispute, DisputeKind, DisputeStatus, Verdict
from epochpay.models.pricing import ExpectedSplit, PricingPolicy

__all__ = [
    "ClaimRecord",
    "Modality",
    "ModalityTotals",
    "Settlement",
    "SettlementState",
    "SettlementTotals",
    "TotalsCorrection",
    "Dispute",
    "DisputeKind",
    "DisputeStatus",
    "Verdict",
    "ExpectedSplit",
    "PricingPolicy",
]
