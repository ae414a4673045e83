"""Ledger subsystem — settlements, dispute arbitration, reward distribution, balances."""

from epochpay.ledger.balances import (
    FEE_POOL_ACCOUNT,
    STAKE_ESCROW_ACCOUNT,
    BalanceLedger,
    InMemoryBalanceLedger,
    transfer,
)
from epochpay.ledger.settlement_ledger import SettlementLedger
from epochpay.ledger.arbitrator import DisputeArbitrator, Resolution
from epochpay.ledger.distributor import ClaimOutcome, ClaimRequest, PaymentDistributor

__all__ = [
    "FEE_POOL_ACCOUNT",
    "STAKE_ESCROW_ACCOUNT",
    "BalanceLedger",
    "InMemoryBalanceLedger",
    "transfer",
    "SettlementLedger",
    "DisputeArbitrator",
    "Resolution",
    "ClaimOutcome",
    "ClaimRequest",
    "PaymentDistributor",
]
