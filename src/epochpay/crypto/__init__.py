"""Cryptographic primitives — settlement Merkle trees and chain anchoring."""

from epochpay.crypto.merkle import (
    MAX_PROOF_DEPTH,
    NonInclusionProof,
    SettlementTreeBuilder,
    claim_leaf_hash,
    gap_leaf_hash,
    verify,
    verify_absence,
)

__all__ = [
    "MAX_PROOF_DEPTH",
    "NonInclusionProof",
    "SettlementTreeBuilder",
    "claim_leaf_hash",
    "gap_leaf_hash",
    "verify",
    "verify_absence",
]
