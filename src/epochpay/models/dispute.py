"""Dispute models — challenges raised against a settlement during its window.

A dispute is created PENDING when a challenger escrows a stake and submits
a proof. It is resolved exactly once:

    PENDING → UPHELD    (stake refunded plus compensation, totals corrected)
    PENDING → REJECTED  (stake slashed into the platform fee pool)
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Union

from epochpay.crypto.merkle import NonInclusionProof
from epochpay.models.settlement import Modality


class DisputeKind(str, enum.Enum):
    """What the challenger claims is wrong with the committed totals."""
    WRONG_COUNT = "wrong_count"
    WRONG_REWARD = "wrong_reward"
    MISSING_ENTRY = "missing_entry"


class DisputeStatus(str, enum.Enum):
    PENDING = "pending"
    UPHELD = "upheld"
    REJECTED = "rejected"


class Verdict(str, enum.Enum):
    """Arbiter decision on a pending dispute."""
    UPHELD = "upheld"
    REJECTED = "rejected"


DisputeProof = Union[tuple[str, ...], NonInclusionProof]


@dataclass
class Dispute:
    """A single challenge against a settlement.

    Mutable only by the arbitrator, and only while PENDING.
    """
    dispute_id: str
    epoch_id: int
    challenger: str
    kind: DisputeKind
    entity_id: str
    modality: Modality
    claimed_amount: Decimal
    proof: DisputeProof
    stake: Decimal
    raised_at: datetime
    status: DisputeStatus = DisputeStatus.PENDING
    resolved_at: Optional[datetime] = None
    resolver_id: Optional[str] = None
    corrected_amount: Optional[Decimal] = None
    compensation: Decimal = Decimal("0")

    @property
    def is_pending(self) -> bool:
        return self.status == DisputeStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        if isinstance(self.proof, NonInclusionProof):
            proof: Any = {"gap": self.proof.to_dict()}
        else:
            proof = {"path": list(self.proof)}
        return {
            "dispute_id": self.dispute_id,
            "epoch_id": self.epoch_id,
            "challenger": self.challenger,
            "kind": self.kind.value,
            "entity_id": self.entity_id,
            "modality": self.modality.value,
            "claimed_amount": str(self.claimed_amount),
            "proof": proof,
            "stake": str(self.stake),
            "raised_at": self.raised_at.isoformat(),
            "status": self.status.value,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolver_id": self.resolver_id,
            "corrected_amount": (
                str(self.corrected_amount) if self.corrected_amount is not None else None
            ),
            "compensation": str(self.compensation),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Dispute:
        raw_proof = data["proof"]
        proof: DisputeProof
        if "gap" in raw_proof:
            proof = NonInclusionProof.from_dict(raw_proof["gap"])
        else:
            proof = tuple(raw_proof.get("path", []))
        corrected = data.get("corrected_amount")
        return Dispute(
            dispute_id=data["dispute_id"],
            epoch_id=int(data["epoch_id"]),
            challenger=data["challenger"],
            kind=DisputeKind(data["kind"]),
            entity_id=data["entity_id"],
            modality=Modality(data["modality"]),
            claimed_amount=Decimal(data["claimed_amount"]),
            proof=proof,
            stake=Decimal(data["stake"]),
            raised_at=datetime.fromisoformat(data["raised_at"]),
            status=DisputeStatus(data["status"]),
            resolved_at=(
                datetime.fromisoformat(data["resolved_at"]) if data.get("resolved_at") else None
            ),
            resolver_id=data.get("resolver_id"),
            corrected_amount=Decimal(corrected) if corrected is not None else None,
            compensation=Decimal(data.get("compensation", "0")),
        )
