"""Settlement models — per-epoch commitments, totals, corrections and claims.

All monetary values use Decimal for exact arithmetic. No floats in finance.

Invariants enforced by these models:
- provider_reward + platform_fee == user_payment (per bucket and aggregate)
- Settlement lifecycle is a strict state machine; FINALIZED and CANCELLED
  are terminal
- Corrections never rewrite the committed totals; they are appended
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from epochpay.errors import InvalidAmount, StateConflict

ZERO = Decimal("0")


class Modality(str, enum.Enum):
    """Usage modality. Each modality is metered in its own unit."""
    TEXT = "text"        # calls
    IMAGE = "image"      # images
    VIDEO = "video"      # seconds


class SettlementState(str, enum.Enum):
    """Lifecycle state of a settlement.

    State machine:
        OPEN → DISPUTED → OPEN → FINALIZED
        OPEN → FINALIZED
        OPEN | DISPUTED → CANCELLED   (emergency, admin only)
    """
    OPEN = "open"
    DISPUTED = "disputed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


SETTLEMENT_TRANSITIONS: Dict[SettlementState, frozenset] = {
    SettlementState.OPEN: frozenset({
        SettlementState.DISPUTED,
        SettlementState.FINALIZED,
        SettlementState.CANCELLED,
    }),
    SettlementState.DISPUTED: frozenset({
        SettlementState.OPEN,
        SettlementState.CANCELLED,
    }),
    SettlementState.FINALIZED: frozenset(),
    SettlementState.CANCELLED: frozenset(),
}


def _dec(value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except ArithmeticError as e:
        raise InvalidAmount(f"Not a decimal amount: {value!r}") from e
    if not result.is_finite():
        raise InvalidAmount(f"Amount must be finite, got {value!r}")
    return result


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ModalityTotals:
    """Aggregate usage and money for one modality bucket."""
    usage: Decimal
    provider_reward: Decimal
    platform_fee: Decimal
    user_payment: Decimal

    def imbalance(self) -> Decimal:
        return abs(self.provider_reward + self.platform_fee - self.user_payment)

    def amounts(self) -> tuple[Decimal, ...]:
        return (self.usage, self.provider_reward, self.platform_fee, self.user_payment)

    def to_dict(self) -> dict[str, str]:
        return {
            "usage": str(self.usage),
            "provider_reward": str(self.provider_reward),
            "platform_fee": str(self.platform_fee),
            "user_payment": str(self.user_payment),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ModalityTotals:
        return ModalityTotals(
            usage=_dec(data.get("usage", "0")),
            provider_reward=_dec(data["provider_reward"]),
            platform_fee=_dec(data["platform_fee"]),
            user_payment=_dec(data["user_payment"]),
        )


# Aggregator payloads use camelCase; persisted records use snake_case.
_PAYLOAD_KEYS = {
    "text_calls": ("textCalls", "text_calls"),
    "image_count": ("imageCount", "image_count"),
    "video_seconds": ("videoSeconds", "video_seconds"),
    "provider_reward": ("providerReward", "provider_reward"),
    "platform_fee": ("platformFee", "platform_fee"),
    "user_payment": ("userPayment", "user_payment"),
}


@dataclass(frozen=True)
class SettlementTotals:
    """Per-epoch aggregate totals as committed by the aggregator.

    ``by_modality`` is optional. When present, every bucket must balance
    and the buckets must sum to the aggregate fields.
    """
    text_calls: Decimal
    image_count: Decimal
    video_seconds: Decimal
    provider_reward: Decimal
    platform_fee: Decimal
    user_payment: Decimal
    by_modality: Dict[Modality, ModalityTotals] = field(default_factory=dict, hash=False)

    def usage_for(self, modality: Modality) -> Decimal:
        return {
            Modality.TEXT: self.text_calls,
            Modality.IMAGE: self.image_count,
            Modality.VIDEO: self.video_seconds,
        }[modality]

    def imbalance(self) -> Decimal:
        return abs(self.provider_reward + self.platform_fee - self.user_payment)

    def amounts(self) -> tuple[Decimal, ...]:
        return (
            self.text_calls, self.image_count, self.video_seconds,
            self.provider_reward, self.platform_fee, self.user_payment,
        )

    def with_entry_shift(self, modality: Modality, shift: Decimal) -> SettlementTotals:
        """Return totals corrected by ``shift`` on one ``modality`` entry.

        Provider reward and user payment move together, so the platform fee
        stays put and every bucket still balances. Only the bucket of
        ``modality`` changes; the others stay as committed.
        """
        by_modality = dict(self.by_modality)
        if by_modality:
            bucket = by_modality.get(modality) or ModalityTotals(
                usage=self.usage_for(modality),
                provider_reward=ZERO,
                platform_fee=ZERO,
                user_payment=ZERO,
            )
            corrected = replace(
                bucket,
                provider_reward=bucket.provider_reward + shift,
                user_payment=bucket.user_payment + shift,
            )
            if corrected.provider_reward < ZERO:
                raise InvalidAmount(
                    f"Correction would make the {modality.value} bucket providerReward "
                    f"negative ({bucket.provider_reward} + {shift})",
                )
            by_modality[modality] = corrected
        return replace(
            self,
            provider_reward=self.provider_reward + shift,
            user_payment=self.user_payment + shift,
            by_modality=by_modality,
        )

    @staticmethod
    def from_payload(payload: dict[str, Any]) -> SettlementTotals:
        """Parse aggregator totals (camelCase or snake_case keys)."""
        values: dict[str, Decimal] = {}
        for name, aliases in _PAYLOAD_KEYS.items():
            raw = next((payload[k] for k in aliases if k in payload), None)
            if raw is None:
                if name in ("text_calls", "image_count", "video_seconds"):
                    raw = "0"
                else:
                    raise InvalidAmount(f"Totals missing required field: {aliases[0]}")
            values[name] = _dec(raw)

        buckets_raw = payload.get("byModality", payload.get("by_modality")) or {}
        buckets: Dict[Modality, ModalityTotals] = {}
        for key, bucket in buckets_raw.items():
            try:
                modality = Modality(key)
            except ValueError as e:
                raise InvalidAmount(f"Unknown modality in totals: {key}") from e
            buckets[modality] = ModalityTotals.from_dict(
                {
                    "usage": bucket.get("usage", "0"),
                    "provider_reward": bucket.get("providerReward", bucket.get("provider_reward")),
                    "platform_fee": bucket.get("platformFee", bucket.get("platform_fee")),
                    "user_payment": bucket.get("userPayment", bucket.get("user_payment")),
                }
            )
        return SettlementTotals(**values, by_modality=buckets)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text_calls": str(self.text_calls),
            "image_count": str(self.image_count),
            "video_seconds": str(self.video_seconds),
            "provider_reward": str(self.provider_reward),
            "platform_fee": str(self.platform_fee),
            "user_payment": str(self.user_payment),
            "by_modality": {m.value: b.to_dict() for m, b in self.by_modality.items()},
        }


@dataclass(frozen=True)
class TotalsCorrection:
    """A correction recorded by an upheld dispute.

    Covers one entity's entry and the aggregate it shifts.
    ``committed_entry_amount`` is the leaf amount under the root, or None
    when the entry was missing from the tree.
    """
    dispute_id: str
    entity_id: str
    modality: Modality
    committed_entry_amount: Optional[Decimal]
    corrected_entry_amount: Decimal
    previous_provider_reward: Decimal
    corrected_provider_reward: Decimal
    previous_user_payment: Decimal
    corrected_user_payment: Decimal
    recorded_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispute_id": self.dispute_id,
            "entity_id": self.entity_id,
            "modality": self.modality.value,
            "committed_entry_amount": (
                str(self.committed_entry_amount)
                if self.committed_entry_amount is not None else None
            ),
            "corrected_entry_amount": str(self.corrected_entry_amount),
            "previous_provider_reward": str(self.previous_provider_reward),
            "corrected_provider_reward": str(self.corrected_provider_reward),
            "previous_user_payment": str(self.previous_user_payment),
            "corrected_user_payment": str(self.corrected_user_payment),
            "recorded_at": self.recorded_at.isoformat(),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> TotalsCorrection:
        committed = data.get("committed_entry_amount")
        return TotalsCorrection(
            dispute_id=data["dispute_id"],
            entity_id=data["entity_id"],
            modality=Modality(data["modality"]),
            committed_entry_amount=Decimal(committed) if committed is not None else None,
            corrected_entry_amount=Decimal(data["corrected_entry_amount"]),
            previous_provider_reward=Decimal(data["previous_provider_reward"]),
            corrected_provider_reward=Decimal(data["corrected_provider_reward"]),
            previous_user_payment=Decimal(data["previous_user_payment"]),
            corrected_user_payment=Decimal(data["corrected_user_payment"]),
            recorded_at=datetime.fromisoformat(data["recorded_at"]),
        )


@dataclass
class Settlement:
    """One epoch's commitment.

    Mutable while OPEN or DISPUTED — dispute raise and resolve change the
    counters, reserve and effective totals. ``committed_totals`` never
    changes after commit.
    """
    epoch_id: int
    merkle_root: str
    totals: SettlementTotals
    committed_totals: SettlementTotals
    service_class: str
    committed_at: datetime
    committer_id: str
    fee_reserve: Decimal
    state: SettlementState = SettlementState.OPEN
    open_dispute_count: int = 0
    distributed_total: Decimal = ZERO
    corrections: list[TotalsCorrection] = field(default_factory=list)
    finalized_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def transition_to(self, new_state: SettlementState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = SETTLEMENT_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise StateConflict(
                f"Invalid settlement transition: {self.state.value} → {new_state.value}",
                {"epoch_id": self.epoch_id},
            )
        self.state = new_state

    @property
    def is_terminal(self) -> bool:
        return self.state in (SettlementState.FINALIZED, SettlementState.CANCELLED)

    def entry_correction(self, entity_id: str) -> Optional[TotalsCorrection]:
        """Latest upheld correction for ``entity_id``, if any."""
        for correction in reversed(self.corrections):
            if correction.entity_id == entity_id:
                return correction
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "merkle_root": self.merkle_root,
            "totals": self.totals.to_dict(),
            "committed_totals": self.committed_totals.to_dict(),
            "service_class": self.service_class,
            "committed_at": self.committed_at.isoformat(),
            "committer_id": self.committer_id,
            "fee_reserve": str(self.fee_reserve),
            "state": self.state.value,
            "open_dispute_count": self.open_dispute_count,
            "distributed_total": str(self.distributed_total),
            "corrections": [c.to_dict() for c in self.corrections],
            "finalized_at": _iso(self.finalized_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> Settlement:
        return Settlement(
            epoch_id=int(data["epoch_id"]),
            merkle_root=data["merkle_root"],
            totals=SettlementTotals.from_payload(data["totals"]),
            committed_totals=SettlementTotals.from_payload(data["committed_totals"]),
            service_class=data["service_class"],
            committed_at=datetime.fromisoformat(data["committed_at"]),
            committer_id=data["committer_id"],
            fee_reserve=Decimal(data["fee_reserve"]),
            state=SettlementState(data["state"]),
            open_dispute_count=int(data.get("open_dispute_count", 0)),
            distributed_total=Decimal(data.get("distributed_total", "0")),
            corrections=[TotalsCorrection.from_dict(c) for c in data.get("corrections", [])],
            finalized_at=_dt(data.get("finalized_at")),
            cancelled_at=_dt(data.get("cancelled_at")),
        )


@dataclass(frozen=True)
class ClaimRecord:
    """Proof that (epoch_id, entity_id) has been paid. Single-shot."""
    epoch_id: int
    entity_id: str
    modality: Modality
    amount: Decimal
    claimed_at: datetime
    claimed: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "entity_id": self.entity_id,
            "modality": self.modality.value,
            "amount": str(self.amount),
            "claimed_at": self.claimed_at.isoformat(),
            "claimed": self.claimed,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ClaimRecord:
        return ClaimRecord(
            epoch_id=int(data["epoch_id"]),
            entity_id=data["entity_id"],
            modality=Modality(data["modality"]),
            amount=Decimal(data["amount"]),
            claimed_at=datetime.fromisoformat(data["claimed_at"]),
            claimed=bool(data.get("claimed", True)),
        )
