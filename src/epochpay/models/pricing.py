"""Pricing policy model — per-service-class reward split parameters.

Policies are versioned by ``effective_at``. A version is never mutated in
place; a newer version supersedes it, so historical settlements remain
auditable against the policy that was live when they were committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from epochpay.errors import InvalidPolicy
from epochpay.models.settlement import Modality
from epochpay.params import BPS_DENOMINATOR


@dataclass(frozen=True)
class PricingPolicy:
    """Split parameters for one service class.

    ``unit_price`` applies to every modality unless
    ``modality_unit_prices`` overrides it. Any share of the user payment
    not assigned to provider or platform accrues to providers as subsidy.
    """
    unit_price: Decimal
    provider_share_bps: int
    platform_share_bps: int
    user_discount_bps: int = 0
    modality_unit_prices: Dict[Modality, Decimal] = field(default_factory=dict, hash=False)
    effective_at: Optional[datetime] = None

    def validate(self) -> None:
        """Raise InvalidPolicy if any parameter is out of range."""
        if self.unit_price < Decimal("0"):
            raise InvalidPolicy(f"unit_price must not be negative, got {self.unit_price}")
        for name in ("provider_share_bps", "platform_share_bps", "user_discount_bps"):
            value = getattr(self, name)
            if not 0 <= value <= BPS_DENOMINATOR:
                raise InvalidPolicy(f"{name} must be in [0, {BPS_DENOMINATOR}], got {value}")
        share_sum = self.provider_share_bps + self.platform_share_bps
        if share_sum > BPS_DENOMINATOR:
            raise InvalidPolicy(
                f"provider_share_bps + platform_share_bps = {share_sum} "
                f"exceeds {BPS_DENOMINATOR}"
            )
        for modality, price in self.modality_unit_prices.items():
            if price < Decimal("0"):
                raise InvalidPolicy(f"unit price for {modality.value} must not be negative")

    def unit_price_for(self, modality: Modality) -> Decimal:
        return self.modality_unit_prices.get(modality, self.unit_price)

    @property
    def subsidy_bps(self) -> int:
        return BPS_DENOMINATOR - self.provider_share_bps - self.platform_share_bps

    def to_dict(self) -> dict[str, Any]:
        return {
            "unit_price": str(self.unit_price),
            "provider_share_bps": self.provider_share_bps,
            "platform_share_bps": self.platform_share_bps,
            "user_discount_bps": self.user_discount_bps,
            "modality_unit_prices": {
                m.value: str(p) for m, p in self.modality_unit_prices.items()
            },
            "effective_at": self.effective_at.isoformat() if self.effective_at else None,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> PricingPolicy:
        effective_at = data.get("effective_at")
        return PricingPolicy(
            unit_price=Decimal(str(data["unit_price"])),
            provider_share_bps=int(data["provider_share_bps"]),
            platform_share_bps=int(data["platform_share_bps"]),
            user_discount_bps=int(data.get("user_discount_bps", 0)),
            modality_unit_prices={
                Modality(k): Decimal(str(v))
                for k, v in (data.get("modality_unit_prices") or {}).items()
            },
            effective_at=datetime.fromisoformat(effective_at) if effective_at else None,
        )


@dataclass(frozen=True)
class ExpectedSplit:
    """The split a policy implies for a given amount of usage."""
    user_payment: Decimal
    provider_reward: Decimal
    platform_fee: Decimal
    subsidy: Decimal
