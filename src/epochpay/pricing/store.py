"""Pricing policy store — versioned split parameters per service class.

The settlement ledger validates every commitment against the policy that
was in force for its service class at commit time. Versions are append-only
and keyed by (service_class, effective_at); a later version supersedes an
earlier one from its effective time onward, and ``get_policy`` can always
answer for any historical instant.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from epochpay.errors import InvalidPolicy, PolicyNotFound
from epochpay.governance.roles import Role, RoleRegistry
from epochpay.models.pricing import ExpectedSplit, PricingPolicy
from epochpay.models.settlement import Modality, SettlementTotals
from epochpay.params import BPS_DENOMINATOR, SettlementParams

logger = logging.getLogger(__name__)

_BPS = Decimal(BPS_DENOMINATOR)


class PricingPolicyStore:
    """Append-only store of pricing policy versions.

    Usage:
        store = PricingPolicyStore(params, roles)
        store.set_policy("admin", "standard", policy, effective_at=now, now=now)
        policy = store.get_policy("standard", at_time=now)
    """

    def __init__(self, params: SettlementParams, roles: RoleRegistry) -> None:
        self._params = params
        self._roles = roles
        self._versions: dict[str, list[PricingPolicy]] = {}

    def set_policy(
        self,
        caller: str,
        class_id: str,
        policy: PricingPolicy,
        effective_at: datetime,
        now: Optional[datetime] = None,
    ) -> PricingPolicy:
        """Register a new policy version for ``class_id``.

        Raises:
            AccessDenied: caller is not an admin.
            InvalidPolicy: out-of-range parameters, a back-dated
                effective time, or a duplicate version.
        """
        self._roles.require(caller, Role.ADMIN)
        if now is None:
            now = datetime.now(timezone.utc)
        if not class_id or not class_id.strip():
            raise InvalidPolicy("Service class must not be empty")
        policy.validate()
        if effective_at < now - self._params.policy_grace:
            raise InvalidPolicy(
                f"effective_at {effective_at.isoformat()} is in the past "
                f"(grace {self._params.policy_grace_seconds}s)",
                {"class_id": class_id},
            )

        versions = self._versions.get(class_id, [])
        if any(v.effective_at == effective_at for v in versions):
            raise InvalidPolicy(
                f"Policy for {class_id} already exists at {effective_at.isoformat()}"
            )

        version = replace(policy, effective_at=effective_at)
        self._versions[class_id] = sorted(
            [*versions, version], key=lambda v: v.effective_at,
        )
        logger.info(
            "Pricing policy set: class=%s effective_at=%s provider=%dbps platform=%dbps",
            class_id, effective_at.isoformat(),
            version.provider_share_bps, version.platform_share_bps,
        )
        return version

    def get_policy(self, class_id: str, at_time: datetime) -> PricingPolicy:
        """Return the latest version with ``effective_at <= at_time``."""
        for version in reversed(self._versions.get(class_id, [])):
            if version.effective_at <= at_time:
                return version
        raise PolicyNotFound(
            f"No pricing policy for service class {class_id} at {at_time.isoformat()}",
            {"class_id": class_id},
        )

    def history(self, class_id: str) -> list[PricingPolicy]:
        """All versions for a class, oldest first."""
        return list(self._versions.get(class_id, []))

    def service_classes(self) -> list[str]:
        return sorted(self._versions)

    # ------------------------------------------------------------------
    # Split computation
    # ------------------------------------------------------------------

    @staticmethod
    def expected_split(policy: PricingPolicy, usage: dict[Modality, Decimal]) -> ExpectedSplit:
        """Compute the split the policy implies for the given usage."""
        gross = sum(
            (units * policy.unit_price_for(m) for m, units in usage.items()),
            Decimal("0"),
        )
        user_payment = gross * (_BPS - policy.user_discount_bps) / _BPS
        platform_fee = user_payment * policy.platform_share_bps / _BPS
        subsidy = user_payment * policy.subsidy_bps / _BPS
        return ExpectedSplit(
            user_payment=user_payment,
            provider_reward=user_payment - platform_fee,
            platform_fee=platform_fee,
            subsidy=subsidy,
        )

    def validate_totals(self, policy: PricingPolicy, totals: SettlementTotals) -> list[str]:
        """Return a list of mismatches between totals and policy. Empty means valid."""
        tol = self._params.rounding_tolerance
        errors: list[str] = []

        if totals.imbalance() > tol:
            errors.append(
                f"providerReward ({totals.provider_reward}) + platformFee "
                f"({totals.platform_fee}) != userPayment ({totals.user_payment})"
            )

        usage = {m: totals.usage_for(m) for m in Modality}
        expected = self.expected_split(policy, usage)
        if abs(totals.user_payment - expected.user_payment) > tol:
            errors.append(
                f"userPayment ({totals.user_payment}) does not match priced usage "
                f"({expected.user_payment})"
            )
        if abs(totals.platform_fee - expected.platform_fee) > tol:
            errors.append(
                f"platformFee ({totals.platform_fee}) does not match platform share "
                f"({expected.platform_fee})"
            )
        provider_floor = totals.user_payment * policy.provider_share_bps / _BPS
        if totals.provider_reward < provider_floor - tol:
            errors.append(
                f"providerReward ({totals.provider_reward}) below provider share "
                f"({provider_floor})"
            )

        if totals.by_modality:
            errors.extend(self._validate_buckets(policy, totals))
        return errors

    def _validate_buckets(self, policy: PricingPolicy, totals: SettlementTotals) -> list[str]:
        tol = self._params.rounding_tolerance
        errors: list[str] = []
        for modality, bucket in totals.by_modality.items():
            if bucket.imbalance() > tol:
                errors.append(f"{modality.value} bucket does not balance")
            if bucket.usage != totals.usage_for(modality):
                errors.append(
                    f"{modality.value} bucket usage ({bucket.usage}) != aggregate "
                    f"({totals.usage_for(modality)})"
                )
            split = self.expected_split(policy, {modality: bucket.usage})
            if abs(bucket.user_payment - split.user_payment) > tol:
                errors.append(f"{modality.value} bucket userPayment does not match priced usage")
            if abs(bucket.platform_fee - split.platform_fee) > tol:
                errors.append(f"{modality.value} bucket platformFee does not match platform share")

        for name in ("provider_reward", "platform_fee", "user_payment"):
            bucket_sum = sum(
                (getattr(b, name) for b in totals.by_modality.values()), Decimal("0"),
            )
            if abs(bucket_sum - getattr(totals, name)) > tol:
                errors.append(f"Buckets sum to {name}={bucket_sum}, aggregate is {getattr(totals, name)}")
        return errors

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_records(self) -> dict[str, list[dict[str, Any]]]:
        return {
            class_id: [v.to_dict() for v in versions]
            for class_id, versions in sorted(self._versions.items())
        }

    def load_records(self, records: dict[str, list[dict[str, Any]]]) -> None:
        self._versions = {
            class_id: sorted(
                (PricingPolicy.from_dict(v) for v in versions),
                key=lambda v: v.effective_at,
            )
            for class_id, versions in records.items()
        }
