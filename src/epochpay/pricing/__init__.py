"""Pricing — versioned split policies per service class."""

from epochpay.pricing.store import PricingPolicyStore

__all__ = ["PricingPolicyStore"]
