"""Governance — role-based access control."""

from epochpay.governance.roles import Role, RoleRegistry

__all__ = ["Role", "RoleRegistry"]
