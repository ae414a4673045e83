"""Balance ledger — the token-balance collaborator the settlement core calls.

Generic fungible-token mechanics live outside the core. The core only
needs three operations, captured by the ``BalanceLedger`` protocol. Any
backend (an on-chain token, a custodial wallet service) can be plugged in
without changes to the ledger, arbitrator or distributor.

``InMemoryBalanceLedger`` is the reference backend: a plain account map
with an append-only journal.

System accounts:
- STAKE_ESCROW_ACCOUNT holds challenger stakes while disputes are pending.
- FEE_POOL_ACCOUNT receives slashed stakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from epochpay.errors import InsufficientBalance, InvalidAmount

STAKE_ESCROW_ACCOUNT = "system:stake_escrow"
FEE_POOL_ACCOUNT = "system:platform_fee_pool"


@runtime_checkable
class BalanceLedger(Protocol):
    """Contract for the balance backend."""

    def balance_of(self, account: str) -> Decimal:
        ...

    def credit(self, account: str, amount: Decimal, memo: str = "") -> None:
        ...

    def debit(self, account: str, amount: Decimal, memo: str = "") -> None:
        """Remove funds. Raises InsufficientBalance and changes nothing on overdraft."""
        ...


@dataclass(frozen=True)
class JournalEntry:
    """One balance movement. Negative amounts are debits."""
    account: str
    amount: Decimal
    memo: str
    timestamp_utc: str


class InMemoryBalanceLedger:
    """Reference balance backend.

    Usage:
        balances = InMemoryBalanceLedger()
        balances.credit("challenger-1", Decimal("50"), memo="deposit")
        transfer(balances, "challenger-1", STAKE_ESCROW_ACCOUNT, Decimal("10"))
    """

    def __init__(self) -> None:
        self._balances: dict[str, Decimal] = {}
        self._journal: list[JournalEntry] = []

    def balance_of(self, account: str) -> Decimal:
        return self._balances.get(account, Decimal("0"))

    def credit(self, account: str, amount: Decimal, memo: str = "") -> None:
        _require_positive(amount)
        self._balances[account] = self.balance_of(account) + amount
        self._log(account, amount, memo)

    def debit(self, account: str, amount: Decimal, memo: str = "") -> None:
        _require_positive(amount)
        current = self.balance_of(account)
        if current < amount:
            raise InsufficientBalance(
                f"Insufficient balance in {account}: has {current}, needs {amount}",
                {"account": account},
            )
        self._balances[account] = current - amount
        self._log(account, -amount, memo)

    @property
    def journal(self) -> list[JournalEntry]:
        return list(self._journal)

    def to_records(self) -> dict[str, Any]:
        return {
            "balances": {k: str(v) for k, v in sorted(self._balances.items())},
            "journal": [
                {
                    "account": e.account,
                    "amount": str(e.amount),
                    "memo": e.memo,
                    "timestamp_utc": e.timestamp_utc,
                }
                for e in self._journal
            ],
        }

    def load_records(self, records: dict[str, Any]) -> None:
        self._balances = {k: Decimal(v) for k, v in records.get("balances", {}).items()}
        self._journal = [
            JournalEntry(
                account=e["account"],
                amount=Decimal(e["amount"]),
                memo=e.get("memo", ""),
                timestamp_utc=e["timestamp_utc"],
            )
            for e in records.get("journal", [])
        ]

    def _log(self, account: str, amount: Decimal, memo: str) -> None:
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        self._journal.append(JournalEntry(account, amount, memo, now))


def transfer(
    balances: BalanceLedger,
    source: str,
    destination: str,
    amount: Decimal,
    memo: str = "",
) -> None:
    """Move funds between accounts. The debit happens first, so an overdraft changes nothing."""
    balances.debit(source, amount, memo)
    try:
        balances.credit(destination, amount, memo)
    except Exception:
        balances.credit(source, amount, f"reversal: {memo}")
        raise


def _require_positive(amount: Optional[Decimal]) -> None:
    if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= Decimal("0"):
        raise InvalidAmount(f"Balance movement must be a positive Decimal, got {amount!r}")
