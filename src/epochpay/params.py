"""Settlement parameters loaded from the config directory.

The shipped parameters live in ``config/settlement_params.json``. Any key
absent from the file falls back to the default below, so a partial file
(or no file at all, via ``SettlementParams()``) is valid.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

BPS_DENOMINATOR = 10_000
PARAMS_FILENAME = "settlement_params.json"


@dataclass(frozen=True)
class SettlementParams:
    """Tunable constants of the settlement core."""
    dispute_window_seconds: int = 86_400
    min_stake: Decimal = Decimal("10")
    max_proof_depth: int = 32
    rounding_tolerance: Decimal = Decimal("0.01")
    policy_grace_seconds: int = 300
    compensation_bps: int = 5_000

    def __post_init__(self) -> None:
        if self.dispute_window_seconds <= 0:
            raise ValueError("dispute_window_seconds must be positive")
        if self.min_stake < Decimal("0"):
            raise ValueError("min_stake must not be negative")
        if not 1 <= self.max_proof_depth <= 256:
            raise ValueError("max_proof_depth must be in [1, 256]")
        if self.rounding_tolerance < Decimal("0"):
            raise ValueError("rounding_tolerance must not be negative")
        if self.policy_grace_seconds < 0:
            raise ValueError("policy_grace_seconds must not be negative")
        if not 0 <= self.compensation_bps <= BPS_DENOMINATOR:
            raise ValueError(f"compensation_bps must be in [0, {BPS_DENOMINATOR}]")

    @property
    def dispute_window(self) -> timedelta:
        return timedelta(seconds=self.dispute_window_seconds)

    @property
    def policy_grace(self) -> timedelta:
        return timedelta(seconds=self.policy_grace_seconds)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SettlementParams:
        defaults = cls()
        return cls(
            dispute_window_seconds=int(
                data.get("dispute_window_seconds", defaults.dispute_window_seconds)
            ),
            min_stake=Decimal(str(data.get("min_stake", defaults.min_stake))),
            max_proof_depth=int(data.get("max_proof_depth", defaults.max_proof_depth)),
            rounding_tolerance=Decimal(
                str(data.get("rounding_tolerance", defaults.rounding_tolerance))
            ),
            policy_grace_seconds=int(
                data.get("policy_grace_seconds", defaults.policy_grace_seconds)
            ),
            compensation_bps=int(data.get("compensation_bps", defaults.compensation_bps)),
        )

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> SettlementParams:
        """Load parameters from ``config_dir/settlement_params.json``."""
        path = config_dir / PARAMS_FILENAME
        if not path.exists():
            return cls()
        with path.open("r", encoding="utf-8") as handle:
            return cls.from_dict(json.load(handle))

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispute_window_seconds": self.dispute_window_seconds,
            "min_stake": str(self.min_stake),
            "max_proof_depth": self.max_proof_depth,
            "rounding_tolerance": str(self.rounding_tolerance),
            "policy_grace_seconds": self.policy_grace_seconds,
            "compensation_bps": self.compensation_bps,
        }
