#!/usr/bin/env python3
"""Settlement invariant checks against the shipped config and persisted state."""

import json
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional


ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR = ROOT / "config"
PARAMS_FILENAME = "settlement_params.json"

BPS_DENOMINATOR = 10_000
MIN_WINDOW_SECONDS = 3_600
MAX_PROOF_DEPTH = 32


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def _decimal(raw, name: str, errors: list[str]) -> Optional[Decimal]:
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        errors.append(f"{name} is not a decimal: {raw!r}")
        return None


def check_params(params: dict, errors: list[str]) -> None:
    """Validate settlement parameters beyond what the loader enforces."""
    window = params.get("dispute_window_seconds", 86_400)
    if not isinstance(window, int) or window < MIN_WINDOW_SECONDS:
        errors.append(f"dispute_window_seconds must be an integer >= {MIN_WINDOW_SECONDS}")

    min_stake = _decimal(params.get("min_stake", "10"), "min_stake", errors)
    if min_stake is not None and min_stake <= 0:
        errors.append("min_stake must be positive")

    depth = params.get("max_proof_depth", MAX_PROOF_DEPTH)
    if not isinstance(depth, int) or not 1 <= depth <= MAX_PROOF_DEPTH:
        errors.append(f"max_proof_depth must be in [1, {MAX_PROOF_DEPTH}]")

    tolerance = _decimal(params.get("rounding_tolerance", "0.01"), "rounding_tolerance", errors)
    if tolerance is not None and not Decimal("0") <= tolerance < Decimal("1"):
        errors.append("rounding_tolerance must be in [0, 1)")

    grace = params.get("policy_grace_seconds", 300)
    if not isinstance(grace, int) or grace < 0:
        errors.append("policy_grace_seconds must be a non-negative integer")
    elif isinstance(window, int) and grace >= window:
        errors.append("policy_grace_seconds must be shorter than the dispute window")

    bps = params.get("compensation_bps", 5_000)
    if not isinstance(bps, int) or not 0 <= bps <= BPS_DENOMINATOR:
        errors.append(f"compensation_bps must be in [0, {BPS_DENOMINATOR}]")


def check_state(data_dir: Path, config_dir: Path, errors: list[str]) -> None:
    """Load persisted state and cross-check the ledger."""
    from epochpay.params import SettlementParams
    from epochpay.persistence.state_store import StateStore
    from epochpay.service import SettlementService

    store = StateStore(data_dir / "state.json")
    sections = store.load()
    if sections is None:
        return
    admins = sections.get("roles", {}).get("admin") or []
    if not admins:
        errors.append("state snapshot has no admin")
        return
    params = SettlementParams.from_config_dir(config_dir)
    service = SettlementService(params, admins[0], state_store=store)
    errors.extend(service.check_invariants())


def check(config_dir: Path = CONFIG_DIR, data_dir: Optional[Path] = None) -> int:
    errors: list[str] = []

    params_path = config_dir / PARAMS_FILENAME
    if params_path.exists():
        check_params(load_json(params_path), errors)
    else:
        errors.append(f"Missing {params_path}")

    if data_dir is not None and not errors:
        check_state(data_dir, config_dir, errors)

    if errors:
        print("Invariant check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Invariant check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
