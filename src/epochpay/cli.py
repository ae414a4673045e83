"""epochpay CLI — command-line interface for the settlement core.

Usage:
    python -m epochpay.cli status
    python -m epochpay.cli grant-role --actor-id aggregator --role committer
    python -m epochpay.cli set-policy --class standard --unit-price 1.05 --provider-bps 9524 --platform-bps 476
    python -m epochpay.cli --actor aggregator commit --file commitment.json
    python -m epochpay.cli --actor alice dispute --epoch 1 --kind wrong_count --entity provider-a \
        --modality text --amount 100 --proof-file proof.json --stake 10
    python -m epochpay.cli --actor arbiter resolve --dispute DSP-00000001 --verdict upheld --corrected 107
    python -m epochpay.cli finalize --epoch 1
    python -m epochpay.cli claim --epoch 1 --entity provider-a --modality text --amount 107 --proof-file proof.json
    python -m epochpay.cli check-invariants
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from epochpay.crypto.merkle import NonInclusionProof
from epochpay.governance.roles import Role
from epochpay.models.dispute import DisputeKind, Verdict
from epochpay.models.pricing import PricingPolicy
from epochpay.models.settlement import Modality
from epochpay.params import SettlementParams
from epochpay.persistence.event_log import EventLog
from epochpay.persistence.state_store import StateStore
from epochpay.service import ServiceResult, SettlementService


DEFAULT_CONFIG = Path(__file__).resolve().parents[2] / "config"
DEFAULT_DATA = Path(__file__).resolve().parents[2] / "data"


def _make_service(args: argparse.Namespace) -> SettlementService:
    """Create a SettlementService with durable persistence."""
    data_dir: Path = args.data
    data_dir.mkdir(parents=True, exist_ok=True)
    params = SettlementParams.from_config_dir(args.config)
    event_log = EventLog(storage_path=data_dir / "events.jsonl")
    state_store = StateStore(data_dir / "state.json")
    return SettlementService(
        params,
        admin_id=args.admin,
        event_log=event_log,
        state_store=state_store,
    )


def _now(args: argparse.Namespace) -> Optional[datetime]:
    return args.now


def _parse_time(value: str) -> datetime:
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Not an ISO-8601 timestamp: {value}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"Not a decimal amount: {value}") from e
    if not parsed.is_finite():
        raise argparse.ArgumentTypeError(f"Amount must be finite: {value}")
    return parsed


def _load_proof(path: Path) -> Union[tuple[str, ...], NonInclusionProof]:
    """Read a proof file: a JSON list of sibling hashes, or a gap proof object."""
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        return NonInclusionProof.from_dict(data)
    return tuple(data)


def _report(result: ServiceResult, summary: str) -> int:
    if result.success:
        print(summary.format(**result.data))
        if "warning" in result.data:
            print(f"Warning: {result.data['warning']}", file=sys.stderr)
        return 0
    print(f"Failed: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_status(args: argparse.Namespace) -> int:
    service = _make_service(args)
    status = service.status()
    if args.epoch is not None:
        settlement = service.get_settlement(args.epoch)
        if settlement is None:
            print(f"Failed: Unknown epoch: {args.epoch}", file=sys.stderr)
            return 1
        status = {
            "settlement": settlement.to_dict(),
            "disputes": [d.to_dict() for d in service.disputes_for_epoch(args.epoch)],
        }
    _print_json(status)
    return 0


def cmd_set_policy(args: argparse.Namespace) -> int:
    service = _make_service(args)
    now = _now(args) or datetime.now(timezone.utc)
    policy = PricingPolicy(
        unit_price=args.unit_price,
        provider_share_bps=args.provider_bps,
        platform_share_bps=args.platform_bps,
        user_discount_bps=args.discount_bps,
    )
    result = service.set_policy(
        args.actor, args.service_class, policy,
        effective_at=args.effective_at or now, now=now,
    )
    return _report(result, "Policy set for {service_class}")


def cmd_commit(args: argparse.Namespace) -> int:
    service = _make_service(args)
    with args.file.open("r", encoding="utf-8") as f:
        payload = json.load(f)
    result = service.commit_payload(args.actor, payload, now=_now(args))
    return _report(result, "Committed epoch {epoch_id} (window closes {window_closes_at})")


def cmd_fund(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.fund_account(args.actor, args.account, args.amount, now=_now(args))
    return _report(result, "Funded {account}: balance {balance}")


def cmd_dispute(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.raise_dispute(
        challenger=args.actor,
        epoch_id=args.epoch,
        kind=DisputeKind(args.kind),
        entity_id=args.entity,
        modality=Modality(args.modality),
        claimed_amount=args.amount,
        proof=_load_proof(args.proof_file),
        stake=args.stake,
        now=_now(args),
    )
    return _report(result, "Raised dispute {dispute_id} against epoch {epoch_id}")


def cmd_resolve(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.resolve_dispute(
        args.actor, args.dispute, Verdict(args.verdict),
        corrected_amount=args.corrected, now=_now(args),
    )
    return _report(
        result,
        "Resolved {dispute_id}: {verdict} (compensation {compensation}, "
        "settlement {settlement_state})",
    )


def cmd_finalize(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.finalize_settlement(args.actor, args.epoch, now=_now(args))
    return _report(result, "Finalized epoch {epoch_id} (providerReward {provider_reward})")


def cmd_claim(args: argparse.Namespace) -> int:
    service = _make_service(args)
    proof = _load_proof(args.proof_file)
    if isinstance(proof, NonInclusionProof):
        print("Failed: claims need an inclusion proof", file=sys.stderr)
        return 1
    result = service.claim_reward(
        args.epoch, args.entity, Modality(args.modality), args.amount, proof, now=_now(args),
    )
    return _report(result, "Paid {amount} to {entity_id} for epoch {epoch_id}")


def cmd_cancel(args: argparse.Namespace) -> int:
    service = _make_service(args)
    result = service.cancel_settlement(args.actor, args.epoch, now=_now(args))
    return _report(result, "Cancelled epoch {epoch_id}")


def cmd_pause(args: argparse.Namespace) -> int:
    service = _make_service(args)
    if args.command == "pause":
        result = service.pause(args.actor, now=_now(args))
    else:
        result = service.unpause(args.actor, now=_now(args))
    return _report(result, "Ledger paused: {paused}")


def cmd_grant_role(args: argparse.Namespace) -> int:
    service = _make_service(args)
    role = Role(args.role)
    if args.revoke:
        result = service.revoke_role(args.actor, args.actor_id, role)
        return _report(result, "Revoked {role} from {actor_id}")
    result = service.grant_role(args.actor, args.actor_id, role)
    return _report(result, "Granted {role} to {actor_id}")


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Run settlement invariant checks on config and persisted state."""
    tools_dir = Path(__file__).resolve().parents[2] / "tools"
    sys.path.insert(0, str(tools_dir))
    from check_invariants import check
    return check(config_dir=args.config, data_dir=args.data)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="epochpay",
        description="epochpay — epoch settlement ledger CLI",
    )
    parser.add_argument(
        "--config", type=Path, default=DEFAULT_CONFIG,
        help="Path to config directory (default: config/)",
    )
    parser.add_argument(
        "--data", type=Path, default=DEFAULT_DATA,
        help="Path to data directory holding events.jsonl and state.json (default: data/)",
    )
    parser.add_argument(
        "--admin", default="admin",
        help="Bootstrap admin for a fresh data directory (default: admin)",
    )
    parser.add_argument(
        "--actor", default="admin",
        help="Calling actor ID (default: admin)",
    )
    parser.add_argument(
        "--now", type=_parse_time, default=None,
        help="Override the current time (ISO-8601, UTC if no offset)",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable INFO logging")
    sub = parser.add_subparsers(dest="command")

    # status
    p_status = sub.add_parser("status", help="Show system or epoch status")
    p_status.add_argument("--epoch", type=int, help="Show one settlement and its disputes")

    # set-policy
    p_pol = sub.add_parser("set-policy", help="Register a pricing policy version")
    p_pol.add_argument("--class", dest="service_class", required=True, help="Service class")
    p_pol.add_argument("--unit-price", type=_parse_decimal, required=True)
    p_pol.add_argument("--provider-bps", type=int, required=True)
    p_pol.add_argument("--platform-bps", type=int, required=True)
    p_pol.add_argument("--discount-bps", type=int, default=0)
    p_pol.add_argument("--effective-at", type=_parse_time, help="Default: now")

    # commit
    p_commit = sub.add_parser("commit", help="Commit an epoch settlement")
    p_commit.add_argument(
        "--file", type=Path, required=True,
        help="Aggregator JSON: {epochId, merkleRoot, totals, serviceClass}",
    )

    # fund
    p_fund = sub.add_parser("fund", help="Credit an account (admin)")
    p_fund.add_argument("--account", required=True)
    p_fund.add_argument("--amount", type=_parse_decimal, required=True)

    # dispute
    p_disp = sub.add_parser("dispute", help="Raise a dispute within the window")
    p_disp.add_argument("--epoch", type=int, required=True)
    p_disp.add_argument("--kind", required=True, choices=[k.value for k in DisputeKind])
    p_disp.add_argument("--entity", required=True, help="Challenged entity ID")
    p_disp.add_argument("--modality", default="text", choices=[m.value for m in Modality])
    p_disp.add_argument("--amount", type=_parse_decimal, default=Decimal("0"),
                        help="Amount in the challenged leaf")
    p_disp.add_argument("--proof-file", type=Path, required=True)
    p_disp.add_argument("--stake", type=_parse_decimal, required=True)

    # resolve
    p_res = sub.add_parser("resolve", help="Resolve a pending dispute (arbiter)")
    p_res.add_argument("--dispute", required=True, help="Dispute ID")
    p_res.add_argument("--verdict", required=True, choices=[v.value for v in Verdict])
    p_res.add_argument("--corrected", type=_parse_decimal,
                       help="Corrected amount of the disputed entry (upheld only)")

    # finalize
    p_fin = sub.add_parser("finalize", help="Finalize an epoch after its window")
    p_fin.add_argument("--epoch", type=int, required=True)

    # claim
    p_claim = sub.add_parser("claim", help="Claim a finalized reward")
    p_claim.add_argument("--epoch", type=int, required=True)
    p_claim.add_argument("--entity", required=True)
    p_claim.add_argument("--modality", required=True, choices=[m.value for m in Modality])
    p_claim.add_argument("--amount", type=_parse_decimal, required=True)
    p_claim.add_argument("--proof-file", type=Path, required=True)

    # cancel
    p_cancel = sub.add_parser("cancel", help="Emergency-cancel an epoch (admin)")
    p_cancel.add_argument("--epoch", type=int, required=True)

    # pause / unpause
    sub.add_parser("pause", help="Pause commit, dispute, finalize and claim (admin)")
    sub.add_parser("unpause", help="Resume normal operation (admin)")

    # grant-role
    p_role = sub.add_parser("grant-role", help="Grant (or revoke) a role (admin)")
    p_role.add_argument("--actor-id", required=True)
    p_role.add_argument("--role", required=True, choices=[r.value for r in Role])
    p_role.add_argument("--revoke", action="store_true", help="Revoke instead of grant")

    # check-invariants
    sub.add_parser("check-invariants", help="Run settlement invariant checks")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "set-policy": cmd_set_policy,
        "commit": cmd_commit,
        "fund": cmd_fund,
        "dispute": cmd_dispute,
        "resolve": cmd_resolve,
        "finalize": cmd_finalize,
        "claim": cmd_claim,
        "cancel": cmd_cancel,
        "pause": cmd_pause,
        "unpause": cmd_pause,
        "grant-role": cmd_grant_role,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
