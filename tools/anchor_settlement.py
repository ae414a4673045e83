#!/usr/bin/env python3
"""Anchor a finalized epoch settlement on Ethereum Sepolia.

Loads the persisted settlement state, hashes the finalized settlement
(epoch id, Merkle root, service class, effective totals) and embeds the
digest in a 0-ETH self-send transaction. The transaction is recorded as a
SETTLEMENT_ANCHORED event and appended to docs/ANCHORS.md.

Usage:
    python3 tools/anchor_settlement.py EPOCH_ID
    python3 tools/anchor_settlement.py EPOCH_ID --data data/ --actor ops

Requires:
    SEPOLIA_RPC_URL and PRIVATE_KEY in a .env file at the project root.
"""

import argparse
import os
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

from dotenv import load_dotenv
from epochpay.params import SettlementParams
from epochpay.persistence.event_log import EventLog
from epochpay.persistence.state_store import StateStore
from epochpay.service import SettlementService

ANCHORS_FILE = ROOT / "docs" / "ANCHORS.md"


def append_anchor_entry(anchors_path: Path, data: dict) -> None:
    """Log the anchor as a Markdown entry, newest last."""
    anchors_path.parent.mkdir(parents=True, exist_ok=True)
    short_tx = data["tx_hash"][:10] + "..."
    entry_lines = [
        f"## Epoch {data['epoch_id']}",
        "",
        f"- `{data['sha256_hash']}` → [tx {short_tx}]({data['explorer_url']})",
        f"  Root: `{data['merkle_root']}` | Ethereum Block: {data['block_number']} "
        f"| Anchored: {data['timestamp_utc']}",
        "",
    ]
    if not anchors_path.exists():
        anchors_path.write_text("# Settlement Anchors\n\n---\n", encoding="utf-8")
    with anchors_path.open("a", encoding="utf-8") as f:
        f.write("\n" + "\n".join(entry_lines))


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Anchor a finalized settlement on Sepolia")
    parser.add_argument("epoch", type=int, help="Finalized epoch ID")
    parser.add_argument("--config", type=Path, default=ROOT / "config")
    parser.add_argument("--data", type=Path, default=ROOT / "data")
    parser.add_argument("--actor", default="admin", help="Actor recorded on the event")
    parser.add_argument("--gas-price-gwei", default="10")
    args = parser.parse_args(argv)

    load_dotenv(ROOT / ".env")
    rpc_url = os.getenv("SEPOLIA_RPC_URL")
    private_key = os.getenv("PRIVATE_KEY") or os.getenv("SEPOLIA_PRIVATE_KEY")
    if not rpc_url or not private_key:
        print("ERROR: Missing SEPOLIA_RPC_URL and/or PRIVATE_KEY in .env")
        return 1

    store = StateStore(args.data / "state.json")
    sections = store.load()
    if sections is None:
        print(f"ERROR: No settlement state in {args.data}")
        return 1
    admins = sections.get("roles", {}).get("admin") or ["admin"]
    service = SettlementService(
        SettlementParams.from_config_dir(args.config),
        admin_id=admins[0],
        event_log=EventLog(storage_path=args.data / "events.jsonl"),
        state_store=store,
    )

    print("=" * 60)
    print(f"EPOCHPAY — ANCHORING EPOCH {args.epoch}")
    print("=" * 60)
    print("Anchoring to Ethereum Sepolia (Chain ID: 11155111) ...")

    result = service.anchor_settlement(
        args.actor, args.epoch, rpc_url, private_key, gas_price_gwei=args.gas_price_gwei,
    )
    if not result.success:
        print(f"ERROR: {'; '.join(result.errors)}")
        return 1

    append_anchor_entry(ANCHORS_FILE, result.data)
    print(f"  Hash:           {result.data['sha256_hash']}")
    print(f"  Tx:             {result.data['tx_hash']}")
    print(f"  Eth Block:      {result.data['block_number']}")
    print(f"  Explorer:       {result.data['explorer_url']}")
    print(f"  Logged:         {ANCHORS_FILE}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
