"""Blockchain anchoring — embeds a finalized settlement root on Ethereum.

Anchoring puts a digest of the finalized settlement into the data field of
a 0-ETH self-send transaction. No contract code runs; the chain only
witnesses that this root and these totals existed at block time.

The anchored digest covers the epoch id, the Merkle root and the
effective totals, so a later correction cannot be passed off as the
finalized figures.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any

from epochpay.errors import AnchorFailed, SettlementNotFinalized
from epochpay.models.settlement import Settlement, SettlementState

logger = logging.getLogger(__name__)

SEPOLIA_CHAIN_ID = 11155111

_EXPLORERS = {
    1: "https://etherscan.io/tx/",
    SEPOLIA_CHAIN_ID: "https://sepolia.etherscan.io/tx/",
}


@dataclass(frozen=True)
class AnchorRecord:
    """A record of a successful blockchain anchor."""
    epoch_id: int
    merkle_root: str
    sha256_hash: str
    tx_hash: str
    block_number: int
    chain_id: int
    timestamp_utc: str
    explorer_url: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def settlement_digest(settlement: Settlement) -> str:
    """SHA-256 hex digest of a settlement's anchored fields.

    Canonical form: sorted keys, compact separators, UTF-8.
    """
    payload = {
        "epoch_id": settlement.epoch_id,
        "merkle_root": settlement.merkle_root,
        "service_class": settlement.service_class,
        "totals": settlement.totals.to_dict(),
    }
    canonical = json.dumps(
        payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"),
    ).encode("utf-8")
    return hashlib.sha256(canonical).hexdigest()


def anchor_to_chain(
    digest: str,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas: int = 30_000,
    gas_price_gwei: str = "2",
) -> tuple[str, int, str]:
    """Embed a SHA-256 hex digest in a 0-ETH self-send transaction.

    Waits for one confirmation.

    Returns:
        (tx_hash, block_number, explorer_url)
    """
    from web3 import HTTPProvider, Web3
    from eth_account import Account

    w3 = Web3(HTTPProvider(rpc_url))
    acct = Account.from_key(private_key)

    nonce = w3.eth.get_transaction_count(acct.address)
    tx = {
        "to": acct.address,
        "value": 0,
        "gas": gas,
        "gasPrice": w3.to_wei(gas_price_gwei, "gwei"),
        "nonce": nonce,
        "chainId": chain_id,
        "data": bytes.fromhex(digest),
    }

    signed = acct.sign_transaction(tx)
    sent = w3.eth.send_raw_transaction(signed.raw_transaction)
    tx_hash = sent.hex()
    logger.info("Anchor tx sent: %s, waiting for confirmation", tx_hash)

    receipt = w3.eth.wait_for_transaction_receipt(sent, timeout=300)
    explorer_url = _EXPLORERS.get(chain_id, "") + tx_hash
    logger.info("Anchor confirmed in block %d: %s", receipt.blockNumber, explorer_url)
    return tx_hash, receipt.blockNumber, explorer_url


def anchor_settlement(
    settlement: Settlement,
    rpc_url: str,
    private_key: str,
    chain_id: int = SEPOLIA_CHAIN_ID,
    gas_price_gwei: str = "2",
) -> AnchorRecord:
    """Anchor a FINALIZED settlement.

    Raises:
        SettlementNotFinalized: the settlement is not finalized.
        AnchorFailed: the key, the RPC call or the confirmation failed.
    """
    if settlement.state != SettlementState.FINALIZED:
        raise SettlementNotFinalized(
            f"Settlement {settlement.epoch_id} is {settlement.state.value}; only finalized roots are anchored",
            {"epoch_id": settlement.epoch_id},
        )

    from web3.exceptions import Web3Exception

    digest = settlement_digest(settlement)
    try:
        tx_hash, block_number, explorer_url = anchor_to_chain(
            digest, rpc_url, private_key, chain_id=chain_id, gas_price_gwei=gas_price_gwei,
        )
    except (ValueError, Web3Exception) as e:
        # Bad keys surface as binascii.Error, a ValueError; RPC errors and
        # receipt timeouts as Web3Exception.
        raise AnchorFailed(
            f"Anchoring settlement {settlement.epoch_id} failed: {e}",
            {"epoch_id": settlement.epoch_id},
        ) from e
    return AnchorRecord(
        epoch_id=settlement.epoch_id,
        merkle_root=settlement.merkle_root,
        sha256_hash=digest,
        tx_hash=tx_hash,
        block_number=block_number,
        chain_id=chain_id,
        timestamp_utc=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        explorer_url=explorer_url,
    )
