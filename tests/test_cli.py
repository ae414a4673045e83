"""Tests for the epochpay CLI — proves CLI dispatches correctly."""

import json

import pytest
from decimal import Decimal
from pathlib import Path

from epochpay.cli import build_parser, main
from epochpay.crypto.merkle import SettlementTreeBuilder

CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"
T0 = "2026-03-01T12:00:00"
AFTER_WINDOW = "2026-03-02T12:00:00"


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"
        assert args.epoch is None

    def test_global_options(self, tmp_path: Path) -> None:
        args = build_parser().parse_args([
            "--data", str(tmp_path), "--actor", "aggregator", "--now", T0, "finalize", "--epoch", "3",
        ])
        assert args.actor == "aggregator"
        assert args.epoch == 3
        assert args.now.tzinfo is not None

    def test_dispute_command(self) -> None:
        args = build_parser().parse_args([
            "dispute", "--epoch", "1", "--kind", "wrong_count", "--entity", "provider-a",
            "--amount", "100", "--proof-file", "proof.json", "--stake", "10",
        ])
        assert args.kind == "wrong_count"
        assert args.modality == "text"
        assert args.amount == Decimal("100")
        assert args.stake == Decimal("10")

    def test_set_policy_class_dest(self) -> None:
        args = build_parser().parse_args([
            "set-policy", "--class", "standard", "--unit-price", "1.05",
            "--provider-bps", "9524", "--platform-bps", "476",
        ])
        assert args.service_class == "standard"
        assert args.discount_bps == 0

    def test_bad_amount_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["fund", "--account", "alice", "--amount", "lots"])


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "epochpay" in capsys.readouterr().out

    def test_status_fresh_data_dir(self, tmp_path: Path, capsys) -> None:
        assert main(["--config", str(CONFIG_DIR), "--data", str(tmp_path), "status"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["settlements"]["total"] == 0

    def test_unknown_epoch_status(self, tmp_path: Path) -> None:
        assert main(["--data", str(tmp_path), "status", "--epoch", "9"]) == 1

    def test_non_admin_pause_fails(self, tmp_path: Path) -> None:
        assert main(["--data", str(tmp_path), "--actor", "mallory", "pause"]) == 1

    def test_settlement_lifecycle_e2e(self, tmp_path: Path, capsys) -> None:
        data = tmp_path / "data"
        base = ["--config", str(CONFIG_DIR), "--data", str(data)]

        tree = SettlementTreeBuilder(epoch_id=1)
        tree.add_entry("provider-a", "text", Decimal("100"))
        root = tree.build()
        proof_file = tmp_path / "proof.json"
        proof_file.write_text(json.dumps(list(tree.inclusion_proof("provider-a"))), encoding="utf-8")
        commit_file = tmp_path / "commit.json"
        commit_file.write_text(json.dumps({
            "epochId": 1,
            "merkleRoot": root,
            "serviceClass": "standard",
            "totals": {
                "textCalls": "100", "providerReward": "100",
                "platformFee": "5", "userPayment": "105",
            },
        }), encoding="utf-8")

        assert main([*base, "grant-role", "--actor-id", "aggregator", "--role", "committer"]) == 0
        assert main([*base, "grant-role", "--actor-id", "arbiter", "--role", "arbiter"]) == 0
        assert main([
            *base, "--now", T0, "set-policy", "--class", "standard", "--unit-price", "1.05",
            "--provider-bps", "9524", "--platform-bps", "476",
        ]) == 0
        assert main([*base, "fund", "--account", "alice", "--amount", "50"]) == 0
        assert main([*base, "--actor", "aggregator", "--now", T0, "commit", "--file", str(commit_file)]) == 0
        assert main([
            *base, "--actor", "alice", "--now", "2026-03-01T13:00:00", "dispute",
            "--epoch", "1", "--kind", "wrong_count", "--entity", "provider-a",
            "--amount", "100", "--proof-file", str(proof_file), "--stake", "10",
        ]) == 0
        assert main([
            *base, "--actor", "arbiter", "resolve", "--dispute", "DSP-00000001",
            "--verdict", "upheld", "--corrected", "107",
        ]) == 0
        assert main([*base, "--now", AFTER_WINDOW, "finalize", "--epoch", "1"]) == 0
        assert main([
            *base, "claim", "--epoch", "1", "--entity", "provider-a", "--modality", "text",
            "--amount", "107", "--proof-file", str(proof_file),
        ]) == 0
        assert main([
            *base, "claim", "--epoch", "1", "--entity", "provider-a", "--modality", "text",
            "--amount", "107", "--proof-file", str(proof_file),
        ]) == 1
        capsys.readouterr()

        assert main([*base, "status", "--epoch", "1"]) == 0
        status = json.loads(capsys.readouterr().out)
        assert status["settlement"]["state"] == "finalized"
        assert status["settlement"]["totals"]["user_payment"] == "112"
        assert status["settlement"]["distributed_total"] == "107"
        assert status["disputes"][0]["status"] == "upheld"

        assert main([*base, "check-invariants"]) == 0
        assert "Invariant check passed." in capsys.readouterr().out
        assert (data / "events.jsonl").exists()
        assert (data / "state.json").exists()
