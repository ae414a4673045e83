"""Merkle proofs for settlement roots.

Uses SHA-256. Hashes travel as ``"sha256:" + 64 lowercase hex`` strings.

Domain-separated hashing keeps leaves and internal nodes from being
reinterpreted as one another:

- Claim leaves:   H(0x00 || canonical JSON {amount, entity_id, epoch_id, modality})
- Internal nodes: H(0x01 || min(a, b) || max(a, b))
- Gap leaves:     H(0x02 || canonical JSON {epoch_id, lower, upper})

Pairs are ordered lexicographically at every level, so a proof is a plain
sequence of sibling hashes with no direction flags. When a level has an odd
number of nodes, the last one is promoted unchanged and contributes no
sibling to proofs passing through it.

Non-inclusion uses gap leaves. For the sorted entity ids of an epoch the
tree carries one gap leaf per adjacent pair, plus open-ended sentinels
(``lower=None`` is -inf, ``upper=None`` is +inf). An entity is absent iff
some included gap leaf satisfies ``lower < entity_id < upper``.

Verification functions are pure predicates: malformed input returns False.
"""

from __future__ import annotations

import bisect
import hashlib
import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence

HASH_PREFIX = "sha256:"
MAX_PROOF_DEPTH = 32

_CLAIM_LEAF_TAG = b"\x00"
_NODE_TAG = b"\x01"
_GAP_LEAF_TAG = b"\x02"


@dataclass(frozen=True)
class NonInclusionProof:
    """Proof that no entity id lies strictly between ``lower`` and ``upper``."""
    lower: Optional[str]
    upper: Optional[str]
    path: tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        return {"lower": self.lower, "upper": self.upper, "path": list(self.path)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> NonInclusionProof:
        return NonInclusionProof(
            lower=data.get("lower"),
            upper=data.get("upper"),
            path=tuple(data.get("path", [])),
        )


# ----------------------------------------------------------------------
# Hashing
# ----------------------------------------------------------------------

def canonical_amount(amount: Decimal | int | str) -> str:
    """Render an amount without exponent or trailing zeros ("107.50" → "107.5")."""
    value = Decimal(str(amount))
    if not value.is_finite():
        raise ValueError(f"Amount must be finite, got {amount}")
    text = format(value.normalize(), "f")
    return "0" if text in ("-0", "") else text


def _canonical_json(payload: dict[str, Any]) -> bytes:
    return json.dumps(
        payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"),
    ).encode("utf-8")


def _digest(data: bytes) -> str:
    return HASH_PREFIX + hashlib.sha256(data).hexdigest()


def _raw(value: str) -> bytes:
    """Decode a prefixed hash string. Raises ValueError on malformed input."""
    if not isinstance(value, str) or not value.startswith(HASH_PREFIX):
        raise ValueError(f"Malformed hash: {value!r}")
    hex_part = value[len(HASH_PREFIX):]
    if len(hex_part) != 64 or hex_part != hex_part.lower():
        raise ValueError(f"Malformed hash: {value!r}")
    return bytes.fromhex(hex_part)


def is_hash(value: Any) -> bool:
    """True if ``value`` is a well-formed prefixed SHA-256 hash string."""
    try:
        _raw(value)
    except (ValueError, TypeError):
        return False
    return True


def claim_leaf_hash(
    entity_id: str,
    modality: Any,
    amount: Decimal | int | str,
    epoch_id: int,
) -> str:
    """Hash the canonical (entity_id, modality, amount, epoch_id) claim leaf."""
    payload = {
        "amount": canonical_amount(amount),
        "entity_id": entity_id,
        "epoch_id": int(epoch_id),
        "modality": getattr(modality, "value", modality),
    }
    return _digest(_CLAIM_LEAF_TAG + _canonical_json(payload))


def gap_leaf_hash(epoch_id: int, lower: Optional[str], upper: Optional[str]) -> str:
    payload = {"epoch_id": int(epoch_id), "lower": lower, "upper": upper}
    return _digest(_GAP_LEAF_TAG + _canonical_json(payload))


def hash_pair(left: str, right: str) -> str:
    a, b = _raw(left), _raw(right)
    lo, hi = (a, b) if a <= b else (b, a)
    return _digest(_NODE_TAG + lo + hi)


# ----------------------------------------------------------------------
# Verification
# ----------------------------------------------------------------------

def verify(
    root: str,
    leaf: str,
    proof: Sequence[str],
    max_depth: int = MAX_PROOF_DEPTH,
) -> bool:
    """Return True iff ``proof`` folds ``leaf`` up to ``root``."""
    if isinstance(proof, (str, bytes)):
        return False
    try:
        path = list(proof)
    except TypeError:
        return False
    if len(path) > max_depth:
        return False
    try:
        current = leaf
        _raw(current)
        for sibling in path:
            current = hash_pair(current, sibling)
        return _raw(current) == _raw(root)
    except (ValueError, TypeError):
        return False


def verify_absence(
    root: str,
    epoch_id: int,
    entity_id: str,
    gap: NonInclusionProof,
    max_depth: int = MAX_PROOF_DEPTH,
) -> bool:
    """Return True iff ``gap`` proves ``entity_id`` has no leaf under ``root``."""
    if not isinstance(gap, NonInclusionProof) or not isinstance(entity_id, str):
        return False
    if gap.lower is not None and not gap.lower < entity_id:
        return False
    if gap.upper is not None and not entity_id < gap.upper:
        return False
    leaf = gap_leaf_hash(epoch_id, gap.lower, gap.upper)
    return verify(root, leaf, gap.path, max_depth=max_depth)


# ----------------------------------------------------------------------
# Reference tree construction
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class TreeEntry:
    entity_id: str
    modality: str
    amount: Decimal


class SettlementTreeBuilder:
    """Builds the epoch tree shape the verifier expects.

    The production aggregator lives outside this package; this builder
    reproduces its layout for tests and tooling.

    Usage:
        builder = SettlementTreeBuilder(epoch_id=1)
        builder.add_entry("provider-a", "text", Decimal("107"))
        root = builder.build()
        proof = builder.inclusion_proof("provider-a")
        gap = builder.non_inclusion_proof("provider-b")
    """

    def __init__(self, epoch_id: int) -> None:
        self.epoch_id = epoch_id
        self._entries: dict[str, TreeEntry] = {}
        self._levels: list[list[str]] = []
        self._index: dict[str, int] = {}
        self._sorted_ids: list[str] = []
        self._built = False

    def add_entry(self, entity_id: str, modality: Any, amount: Decimal | int | str) -> None:
        if self._built:
            raise RuntimeError("Tree already built. Create a new builder.")
        if entity_id in self._entries:
            raise ValueError(f"Duplicate entity in epoch {self.epoch_id}: {entity_id}")
        self._entries[entity_id] = TreeEntry(
            entity_id=entity_id,
            modality=getattr(modality, "value", modality),
            amount=Decimal(str(amount)),
        )

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    def leaf_hash(self, entity_id: str) -> str:
        entry = self._entries[entity_id]
        return claim_leaf_hash(entry.entity_id, entry.modality, entry.amount, self.epoch_id)

    def build(self) -> str:
        """Compute and return the root. Leaves: claims by entity id, then gaps."""
        self._sorted_ids = sorted(self._entries)
        leaves = [self.leaf_hash(eid) for eid in self._sorted_ids]
        bounds: list[Optional[str]] = [None, *self._sorted_ids, None]
        for lower, upper in zip(bounds, bounds[1:]):
            leaves.append(gap_leaf_hash(self.epoch_id, lower, upper))

        self._index = {leaf: i for i, leaf in enumerate(leaves)}
        self._levels = [leaves]
        level = leaves
        while len(level) > 1:
            next_level = [
                hash_pair(level[i], level[i + 1]) if i + 1 < len(level) else level[i]
                for i in range(0, len(level), 2)
            ]
            self._levels.append(next_level)
            level = next_level

        self._built = True
        return level[0]

    @property
    def root(self) -> str:
        self._require_built()
        return self._levels[-1][0]

    def inclusion_proof(self, entity_id: str) -> tuple[str, ...]:
        self._require_built()
        if entity_id not in self._entries:
            raise KeyError(f"Entity not in tree: {entity_id}")
        return self._path(self._index[self.leaf_hash(entity_id)])

    def non_inclusion_proof(self, entity_id: str) -> NonInclusionProof:
        self._require_built()
        if entity_id in self._entries:
            raise ValueError(f"Entity is present in tree: {entity_id}")
        pos = bisect.bisect_left(self._sorted_ids, entity_id)
        lower = self._sorted_ids[pos - 1] if pos > 0 else None
        upper = self._sorted_ids[pos] if pos < len(self._sorted_ids) else None
        leaf = gap_leaf_hash(self.epoch_id, lower, upper)
        return NonInclusionProof(lower=lower, upper=upper, path=self._path(self._index[leaf]))

    def _path(self, idx: int) -> tuple[str, ...]:
        path: list[str] = []
        for level in self._levels[:-1]:
            sibling = idx ^ 1
            if sibling < len(level):
                path.append(level[sibling])
            idx //= 2
        return tuple(path)

    def _require_built(self) -> None:
        if not self._built:
            raise RuntimeError("Must call build() before generating proofs")
